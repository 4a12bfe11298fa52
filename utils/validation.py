"""
Validation utilities for order input at the HTTP boundary
"""
import re
from typing import Tuple

EMAIL_PATTERN = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
PAYMENT_REFERENCE_PATTERN = re.compile(r'^[A-Za-z0-9_\-]{3,255}$')


def validate_email(email: str) -> Tuple[bool, str]:
    """
    Validate email address format.
    Returns (is_valid, error_message).
    """
    trimmed = (email or "").strip().lower()

    if not trimmed:
        return False, "Email is required"

    if len(trimmed) > 255:
        return False, "Email is too long"

    if not EMAIL_PATTERN.match(trimmed):
        return False, "Please enter a valid email address"

    return True, ""


def validate_payment_reference(ref: str) -> Tuple[bool, str]:
    """Payment intent ids look like pi_3Nx...; allow any processor's token charset"""
    trimmed = (ref or "").strip()
    if not trimmed:
        return False, "Payment reference is required"
    if not PAYMENT_REFERENCE_PATTERN.match(trimmed):
        return False, "Invalid payment reference format"
    return True, ""
