"""
Order service error taxonomy
Each failure carries a stable kind, an HTTP status and structured details
"""
from typing import Any, Dict, Optional


class OrderServiceError(Exception):
    kind = "order_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": False, "error": self.kind, "message": self.message}
        out.update(self.details)
        return out


class ValidationFailure(OrderServiceError):
    """Structurally invalid input; storage was not touched"""
    kind = "validation_failed"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, {"field": field} if field else None)
        self.field = field


class ConflictFailure(OrderServiceError):
    """An order already exists for this payment reference"""
    kind = "conflict"
    status_code = 409

    def __init__(self, existing_order_id: Optional[int], payment_reference: str):
        super().__init__(
            "Order already exists for this payment",
            {"orderId": existing_order_id},
        )
        self.existing_order_id = existing_order_id
        self.payment_reference = payment_reference


class InsufficientStockFailure(OrderServiceError):
    """Covers both a missing product and stock below the requested quantity"""
    kind = "insufficient_stock"
    status_code = 400

    def __init__(self, product_id: int, requested: int):
        super().__init__(
            f"Insufficient stock for product ID {product_id}",
            {"productId": product_id, "requested": requested},
        )
        self.product_id = product_id
        self.requested = requested


class NotFoundFailure(OrderServiceError):
    kind = "not_found"
    status_code = 404

    def __init__(self, resource: str = "Resource", identifier: Any = None):
        msg = f"{resource} not found" if identifier is None else f"{resource} with ID {identifier} not found"
        super().__init__(msg)
        self.resource = resource
        self.identifier = identifier


class StorageFailure(OrderServiceError):
    kind = "storage_error"
    status_code = 500

    def __init__(self, message: str = "Database operation failed", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause
