import hmac
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Path, Query, Request
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from core.config import ORDERS_DEFAULT_LIMIT, ORDERS_MAX_LIMIT, get_admin_secret
from core.errors import NotFoundFailure, ValidationFailure
from services.order_queries import OrderQueryService
from services.order_transactions import OrderTransactionManager
from utils.rate_limit import limit_api, limit_order_creation
from utils.validation import validate_email, validate_payment_reference

router = APIRouter(prefix="/api/orders", tags=["orders"])


# ============ Pydantic Models ============

class OrderItemIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: int = Field(..., alias="productId", gt=0)
    quantity: int = Field(..., gt=0)
    unit_price: int = Field(
        ...,
        gt=0,
        alias="unitPrice",
        validation_alias=AliasChoices("unitPrice", "price", "unit_price"),
    )
    title_snapshot: Optional[str] = Field(
        None,
        alias="titleSnapshot",
        validation_alias=AliasChoices("titleSnapshot", "title", "title_snapshot"),
    )


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_email: str = Field(..., alias="customerEmail")
    customer_name: Optional[str] = Field(None, alias="customerName")
    customer_phone: Optional[str] = Field(None, alias="customerPhone")
    shipping_address: Optional[Dict[str, Any]] = Field(None, alias="shippingAddress")
    billing_address: Optional[Dict[str, Any]] = Field(None, alias="billingAddress")
    items: List[OrderItemIn] = Field(..., min_length=1)
    payment_reference: str = Field(
        ...,
        alias="paymentReference",
        validation_alias=AliasChoices("paymentReference", "paymentIntentId", "payment_reference"),
    )
    total_amount: int = Field(..., alias="totalAmount", gt=0)
    status: Optional[str] = None


class StatusUpdate(BaseModel):
    status: str
    notes: Optional[str] = None


# ============ Dependencies ============

def get_order_manager(request: Request) -> OrderTransactionManager:
    return request.app.state.order_manager


def get_order_queries(request: Request) -> OrderQueryService:
    return request.app.state.order_queries


def _require_admin(request: Request) -> Optional[JSONResponse]:
    configured = get_admin_secret()
    if not configured:
        return JSONResponse({"success": False, "error": "admin_not_configured", "message": "Admin access is not configured"}, status_code=503)
    provided = (request.headers.get("X-Admin-Secret") or "").strip()
    if not provided or not hmac.compare_digest(provided, configured):
        return JSONResponse({"success": False, "error": "unauthorized", "message": "Unauthorized"}, status_code=401)
    return None


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Stored timestamps are naive UTC
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# ============ Public Endpoints ============

@router.post("", status_code=201, dependencies=[Depends(limit_order_creation)])
def create_order(
    payload: CreateOrderRequest,
    manager: OrderTransactionManager = Depends(get_order_manager),
):
    """Create an order after the payment has been confirmed by the client"""
    ok, err = validate_email(payload.customer_email)
    if not ok:
        raise ValidationFailure(err, field="customerEmail")
    ok, err = validate_payment_reference(payload.payment_reference)
    if not ok:
        raise ValidationFailure(err, field="paymentReference")

    order = manager.create_order(payload.model_dump())
    return JSONResponse(
        {"success": True, "message": "Order created successfully", "data": order},
        status_code=201,
    )


@router.get("/customer/{email}", dependencies=[Depends(limit_api)])
def get_customer_orders(
    email: str,
    queries: OrderQueryService = Depends(get_order_queries),
):
    ok, err = validate_email(email)
    if not ok:
        raise ValidationFailure(err, field="email")
    return {"success": True, "data": queries.get_orders_by_customer_email(email)}


@router.get("/payment-intent/{payment_reference}", dependencies=[Depends(limit_api)])
def get_order_by_payment_reference(
    payment_reference: str,
    queries: OrderQueryService = Depends(get_order_queries),
):
    order = queries.get_order_by_payment_reference(payment_reference.strip())
    if not order:
        raise NotFoundFailure("Order for this payment intent")
    return {"success": True, "data": order}


# ============ Admin Endpoints ============

@router.get("/admin/stats")
def get_order_stats(
    request: Request,
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    queries: OrderQueryService = Depends(get_order_queries),
):
    denied = _require_admin(request)
    if denied:
        return denied
    stats = queries.get_order_stats(_naive_utc(start_date), _naive_utc(end_date))
    return {"success": True, "data": stats}


@router.get("")
def list_orders(
    request: Request,
    limit: int = Query(ORDERS_DEFAULT_LIMIT, ge=1, le=ORDERS_MAX_LIMIT),
    offset: int = Query(0, ge=0),
    status: Optional[str] = Query(None),
    queries: OrderQueryService = Depends(get_order_queries),
):
    denied = _require_admin(request)
    if denied:
        return denied
    orders = queries.list_orders(limit=limit, offset=offset, status=status)
    return {
        "success": True,
        "data": orders,
        "pagination": {"limit": limit, "offset": offset, "count": len(orders)},
    }


@router.patch("/{order_id}/status")
def update_order_status(
    request: Request,
    order_id: int = Path(..., gt=0),
    update: StatusUpdate = Body(...),
    queries: OrderQueryService = Depends(get_order_queries),
):
    denied = _require_admin(request)
    if denied:
        return denied
    updated = queries.update_order_status(order_id, update.status, update.notes)
    return {"success": True, "message": "Order status updated successfully", "data": updated}


@router.get("/{order_id}", dependencies=[Depends(limit_api)])
def get_order(
    order_id: int = Path(..., gt=0),
    queries: OrderQueryService = Depends(get_order_queries),
):
    order = queries.get_order_by_id(order_id)
    if not order:
        raise NotFoundFailure("Order", order_id)
    return {"success": True, "data": order}
