"""
Order placement
Customer upsert, order header, line items and stock reservation commit
together or not at all.
"""
import secrets
import time
from collections.abc import Mapping
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import ORDER_REFERENCE_PREFIX, STORE_CURRENCY, logger
from core.database import Database
from core.errors import ConflictFailure, InsufficientStockFailure, StorageFailure, ValidationFailure
from models.customer import Customer
from models.order import Order, OrderItem, OrderStatus
from services.order_queries import OrderQueryService, parse_status
from services.products import get_product_by_id, reserve_stock

REQUIRED_FIELDS = ("customer_email", "items", "payment_reference", "total_amount")
REQUIRED_ITEM_FIELDS = ("product_id", "quantity", "unit_price")

DEFAULT_STATUS = OrderStatus.PAID


def generate_order_reference() -> str:
    # Millisecond timestamp plus random suffix; the unique index is the backstop
    return f"{ORDER_REFERENCE_PREFIX}-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _clean(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


def validate_order_data(order_data: Any) -> Dict[str, Any]:
    """
    Fail fast on structurally invalid input before any storage access.
    Returns a normalized copy.
    """
    if not isinstance(order_data, Mapping):
        raise ValidationFailure("Order data must be an object")

    # Whitespace-only strings count as absent
    missing = [f for f in REQUIRED_FIELDS if _clean(order_data.get(f)) in (None, "", [])]
    if missing:
        raise ValidationFailure(f"Missing required fields: {', '.join(missing)}", field=missing[0])

    items = order_data["items"]
    if not isinstance(items, (list, tuple)) or not items:
        raise ValidationFailure("Items must be a non-empty array", field="items")

    normalized_items: List[Dict[str, Any]] = []
    for idx, item in enumerate(items):
        if not isinstance(item, Mapping) or any(item.get(f) is None for f in REQUIRED_ITEM_FIELDS):
            raise ValidationFailure("Each item must have productId, quantity, and unitPrice", field=f"items[{idx}]")
        for f in REQUIRED_ITEM_FIELDS:
            if not _is_positive_int(item[f]):
                raise ValidationFailure(f"items[{idx}].{f} must be a positive integer", field=f"items[{idx}].{f}")
        title = item.get("title_snapshot")
        normalized_items.append({
            "product_id": item["product_id"],
            "quantity": item["quantity"],
            "unit_price": item["unit_price"],
            "title_snapshot": title.strip() if isinstance(title, str) and title.strip() else None,
        })

    if not _is_positive_int(order_data["total_amount"]):
        raise ValidationFailure("totalAmount must be a positive integer (cents)", field="total_amount")

    status = order_data.get("status")
    return {
        "customer_email": str(order_data["customer_email"]).strip().lower(),
        "customer_name": _optional_text(order_data.get("customer_name")),
        "customer_phone": _optional_text(order_data.get("customer_phone")),
        "shipping_address": order_data.get("shipping_address"),
        "billing_address": order_data.get("billing_address"),
        "items": normalized_items,
        "payment_reference": str(order_data["payment_reference"]).strip(),
        "total_amount": order_data["total_amount"],
        "status": parse_status(status) if status else DEFAULT_STATUS,
    }


class OrderTransactionManager:
    def __init__(self, database: Database, queries: Optional[OrderQueryService] = None):
        self.database = database
        self.queries = queries or OrderQueryService(database)

    def create_order(self, order_data: Mapping) -> Dict[str, Any]:
        data = validate_order_data(order_data)
        payment_reference = data["payment_reference"]

        existing = self.queries.get_order_by_payment_reference(payment_reference)
        if existing:
            logger.warning(f"[orders] duplicate payment {payment_reference} -> order {existing['id']}")
            raise ConflictFailure(existing["id"], payment_reference)

        for attempt in (1, 2):
            try:
                order_id, order_reference = self._place(data)
                break
            except InsufficientStockFailure as ex:
                logger.warning(f"[orders] rejected payment {payment_reference}: {ex.message}")
                raise
            except IntegrityError as ex:
                # Lost a race with a concurrent request for the same payment
                winner = self.queries.get_order_by_payment_reference(payment_reference)
                if winner:
                    logger.warning(f"[orders] concurrent duplicate payment {payment_reference} -> order {winner['id']}")
                    raise ConflictFailure(winner["id"], payment_reference) from ex
                # Or with a first order for the same new customer; the retry finds that row
                if attempt == 1 and self._customer_exists(data["customer_email"]):
                    logger.warning(f"[orders] customer row created concurrently, retrying payment {payment_reference}")
                    continue
                logger.exception(f"[orders] integrity error creating order for {payment_reference}")
                raise StorageFailure("Failed to create order", cause=ex) from ex
            except SQLAlchemyError as ex:
                logger.exception(f"[orders] storage error creating order for {payment_reference}")
                raise StorageFailure("Failed to create order", cause=ex) from ex

        logger.info(
            f"[orders] created {order_reference} (id={order_id}) payment={payment_reference} "
            f"items={len(data['items'])} total={data['total_amount']}"
        )
        return self.queries.get_order_by_id(order_id)

    def _place(self, data: Dict[str, Any]) -> Tuple[int, str]:
        """One unit of work; returns (order id, order reference)"""
        with self.database.transaction() as db:
            customer = self._upsert_customer(db, data)
            order = Order(
                order_reference=generate_order_reference(),
                customer_id=customer.id,
                customer_email=customer.email,
                customer_name=data["customer_name"] or customer.name,
                status=data["status"].value,
                total_amount=data["total_amount"],
                currency=STORE_CURRENCY,
                payment_reference=data["payment_reference"],
                shipping_address=data["shipping_address"],
                billing_address=data["billing_address"],
            )
            db.add(order)
            db.flush()

            for item in data["items"]:
                self._add_line_item(db, order, item)
            # Line items reach the database only once every reservation succeeded,
            # so an unknown product reports as a stock failure, not a FK error
            db.flush()
            return order.id, order.order_reference

    def _customer_exists(self, email: str) -> bool:
        with self.database.session() as db:
            return db.query(Customer.id).filter(Customer.email == email).first() is not None

    def _upsert_customer(self, db: Session, data: Dict[str, Any]) -> Customer:
        customer = db.query(Customer).filter(Customer.email == data["customer_email"]).first()
        if customer:
            if data["customer_name"]:
                customer.name = data["customer_name"]
            if data["customer_phone"]:
                customer.phone = data["customer_phone"]
            return customer

        customer = Customer(
            email=data["customer_email"],
            name=data["customer_name"],
            phone=data["customer_phone"],
        )
        db.add(customer)
        db.flush()
        logger.info(f"[orders] new customer {customer.id}")
        return customer

    def _add_line_item(self, db: Session, order: Order, item: Dict[str, Any]) -> None:
        product_id = item["product_id"]
        quantity = item["quantity"]
        title = item["title_snapshot"]
        if title is None:
            product = get_product_by_id(db, product_id)
            if product is None:
                raise InsufficientStockFailure(product_id, quantity)
            title = product.title

        db.add(OrderItem(
            order_id=order.id,
            product_id=product_id,
            product_title=title,
            quantity=quantity,
            unit_price=item["unit_price"],
            line_total=quantity * item["unit_price"],
        ))

        if not reserve_stock(db, product_id, quantity):
            raise InsufficientStockFailure(product_id, quantity)
