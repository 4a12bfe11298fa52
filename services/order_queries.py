"""
Read paths over orders, plus status transitions
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from core.config import ORDERS_DEFAULT_LIMIT, ORDERS_MAX_LIMIT, logger
from core.database import Database
from core.errors import NotFoundFailure, StorageFailure, ValidationFailure
from models.customer import Customer
from models.order import Order, OrderItem, OrderStatus


def parse_status(value: Any) -> OrderStatus:
    """Single place where order status strings are accepted or rejected"""
    if isinstance(value, OrderStatus):
        return value
    try:
        return OrderStatus(str(value or "").strip().lower())
    except ValueError:
        raise ValidationFailure(
            f"Status must be one of: {', '.join(OrderStatus.values())}",
            field="status",
        )


def _summary_query(db: Session):
    return (
        db.query(Order, func.count(OrderItem.id).label("item_count"))
        .outerjoin(OrderItem, OrderItem.order_id == Order.id)
        .group_by(Order.id)
    )


def _summary_row(order: Order, item_count: int) -> Dict[str, Any]:
    out = order.header_dict()
    out["item_count"] = int(item_count or 0)
    return out


class OrderQueryService:
    def __init__(self, database: Database):
        self.database = database

    def get_order_by_id(self, order_id: int) -> Optional[Dict[str, Any]]:
        with self.database.session() as db:
            order = (
                db.query(Order)
                .options(selectinload(Order.items))
                .filter(Order.id == order_id)
                .first()
            )
            return order.to_dict() if order else None

    def get_order_by_payment_reference(self, payment_reference: str) -> Optional[Dict[str, Any]]:
        with self.database.session() as db:
            order = (
                db.query(Order)
                .options(selectinload(Order.items))
                .filter(Order.payment_reference == payment_reference)
                .first()
            )
            return order.to_dict() if order else None

    def get_orders_by_customer_email(self, email: str) -> List[Dict[str, Any]]:
        email = (email or "").strip().lower()
        if not email:
            return []
        with self.database.session() as db:
            rows = (
                _summary_query(db)
                .join(Customer, Order.customer_id == Customer.id)
                .filter(Customer.email == email)
                .order_by(Order.created_at.desc(), Order.id.desc())
                .all()
            )
            return [_summary_row(order, count) for order, count in rows]

    def list_orders(
        self,
        limit: int = ORDERS_DEFAULT_LIMIT,
        offset: int = 0,
        status: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), ORDERS_MAX_LIMIT))
        offset = max(0, int(offset))
        with self.database.session() as db:
            q = _summary_query(db)
            if status:
                q = q.filter(Order.status == parse_status(status).value)
            rows = (
                q.order_by(Order.created_at.desc(), Order.id.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_summary_row(order, count) for order, count in rows]

    def update_order_status(self, order_id: int, status: Any, notes: Optional[str] = None) -> Dict[str, Any]:
        new_status = parse_status(status)
        try:
            with self.database.transaction() as db:
                order = db.query(Order).filter(Order.id == order_id).first()
                if not order:
                    raise NotFoundFailure("Order", order_id)
                previous = order.status
                order.status = new_status.value
                if notes is not None:
                    order.notes = notes
                order.updated_at = datetime.utcnow()
                db.flush()
                header = order.header_dict()
        except SQLAlchemyError as ex:
            logger.exception(f"[orders] status update failed for order {order_id}")
            raise StorageFailure("Failed to update order status", cause=ex) from ex
        logger.info(f"[orders] order {order_id} status {previous} -> {new_status.value}")
        return header

    def get_order_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Aggregates over orders created in [start_date, end_date).
        Either bound may be omitted. No matching orders gives zeros, not an error.
        """
        if start_date and end_date and start_date > end_date:
            raise ValidationFailure("Start date must be before end date", field="startDate")

        by_status = {s: 0 for s in OrderStatus.values()}
        total_orders = 0
        total_revenue = 0
        with self.database.session() as db:
            q = db.query(
                Order.status,
                func.count(Order.id),
                func.coalesce(func.sum(Order.total_amount), 0),
            )
            if start_date:
                q = q.filter(Order.created_at >= start_date)
            if end_date:
                q = q.filter(Order.created_at < end_date)
            for status, count, revenue in q.group_by(Order.status).all():
                by_status[status] = by_status.get(status, 0) + int(count)
                total_orders += int(count)
                total_revenue += int(revenue or 0)

        return {
            "total_orders": total_orders,
            "total_revenue": total_revenue,
            "average_order_value": round(total_revenue / total_orders) if total_orders else 0,
            "orders_by_status": by_status,
            "period": {
                "start_date": start_date.isoformat() if start_date else None,
                "end_date": end_date.isoformat() if end_date else None,
            },
        }
