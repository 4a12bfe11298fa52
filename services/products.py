"""
Product lookups used by order placement
The only write is the conditional stock decrement.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from models.product import Product


def get_product_by_id(db: Session, product_id: int) -> Optional[Product]:
    """Active product or None"""
    return (
        db.query(Product)
        .filter(Product.id == product_id, Product.is_active == True)  # noqa: E712
        .first()
    )


def reserve_stock(db: Session, product_id: int, quantity: int) -> bool:
    """
    Compare-and-decrement in a single statement.
    Returns False when the product is missing, inactive, or holds fewer than `quantity` units.
    """
    stmt = (
        update(Product)
        .where(
            Product.id == product_id,
            Product.is_active == True,  # noqa: E712
            Product.stock_quantity >= quantity,
        )
        .values(
            stock_quantity=Product.stock_quantity - quantity,
            updated_at=datetime.utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    return result.rowcount == 1
