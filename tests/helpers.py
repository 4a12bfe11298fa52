"""Plain helpers shared by the test modules"""
from typing import Any, Dict

from core.database import Database
from models.product import Product


def set_stock(database: Database, product_id: int, quantity: int) -> None:
    with database.transaction() as s:
        s.query(Product).filter(Product.id == product_id).update({"stock_quantity": quantity})


def get_stock(database: Database, product_id: int) -> int:
    with database.session() as s:
        return s.query(Product.stock_quantity).filter(Product.id == product_id).scalar()


def order_data(product_id: int, payment_reference: str, quantity: int = 2, unit_price: int = 1500,
               email: str = "a@b.com", **extra: Any) -> Dict[str, Any]:
    data = {
        "customer_email": email,
        "items": [{
            "product_id": product_id,
            "quantity": quantity,
            "unit_price": unit_price,
            "title_snapshot": "Dragon",
        }],
        "payment_reference": payment_reference,
        "total_amount": quantity * unit_price,
    }
    data.update(extra)
    return data


def order_payload(product_id: int, payment_reference: str, quantity: int = 2, unit_price: int = 1500,
                  email: str = "a@b.com", **extra: Any) -> Dict[str, Any]:
    """Same order as the HTTP client sends it"""
    body = {
        "customerEmail": email,
        "customerName": "Aroha Smith",
        "items": [{
            "productId": product_id,
            "quantity": quantity,
            "unitPrice": unit_price,
            "titleSnapshot": "Dragon",
        }],
        "paymentReference": payment_reference,
        "totalAmount": quantity * unit_price,
    }
    body.update(extra)
    return body
