import threading

import pytest

from core.database import Database
from core.errors import ConflictFailure, InsufficientStockFailure, StorageFailure, ValidationFailure
from models.customer import Customer
from models.order import Order, OrderItem
from models.product import Product
from scripts.init_db import seed_products
from services.order_transactions import OrderTransactionManager
from helpers import get_stock, order_data, set_stock


def _count(database, model, *criteria):
    with database.session() as s:
        return s.query(model).filter(*criteria).count()


# ============ Happy path ============

def test_create_order_happy_path(database, products, manager):
    dragon = products["Dragon"]
    set_stock(database, dragon, 10)

    order = manager.create_order(order_data(dragon, "pi_1"))

    assert order["payment_reference"] == "pi_1"
    assert order["currency"] == "NZD"
    assert order["status"] == "paid"
    assert order["order_reference"].startswith("QB-")
    assert len(order["items"]) == 1
    item = order["items"][0]
    assert item["product_id"] == dragon
    assert item["quantity"] == 2
    assert item["unit_price"] == 1500
    assert item["line_total"] == 3000
    assert get_stock(database, dragon) == 8


def test_line_totals_reconcile_with_total_amount(database, products, manager):
    data = {
        "customer_email": "multi@example.com",
        "customer_name": "Multi Buyer",
        "items": [
            {"product_id": products["Dragon"], "quantity": 1, "unit_price": 1500, "title_snapshot": "Dragon"},
            {"product_id": products["Rose"], "quantity": 3, "unit_price": 800, "title_snapshot": "Rose"},
        ],
        "payment_reference": "pi_multi",
        "total_amount": 1500 + 3 * 800,
    }
    order = manager.create_order(data)

    for item in order["items"]:
        assert item["line_total"] == item["quantity"] * item["unit_price"]
    assert sum(i["line_total"] for i in order["items"]) == order["total_amount"]
    # Input order is preserved
    assert [i["product_id"] for i in order["items"]] == [products["Dragon"], products["Rose"]]


def test_title_snapshot_falls_back_to_product_title(database, products, manager):
    data = order_data(products["Corn Cob"], "pi_title", unit_price=1600)
    data["items"][0]["title_snapshot"] = None
    order = manager.create_order(data)
    assert order["items"][0]["product_title"] == "Corn Cob"


def test_title_snapshot_survives_product_rename(database, products, manager, queries):
    order = manager.create_order(order_data(products["Dragon"], "pi_rename"))
    with database.transaction() as s:
        s.query(Product).filter(Product.id == products["Dragon"]).update({"title": "Fire Dragon"})

    again = queries.get_order_by_id(order["id"])
    assert again["items"][0]["product_title"] == "Dragon"


# ============ Stock reservation ============

def test_insufficient_stock_rolls_back(database, products, manager):
    dragon = products["Dragon"]
    set_stock(database, dragon, 1)

    with pytest.raises(InsufficientStockFailure) as exc:
        manager.create_order(order_data(dragon, "pi_short"))

    assert exc.value.product_id == dragon
    assert exc.value.requested == 2
    assert get_stock(database, dragon) == 1
    assert _count(database, Order, Order.payment_reference == "pi_short") == 0


def test_failure_on_later_item_leaves_no_trace(database, products, manager):
    dragon, rose = products["Dragon"], products["Rose"]
    set_stock(database, dragon, 10)
    set_stock(database, rose, 1)

    data = {
        "customer_email": "brand-new@example.com",
        "items": [
            {"product_id": dragon, "quantity": 2, "unit_price": 1500, "title_snapshot": "Dragon"},
            {"product_id": rose, "quantity": 5, "unit_price": 800, "title_snapshot": "Rose"},
        ],
        "payment_reference": "pi_partial",
        "total_amount": 7000,
    }
    with pytest.raises(InsufficientStockFailure) as exc:
        manager.create_order(data)

    assert exc.value.product_id == rose
    assert get_stock(database, dragon) == 10
    assert get_stock(database, rose) == 1
    assert _count(database, Order) == 0
    assert _count(database, OrderItem) == 0
    assert _count(database, Customer, Customer.email == "brand-new@example.com") == 0


def test_unknown_product_reports_insufficient_stock(database, products, manager):
    with pytest.raises(InsufficientStockFailure) as exc:
        manager.create_order(order_data(99999, "pi_ghost"))
    assert exc.value.product_id == 99999
    assert _count(database, Order) == 0


def test_unknown_product_without_title_reports_insufficient_stock(database, products, manager):
    data = order_data(99999, "pi_ghost2")
    data["items"][0]["title_snapshot"] = ""
    with pytest.raises(InsufficientStockFailure):
        manager.create_order(data)


def test_stock_never_goes_negative(database, products, manager):
    dragon = products["Dragon"]
    set_stock(database, dragon, 5)

    placed = 0
    for n in range(5):
        try:
            manager.create_order(order_data(dragon, f"pi_seq_{n}", quantity=2))
            placed += 1
        except InsufficientStockFailure:
            pass
        assert get_stock(database, dragon) >= 0

    assert placed == 2
    assert get_stock(database, dragon) == 1


def test_exact_stock_can_be_sold_out(database, products, manager):
    dragon = products["Dragon"]
    set_stock(database, dragon, 2)
    manager.create_order(order_data(dragon, "pi_last"))
    assert get_stock(database, dragon) == 0


def test_inactive_product_cannot_be_reserved(database, products, manager):
    dragon = products["Dragon"]
    with database.transaction() as s:
        s.query(Product).filter(Product.id == dragon).update({"is_active": False})

    # A title snapshot skips the product lookup, so the decrement itself must refuse
    with pytest.raises(InsufficientStockFailure):
        manager.create_order(order_data(dragon, "pi_inactive"))
    assert get_stock(database, dragon) == 15
    assert _count(database, Order) == 0


def test_concurrent_orders_never_oversell(tmp_path):
    # File-backed so each thread gets its own connection
    database = Database(f"sqlite:///{tmp_path / 'orders.db'}")
    try:
        database.init_db()
        seed_products(database)
        with database.session() as s:
            dragon = s.query(Product.id).filter(Product.title == "Dragon").scalar()
        set_stock(database, dragon, 5)
        manager = OrderTransactionManager(database)

        workers = 6
        barrier = threading.Barrier(workers)
        outcomes = []

        def place(n):
            barrier.wait()
            try:
                manager.create_order(order_data(dragon, f"pi_thread_{n}", email=f"buyer{n}@example.com"))
                outcomes.append("placed")
            except (InsufficientStockFailure, StorageFailure) as ex:
                # StorageFailure covers SQLite refusing a write while another one holds the lock
                outcomes.append(ex.kind)

        threads = [threading.Thread(target=place, args=(n,)) for n in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(outcomes) == workers
        placed = outcomes.count("placed")
        assert placed <= 2
        assert get_stock(database, dragon) == 5 - 2 * placed
        assert _count(database, Order) == placed
        assert _count(database, OrderItem) == placed
    finally:
        database.dispose()


# ============ Idempotency by payment ============

def test_duplicate_payment_conflicts(database, products, manager):
    first = manager.create_order(order_data(products["Dragon"], "pi_dup"))

    with pytest.raises(ConflictFailure) as exc:
        manager.create_order(order_data(products["Dragon"], "pi_dup"))

    assert exc.value.existing_order_id == first["id"]
    assert _count(database, Order, Order.payment_reference == "pi_dup") == 1
    assert get_stock(database, products["Dragon"]) == 15 - 2


def test_concurrent_duplicate_resolved_by_unique_constraint(database, products, manager, monkeypatch):
    first = manager.create_order(order_data(products["Dragon"], "pi_race"))
    stock_after_first = get_stock(database, products["Dragon"])

    # Simulate a request that raced past the upfront lookup
    real_lookup = manager.queries.get_order_by_payment_reference
    calls = []

    def stale_lookup(ref):
        calls.append(ref)
        return None if len(calls) == 1 else real_lookup(ref)

    monkeypatch.setattr(manager.queries, "get_order_by_payment_reference", stale_lookup)

    with pytest.raises(ConflictFailure) as exc:
        manager.create_order(order_data(products["Dragon"], "pi_race"))

    assert exc.value.existing_order_id == first["id"]
    assert _count(database, Order, Order.payment_reference == "pi_race") == 1
    assert get_stock(database, products["Dragon"]) == stock_after_first


# ============ Customers ============

def test_new_customer_is_created_once(database, products, manager):
    manager.create_order(order_data(products["Dragon"], "pi_c1", email="First.Timer@Example.com"))
    manager.create_order(order_data(products["Rose"], "pi_c2", unit_price=800, email="first.timer@example.com"))

    with database.session() as s:
        rows = s.query(Customer).filter(Customer.email == "first.timer@example.com").all()
    assert len(rows) == 1


def test_repeat_customer_name_refresh(database, products, manager):
    manager.create_order(order_data(products["Dragon"], "pi_n1", customer_name="Old Name"))
    order = manager.create_order(order_data(products["Rose"], "pi_n2", unit_price=800, customer_name="New Name"))
    manager.create_order(order_data(products["Rose"], "pi_n3", unit_price=800))

    with database.session() as s:
        customer = s.query(Customer).filter(Customer.email == "a@b.com").one()
    assert customer.name == "New Name"
    assert order["customer_id"] == customer.id
    assert order["customer_name"] == "New Name"


def test_customer_inserted_concurrently_is_reused(database, products, manager, monkeypatch):
    manager.create_order(order_data(products["Rose"], "pi_cr1", quantity=1, unit_price=800))
    real_upsert = manager._upsert_customer
    calls = []

    def racing_upsert(db, data):
        calls.append(data["customer_email"])
        if len(calls) == 1:
            # Lookup missed the row another request committed a moment earlier
            db.add(Customer(email=data["customer_email"]))
            db.flush()
        return real_upsert(db, data)

    monkeypatch.setattr(manager, "_upsert_customer", racing_upsert)
    order = manager.create_order(order_data(products["Dragon"], "pi_cr2"))

    assert len(calls) == 2
    assert order["payment_reference"] == "pi_cr2"
    assert _count(database, Customer, Customer.email == "a@b.com") == 1
    assert _count(database, Order) == 2
    assert get_stock(database, products["Dragon"]) == 13


# ============ Validation ============

@pytest.mark.parametrize("field", ["customer_email", "items", "payment_reference", "total_amount"])
def test_missing_required_field(database, products, manager, field):
    data = order_data(products["Dragon"], "pi_missing")
    data.pop(field)
    with pytest.raises(ValidationFailure):
        manager.create_order(data)
    assert _count(database, Order) == 0


@pytest.mark.parametrize("field", ["customer_email", "payment_reference"])
def test_blank_required_field_rejected(database, products, manager, field):
    data = order_data(products["Dragon"], "pi_blank")
    data[field] = "   "
    with pytest.raises(ValidationFailure) as exc:
        manager.create_order(data)
    assert exc.value.field == field
    assert _count(database, Order) == 0
    assert get_stock(database, products["Dragon"]) == 15


def test_non_string_name_is_coerced(database, products, manager):
    order = manager.create_order(order_data(products["Dragon"], "pi_name", customer_name=12345, customer_phone=2101234))
    assert order["customer_name"] == "12345"
    with database.session() as s:
        assert s.query(Customer.phone).filter(Customer.email == "a@b.com").scalar() == "2101234"


def test_empty_items_rejected(database, products, manager):
    data = order_data(products["Dragon"], "pi_empty")
    data["items"] = []
    with pytest.raises(ValidationFailure):
        manager.create_order(data)


@pytest.mark.parametrize("field", ["product_id", "quantity", "unit_price"])
def test_item_missing_field_rejected(database, products, manager, field):
    data = order_data(products["Dragon"], "pi_item")
    data["items"][0].pop(field)
    with pytest.raises(ValidationFailure):
        manager.create_order(data)
    assert get_stock(database, products["Dragon"]) == 15


@pytest.mark.parametrize("bad", [0, -1, 1.5, "2", True])
def test_item_quantity_must_be_positive_int(database, products, manager, bad):
    data = order_data(products["Dragon"], "pi_qty")
    data["items"][0]["quantity"] = bad
    with pytest.raises(ValidationFailure):
        manager.create_order(data)


def test_unknown_status_rejected(database, products, manager):
    with pytest.raises(ValidationFailure) as exc:
        manager.create_order(order_data(products["Dragon"], "pi_status", status="shipped"))
    assert exc.value.field == "status"


def test_explicit_status_is_kept(database, products, manager):
    order = manager.create_order(order_data(products["Dragon"], "pi_pending", status="pending"))
    assert order["status"] == "pending"


def test_order_references_are_unique(database, products, manager):
    refs = {
        manager.create_order(order_data(products["Rose"], f"pi_ref_{n}", quantity=1, unit_price=800))["order_reference"]
        for n in range(5)
    }
    assert len(refs) == 5


# ============ Storage errors ============

def test_storage_error_on_create_is_wrapped(database, products, manager):
    Order.__table__.drop(database.engine)
    with pytest.raises(StorageFailure) as exc:
        manager.create_order(order_data(products["Dragon"], "pi_broken"))
    assert exc.value.cause is not None
    assert get_stock(database, products["Dragon"]) == 15
