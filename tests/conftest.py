"""
Shared fixtures: an in-memory SQLite database built through the same
Database class the app uses, seeded with the candle catalogue.
"""
from typing import Dict

import pytest
from fastapi.testclient import TestClient
from throttled import store

from core.database import Database
from main import create_app
from models.product import Product
from scripts.init_db import seed_products
from services.order_queries import OrderQueryService
from services.order_transactions import OrderTransactionManager
from utils.rate_limit import OrderThrottles

ADMIN_SECRET = "test-admin-secret"


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.init_db()
    yield db
    db.dispose()


@pytest.fixture
def products(database) -> Dict[str, int]:
    """Seeded product ids keyed by title"""
    seed_products(database)
    with database.session() as s:
        return {p.title: p.id for p in s.query(Product).all()}


@pytest.fixture
def queries(database) -> OrderQueryService:
    return OrderQueryService(database)


@pytest.fixture
def manager(database, queries) -> OrderTransactionManager:
    return OrderTransactionManager(database, queries)


@pytest.fixture
def client(database):
    throttles = OrderThrottles(store.MemoryStore(), create_per_minute=1000, api_per_minute=1000)
    app = create_app(database=database, throttles=throttles)
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_headers(monkeypatch):
    monkeypatch.setenv("ADMIN_SECRET", ADMIN_SECRET)
    return {"X-Admin-Secret": ADMIN_SECRET}
