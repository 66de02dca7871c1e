"""
Shared fixtures: in-memory database, frozen clock and a scripted Shopify client.

Environment overrides must be in place before anything imports
shelfsense.config, since settings and the logger are built at import time.
"""
import os

os.environ["LOG_DIR"] = ""
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["SLOW_MOVER_RULE"] = "windowed"
os.environ["SYNC_RETRY_BASE_DELAY"] = "0"

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import pytest

from shelfsense.config import get_settings
from shelfsense.connectors.base import Page
from shelfsense.models.base import create_session_factory, init_db
from shelfsense.services.store_adapter import StoreAdapter

STORE = "teststore.myshopify.com"
NOW = datetime(2026, 3, 1, 12, 0, 0)


class FrozenClock:
    """Callable clock the tests can move by hand"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeShopifyClient:
    """
    Serves scripted pages per resource.

    Page N links to page N+1 through next_page_info "page-N+1". Failures are
    keyed by page index and consumed one per call, so a list of two errors
    fails the first two attempts and lets the third through.
    """

    def __init__(self, pages: Dict[str, List[List[Dict[str, Any]]]], failures=None):
        self.pages = pages
        self.failures = {key: list(errors) for key, errors in (failures or {}).items()}
        self.calls: List[Dict[str, Any]] = []

    async def fetch_page(self, resource: str, page_info: Optional[str] = None, updated_at_min: Optional[str] = None) -> Page:
        self.calls.append({"resource": resource, "page_info": page_info, "updated_at_min": updated_at_min})

        index = int(page_info.split("-")[1]) if page_info else 0
        pending = self.failures.get((resource, index))
        if pending:
            raise pending.pop(0)

        script = self.pages.get(resource, [[]])
        next_page_info = f"page-{index + 1}" if index + 1 < len(script) else None
        return Page(items=script[index], next_page_info=next_page_info)


def make_order(order_id, created_at: datetime, line_items=(), updated_at: Optional[datetime] = None, **extra):
    """Shopify-shaped order payload; line_items are (variant_id, quantity) pairs"""
    order = {
        "id": order_id,
        "name": f"#{order_id}",
        "created_at": created_at.isoformat() + "Z",
        "updated_at": (updated_at or created_at).isoformat() + "Z",
        "total_price": "10.00",
        "currency": "USD",
        "financial_status": "paid",
        "fulfillment_status": None,
        "line_items": [
            {"variant_id": vid, "product_id": 900 + i, "quantity": qty, "title": f"Item {vid}"}
            for i, (vid, qty) in enumerate(line_items)
        ],
    }
    order.update(extra)
    return order


def make_product(product_id, variants=(), updated_at: datetime = NOW, product_type="Shoes", title=None):
    """Shopify-shaped product payload; variants are (variant_id, price, inventory_quantity)"""
    return {
        "id": product_id,
        "title": title or f"Product {product_id}",
        "product_type": product_type,
        "updated_at": updated_at.isoformat() + "Z",
        "variants": [
            {
                "id": vid,
                "product_id": product_id,
                "title": f"Variant {vid}",
                "sku": f"SKU-{vid}",
                "price": price,
                "inventory_quantity": inventory,
                "updated_at": updated_at.isoformat() + "Z",
            }
            for vid, price, inventory in variants
        ],
    }


@pytest.fixture
def settings():
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
def database():
    engine, session_factory = create_session_factory("sqlite://")
    init_db(engine)
    yield engine, session_factory
    engine.dispose()


@pytest.fixture
def db(database):
    _, session_factory = database
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def adapter(db, clock):
    adapter = StoreAdapter(db, clock=clock)
    adapter.upsert_store(STORE, "shpat_test")
    return adapter
