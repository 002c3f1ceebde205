"""
Test Configuration — Fixtures for async DB, test client, and upstream fakes.

Each test gets its own SQLite file so code that opens several sessions and
commits per page (the sync workers) sees one consistent database.
"""

import asyncio
from datetime import datetime

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api.deps import get_db, get_inventory_sync, get_order_sync
from api.main import app
from core.config import Settings
from db.session import Base
from integrations.base import StoreCredentials, TransientUpstreamError
from integrations.shopify import OrderPage
from workers.inventory_sync import InventorySyncRunner
from workers.sync import OrderSyncOrchestrator


@pytest.fixture
async def test_engine(tmp_path):
    """Create a file-backed SQLite engine and build all tables."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'basketsync.db'}", echo=False)

    # pysqlite's implicit transactions break SAVEPOINT; take over BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def test_settings():
    return Settings(
        app_env="test",
        shopify_shop_domain="test-shop.myshopify.com",
        shopify_access_token="shpat_test",
    )


@pytest.fixture
def credentials():
    return StoreCredentials("test-shop.myshopify.com", "shpat_test")


class SleepRecorder:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleeps():
    return SleepRecorder()


# ─── Upstream payloads ──────────────────────────────────────────────────────


def make_order(
    order_id,
    *,
    updated_at="2025-06-01T12:00:00Z",
    created_at=None,
    customer_id=None,
    variants=(),
    email=None,
):
    """Shopify REST order with one line per entry in `variants` (None = custom item)."""
    return {
        "id": order_id,
        "name": f"#{order_id}",
        "email": email,
        "currency": "USD",
        "subtotal_price": "20.00",
        "total_price": "21.50",
        "total_tax": "1.50",
        "total_discounts": "0.00",
        "financial_status": "paid",
        "fulfillment_status": None,
        "created_at": created_at or updated_at,
        "updated_at": updated_at,
        "cancelled_at": None,
        "customer": {"id": customer_id} if customer_id is not None else None,
        "line_items": [
            {
                "id": int(f"{order_id}{position}"),
                "variant_id": variant_id,
                "product_id": 500 if variant_id else None,
                "title": f"Item {variant_id or 'custom'}",
                "sku": f"SKU-{variant_id}" if variant_id else None,
                "quantity": 1,
                "price": "10.00",
                "total_discount": "0.00",
            }
            for position, variant_id in enumerate(variants)
        ],
    }


def make_variant_node(variant_id, *, vendor="Acme", distributor="North Dist", tags=("summer",), quantity=7):
    return {
        "id": f"gid://shopify/ProductVariant/{variant_id}",
        "sku": f"SKU-{variant_id}",
        "title": "Default Title",
        "price": "12.50",
        "inventoryQuantity": quantity,
        "inventoryItem": {"unitCost": {"amount": "4.25"}},
        "distributor": {"value": distributor} if distributor is not None else None,
        "product": {
            "id": "gid://shopify/Product/900",
            "title": f"Product {variant_id}",
            "vendor": vendor,
            "tags": list(tags),
        },
    }


@pytest.fixture
def order_payload():
    return make_order


@pytest.fixture
def variant_node():
    return make_variant_node


# ─── Fake upstream client ───────────────────────────────────────────────────


class FakeShopifyClient:
    """Serves canned order pages; optionally fails or blocks mid-stream."""

    def __init__(
        self,
        pages=(),
        *,
        total=None,
        fail_on_page=None,
        error=None,
        gate=None,
        variants=None,
        variant_error=None,
    ):
        self.pages = [list(page) for page in pages]
        self.total = total
        self.fail_on_page = fail_on_page
        self.error = error
        self.gate: asyncio.Event | None = gate
        self.variants = variants or {}
        self.variant_error = variant_error
        self.windows: list[datetime] = []
        self.variant_batches: list[list[str]] = []

    async def count_orders(self, updated_at_min):
        if self.total is None:
            raise TransientUpstreamError("count unavailable", status_code=503)
        return self.total

    async def iter_order_pages(self, updated_at_min):
        self.windows.append(updated_at_min)
        if self.gate is not None:
            await self.gate.wait()
        for number, records in enumerate(self.pages, start=1):
            if self.fail_on_page == number:
                raise self.error
            next_cursor = f"cursor-{number + 1}" if number < len(self.pages) else None
            yield OrderPage(number=number, records=records, next_cursor=next_cursor)

    async def fetch_variants(self, variant_ids):
        self.variant_batches.append(list(variant_ids))
        if self.gate is not None:
            await self.gate.wait()
        if self.variant_error is not None:
            raise self.variant_error
        return [self.variants[v] for v in variant_ids if v in self.variants]


@pytest.fixture
def fake_client():
    return FakeShopifyClient


class CorrelationDispatchRecorder:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1


@pytest.fixture
def correlation_dispatch():
    return CorrelationDispatchRecorder()


@pytest.fixture
def make_orchestrator(session_factory, test_settings, sleeps, correlation_dispatch):
    def _make(client, **kwargs):
        kwargs.setdefault("schedule_correlation", correlation_dispatch)
        return OrderSyncOrchestrator(
            session_factory,
            client_factory=lambda credentials: client,
            settings=test_settings,
            sleep=sleeps,
            **kwargs,
        )

    return _make


# ─── API client ─────────────────────────────────────────────────────────────


@pytest.fixture
def api_runners(session_factory, test_settings, sleeps, correlation_dispatch):
    """Orchestrators wired to the test database; `upstream` is swapped in per test."""

    class Runners:
        upstream = FakeShopifyClient()

    runners = Runners()
    runners.order_sync = OrderSyncOrchestrator(
        session_factory,
        client_factory=lambda credentials: runners.upstream,
        schedule_correlation=correlation_dispatch,
        settings=test_settings,
        sleep=sleeps,
    )
    runners.inventory_sync = InventorySyncRunner(
        session_factory,
        client_factory=lambda credentials: runners.upstream,
        settings=test_settings,
    )
    return runners


@pytest.fixture
async def client(session_factory, api_runners):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_order_sync] = lambda: api_runners.order_sync
    app.dependency_overrides[get_inventory_sync] = lambda: api_runners.inventory_sync

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
