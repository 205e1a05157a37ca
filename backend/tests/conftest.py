"""
Test Configuration — Fixtures for async DB, test client, and seed data.

Each test gets its own in-memory SQLite database. Application code commits
and opens SAVEPOINTs freely, so there is no outer rollback transaction;
the database is simply dropped with the engine.
"""

import uuid
from datetime import datetime, timedelta

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import get_db
from api.main import app
from api.v1.routers.analysis import get_session_factory
from db.session import Base

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

SHOP_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
NOW = datetime(2026, 3, 10, 12, 0, 0)


@pytest.fixture
async def test_engine():
    """Fresh in-memory database with all tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite defers BEGIN, which breaks SAVEPOINT; emit it ourselves.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
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
async def client(test_db, session_factory):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def seeded_shop(test_db):
    """An analysis-enabled shop with Slack + webhook delivery turned on."""
    from db.models import NotificationSetting, Shop

    shop = Shop(
        shop_id=SHOP_ID,
        domain="test-store.myshopify.com",
        status="active",
        ai_predictions_enabled=True,
        low_stock_threshold=10,
    )
    test_db.add(shop)
    await test_db.flush()

    setting = NotificationSetting(
        shop_id=SHOP_ID,
        slack_enabled=True,
        slack_webhook_url="https://hooks.slack.test/services/T000/B000/XXX",
        webhook_enabled=True,
        webhook_url="https://merchant.test/hooks/inventory",
        webhook_secret="whsec_test",
        low_stock_threshold=10,
        critical_stock_threshold_units=5,
        critical_stockout_days=3,
    )
    test_db.add(setting)
    await test_db.commit()
    return {"shop": shop, "setting": setting}


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_product(test_db):
    """
    Insert a product with an optional stock record and daily sales.

    `daily_units[i]` is the quantity sold i+1 days before NOW.
    """
    from db.models import InventoryLevel, Product, VelocitySample

    async def _make(title, stock=None, daily_units=None, shop_id=SHOP_ID):
        product = Product(shop_id=shop_id, title=title)
        test_db.add(product)
        await test_db.flush()
        if stock is not None:
            test_db.add(InventoryLevel(product_id=product.product_id, location_name="Main", quantity=stock))
        for offset, units in enumerate(daily_units or [], start=1):
            test_db.add(
                VelocitySample(product_id=product.product_id, date=NOW - timedelta(days=offset), units_sold=units)
            )
        await test_db.commit()
        return product

    return _make


class RecordingHandler:
    """
    httpx MockTransport handler that records requests and replays outcomes.

    Each outcome is a status code, a (status, json) pair, or an exception to
    raise. The last outcome repeats once the list runs out.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes) or [200]
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self.outcomes[min(len(self.requests), len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, tuple):
            status_code, body = outcome
            return httpx.Response(status_code, json=body)
        return httpx.Response(outcome, json={"ok": 200 <= outcome < 300})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def http_mock():
    """Factory for a RecordingHandler; call with the outcomes to replay."""
    return RecordingHandler


@pytest.fixture
def recorded_sleep():
    """Async sleep replacement that records requested delays."""
    delays: list[float] = []

    async def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep
