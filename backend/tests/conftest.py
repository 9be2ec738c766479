"""
Test Configuration — Fixtures for async DB, test client, and mock data.

Each test gets its own in-memory SQLite database. StaticPool keeps a single
connection alive so the schema survives across sessions of the same test.
"""

import uuid

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from api.deps import (
    get_client_factory,
    get_current_user,
    get_db,
    get_state_store,
    get_sync_locks,
    get_task_dispatcher,
    get_token_exchanger,
)
from api.main import app
from connect.state_store import InMemoryStateStore
from db.session import Base
from sync.locks import InMemorySyncLocks

# Use in-memory SQLite for tests (no Postgres UUID / JSONB features).
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

ACCOUNT_ID = "00000000-0000-0000-0000-000000000001"
OTHER_ACCOUNT_ID = "00000000-0000-0000-0000-000000000002"


@pytest.fixture
async def test_engine():
    """Create a test database engine and build all tables."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_db(test_engine):
    session_factory = async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_user():
    """Mock authenticated user."""
    return {
        "sub": "auth0|test-user-id",
        "email": "test@stockroute.local",
        "account_id": ACCOUNT_ID,
    }


@pytest.fixture
def state_store():
    return InMemoryStateStore()


@pytest.fixture
def sync_locks():
    return InMemorySyncLocks()


@pytest.fixture
def platform_clients():
    """
    Registry of fake platform clients handed out by the API.

    Tests put a client under ``platform_clients["client"]``; the factory
    records the arguments it was built with.
    """
    return {"client": None, "built_with": []}


@pytest.fixture
def dispatched():
    return []


@pytest.fixture
def token_responses():
    return {"access_token": "shpat_test_token", "scope": "read_orders,read_products"}


@pytest.fixture
async def client(test_db, mock_user, state_store, sync_locks, platform_clients, dispatched, token_responses):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        yield test_db

    def override_get_current_user():
        return mock_user

    def override_client_factory():
        def _factory(provider, shop, credentials, *, page_size=50):
            platform_clients["built_with"].append((provider, shop, credentials, page_size))
            return platform_clients["client"]

        return _factory

    def override_token_exchanger():
        async def _exchange(shop, code):
            if isinstance(token_responses, Exception):
                raise token_responses
            return dict(token_responses, shop=shop, code=code)

        return _exchange

    def override_dispatcher():
        def _dispatch(task_name, kwargs):
            dispatched.append((task_name, kwargs))

        return _dispatch

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_state_store] = lambda: state_store
    app.dependency_overrides[get_sync_locks] = lambda: sync_locks
    app.dependency_overrides[get_client_factory] = override_client_factory
    app.dependency_overrides[get_token_exchanger] = override_token_exchanger
    app.dependency_overrides[get_task_dispatcher] = override_dispatcher

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
async def seeded_db(test_db):
    """Seed a store with three warehouses (West, Midwest, Northeast) and a Shopify channel."""
    from db.models import ChannelIntegrationRow, Store, Warehouse

    account_id = uuid.UUID(ACCOUNT_ID)

    store = Store(account_id=account_id, name="Acme Outdoor")
    test_db.add(store)
    await test_db.flush()

    west = Warehouse(store_id=store.store_id, name="Reno DC", city="Reno", state="NV", zip_code="89501")
    midwest = Warehouse(store_id=store.store_id, name="Chicago DC", city="Chicago", state="IL", zip_code="60601")
    east = Warehouse(store_id=store.store_id, name="Newark DC", city="Newark", state="NJ", zip_code="07102")
    test_db.add_all([west, midwest, east])
    await test_db.flush()

    channel = ChannelIntegrationRow(
        account_id=account_id,
        store_id=store.store_id,
        platform_kind="ecommerce",
        provider="shopify",
        name="Acme Shopify",
        status="disconnected",
        enabled=False,
        routing_config={},
        product_sync_config={},
    )
    test_db.add(channel)
    await test_db.commit()

    return {
        "account_id": account_id,
        "store": store,
        "west": west,
        "midwest": midwest,
        "east": east,
        "channel": channel,
    }


@pytest.fixture
async def connected_channel(test_db, seeded_db):
    """The seeded channel, connected with a stored credential and simple routing."""
    from db.stores import SqlConfigStore

    channel = seeded_db["channel"]
    await SqlConfigStore(test_db).save(
        str(channel.integration_id),
        {
            "shop_domain": "acme.myshopify.com",
            "routing_config": {
                "mode": "simple",
                "primary_warehouse_id": str(seeded_db["west"].warehouse_id),
                "fallback_warehouse_id": str(seeded_db["east"].warehouse_id),
                "assignments": [],
            },
            "product_sync_config": {"mode": "all_routing_warehouses", "selected_warehouse_ids": []},
            "credentials": {"access_token": "shpat_stored"},
            "status": "connected",
            "enabled": True,
        },
    )
    return seeded_db
