"""
Sync worker tests — channel sync against SQLite, plus the Celery task wrapper.
"""

import asyncio
import uuid
from types import SimpleNamespace

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.errors import PlatformFetchError
from db.models import ChannelIntegrationRow, IntegrationSyncLog, Order, Store, Warehouse
from db.session import Base
from db.stores import SqlConfigStore, SqlEntityStore
from integrations.base import ConnectionCheck, ExternalPlatformClient, Page
from routing.models import EntityKind
from sync.locks import InMemorySyncLocks
from sync.pipeline import PipelineState
from workers.sync import ChannelNotSyncable, run_channel_sync, sync_channel


def _order(n, region="NV"):
    return {
        "id": f"gid://shopify/Order/{n}",
        "name": f"#{n}",
        "totalPriceSet": {"shopMoney": {"amount": "25.00", "currencyCode": "USD"}},
        "displayFulfillmentStatus": "UNFULFILLED",
        "displayFinancialStatus": "PAID",
        "createdAt": "2026-04-01T10:00:00Z",
        "shippingAddress": {"provinceCode": region, "countryCode": "US"},
    }


class PagedClient(ExternalPlatformClient):
    provider = "shopify"

    def __init__(self, pages, *, fail_at=None):
        super().__init__("acme.myshopify.com", {})
        self.pages = pages
        self.fail_at = fail_at
        self.closed = False

    async def test_connection(self):
        return ConnectionCheck(success=True)

    async def fetch_page(self, entity_kind, cursor=None, fetch_filter=None):
        index = 0 if cursor is None else int(cursor)
        if index == self.fail_at:
            raise PlatformFetchError("Shopify returned HTTP 502", status_code=502)
        if index >= len(self.pages):
            return Page()
        return Page(records=self.pages[index], has_next_page=index + 1 < len(self.pages), end_cursor=str(index + 1))

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
class TestRunChannelSync:
    async def test_orders_are_stored_and_routed(self, test_db, connected_channel):
        channel_id = str(connected_channel["channel"].integration_id)
        client = PagedClient([[_order(1), _order(2)], [_order(3)]])
        built = []

        def factory(provider, shop, credentials, *, page_size=50):
            built.append((provider, shop, credentials))
            return client

        result = await run_channel_sync(
            test_db, channel_id, EntityKind.ORDERS, locks=InMemorySyncLocks(), client_factory=factory
        )

        assert result.status == PipelineState.DONE
        assert result.records_processed == 3
        assert built == [("shopify", "acme.myshopify.com", {"access_token": "shpat_stored"})]
        assert client.closed is True

        orders = (await test_db.execute(select(Order).order_by(Order.external_id))).scalars().all()
        assert [o.external_id for o in orders] == ["1", "2", "3"]
        assert {str(o.warehouse_id) for o in orders} == {str(connected_channel["west"].warehouse_id)}

        channel = await SqlConfigStore(test_db).read(channel_id)
        assert channel.last_sync_at is not None

        logs = (await test_db.execute(select(IntegrationSyncLog))).scalars().all()
        assert [(log.entity_kind, log.status, log.records_processed) for log in logs] == [("orders", "done", 3)]

    async def test_resync_updates_without_duplicates_and_keeps_notes(self, test_db, connected_channel):
        channel_id = str(connected_channel["channel"].integration_id)
        locks = InMemorySyncLocks()

        await run_channel_sync(
            test_db, channel_id, EntityKind.ORDERS, locks=locks,
            client_factory=lambda *a, **k: PagedClient([[_order(1)]]),
        )
        order = (await test_db.execute(select(Order))).scalar_one()
        order.notes = "fragile"
        await test_db.commit()

        updated = dict(_order(1), displayFulfillmentStatus="FULFILLED")
        await run_channel_sync(
            test_db, channel_id, EntityKind.ORDERS, locks=locks,
            client_factory=lambda *a, **k: PagedClient([[updated]]),
        )

        orders = (await test_db.execute(select(Order))).scalars().all()
        assert len(orders) == 1
        await test_db.refresh(orders[0])
        assert orders[0].fulfillment_status == "fulfilled"
        assert orders[0].notes == "fragile"

    async def test_failed_page_reports_cursor_and_keeps_last_sync(self, test_db, connected_channel):
        channel_id = str(connected_channel["channel"].integration_id)

        result = await run_channel_sync(
            test_db, channel_id, EntityKind.ORDERS, locks=InMemorySyncLocks(),
            client_factory=lambda *a, **k: PagedClient([[_order(1)], [_order(2)]], fail_at=1),
        )

        assert result.status == PipelineState.ERROR
        assert result.error_origin == "external"
        assert result.end_cursor == "1"
        assert len((await test_db.execute(select(Order))).scalars().all()) == 1
        channel = await SqlConfigStore(test_db).read(channel_id)
        assert channel.last_sync_at is None

    async def test_disconnected_channel_is_not_synced(self, test_db, seeded_db):
        with pytest.raises(ChannelNotSyncable) as exc_info:
            await run_channel_sync(
                test_db, str(seeded_db["channel"].integration_id), EntityKind.ORDERS, locks=InMemorySyncLocks()
            )
        assert exc_info.value.reason == "not_connected"

    async def test_unknown_channel_is_not_synced(self, test_db):
        with pytest.raises(ChannelNotSyncable) as exc_info:
            await run_channel_sync(test_db, str(uuid.uuid4()), EntityKind.ORDERS, locks=InMemorySyncLocks())
        assert exc_info.value.reason == "not_found"


@pytest.mark.asyncio
class TestSqlEntityStore:
    async def test_same_external_id_on_two_platforms_stays_separate(self, test_db, seeded_db):
        store = SqlEntityStore(test_db)
        store_id = str(seeded_db["store"].store_id)

        await store.upsert_page(
            EntityKind.ORDERS,
            [{"store_id": store_id, "platform": "shopify", "external_id": "1001", "order_number": "#S1"}],
        )
        await store.upsert_page(
            EntityKind.ORDERS,
            [{"store_id": store_id, "platform": "woocommerce", "external_id": "1001", "order_number": "#W1"}],
        )

        rows = (await test_db.execute(select(Order).order_by(Order.platform))).scalars().all()
        assert [(o.platform, o.order_number) for o in rows] == [("shopify", "#S1"), ("woocommerce", "#W1")]

        existing = await store.get_existing(EntityKind.ORDERS, store_id, [("shopify", "1001")])
        assert list(existing) == [("shopify", "1001")]
        assert existing[("shopify", "1001")]["order_number"] == "#S1"

    async def test_repeated_page_updates_in_place(self, test_db, seeded_db):
        store = SqlEntityStore(test_db)
        record = {"store_id": str(seeded_db["store"].store_id), "platform": "shopify", "external_id": "7"}

        await store.upsert_page(EntityKind.ORDERS, [dict(record, order_number="#7")])
        await store.upsert_page(EntityKind.ORDERS, [dict(record, order_number="#7-b")])

        rows = (await test_db.execute(select(Order))).scalars().all()
        assert [o.order_number for o in rows] == ["#7-b"]


def _seed_connected_channel(db_url: str) -> str:
    engine = create_async_engine(db_url, echo=False)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async def _seed() -> str:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with session_factory() as db:
            store = Store(account_id=uuid.uuid4(), name="Task Store")
            db.add(store)
            await db.flush()
            warehouse = Warehouse(store_id=store.store_id, name="Reno DC", state="NV")
            db.add(warehouse)
            await db.flush()
            channel = ChannelIntegrationRow(
                account_id=store.account_id,
                store_id=store.store_id,
                provider="shopify",
                name="Task Shopify",
                shop_domain="task.myshopify.com",
                status="connected",
                enabled=True,
                routing_config={"mode": "simple", "primary_warehouse_id": str(warehouse.warehouse_id)},
                product_sync_config={"mode": "primary_only"},
            )
            db.add(channel)
            await db.commit()
            return str(channel.integration_id)

    try:
        return asyncio.run(_seed())
    finally:
        asyncio.run(engine.dispose())


def _task_settings(db_url: str):
    return SimpleNamespace(
        database_url=db_url,
        coordination_backend="memory",
        sync_page_size=50,
        sync_lock_ttl_seconds=60,
        redis_url="redis://unused",
    )


def test_sync_channel_task_runs_pipeline(tmp_path, monkeypatch):
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'sync_task.db'}"
    integration_id = _seed_connected_channel(db_url)

    monkeypatch.setattr("core.config.get_settings", lambda: _task_settings(db_url))
    monkeypatch.setattr("integrations.base.get_client", lambda *a, **k: PagedClient([[_order(1), _order(2)]]))

    summary = sync_channel.run(integration_id=integration_id, entity_kind="orders")

    assert summary["status"] == "done"
    assert summary["records_processed"] == 2


def test_sync_channel_task_skips_disconnected_channel(tmp_path, monkeypatch):
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'sync_task.db'}"
    _seed_connected_channel(db_url)

    monkeypatch.setattr("core.config.get_settings", lambda: _task_settings(db_url))

    summary = sync_channel.run(integration_id=str(uuid.uuid4()), entity_kind="orders")
    assert summary == {"status": "skipped", "reason": "not_found"}


def test_sync_channel_task_retries_external_failures(tmp_path, monkeypatch):
    db_url = f"sqlite+aiosqlite:///{tmp_path / 'sync_task.db'}"
    integration_id = _seed_connected_channel(db_url)

    monkeypatch.setattr("core.config.get_settings", lambda: _task_settings(db_url))
    monkeypatch.setattr(
        "integrations.base.get_client", lambda *a, **k: PagedClient([[_order(1)], [_order(2)]], fail_at=1)
    )

    # Called directly (outside a worker) Celery re-raises the retry exception
    with pytest.raises(PlatformFetchError):
        sync_channel.run(integration_id=integration_id, entity_kind="orders")
