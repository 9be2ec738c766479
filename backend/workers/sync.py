"""
Data Sync Workers — channel synchronization.

Workers:
  1. sync_channel: page orders or products from a sales channel through the
     sync pipeline (incremental after the first completed run)
  2. refresh_carrier_catalogs: refresh shipping services and boxes for every
     warehouse of a shipping channel's store

The async ``run_*`` functions hold the actual work so the API can run a sync
inline and tests can call them against a plain session.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import structlog

from core.errors import EXTERNAL, PlatformFetchError, SyncAlreadyRunning
from routing.models import EntityKind, IntegrationStatus, PlatformKind, ShippingSettings
from sync.locks import SyncLocks
from sync.pipeline import SyncPipeline, SyncResult
from sync.progress import ProgressObserver
from workers.celery_app import celery_app

logger = structlog.get_logger()


class ChannelNotSyncable(Exception):
    """Channel is missing, disconnected, disabled, or of the wrong kind."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


async def run_channel_sync(
    db,
    integration_id: str,
    entity_kind: EntityKind,
    *,
    locks: SyncLocks,
    observer: ProgressObserver | None = None,
    cursor: str | None = None,
    cancel: asyncio.Event | None = None,
    client_factory: Callable[..., Any] | None = None,
) -> SyncResult:
    """
    Build the pipeline for one channel from its stored row and run it.

    Raises ``ChannelNotSyncable`` for channels that must not be synced and
    ``SyncAlreadyRunning`` when the run lock is taken.
    """
    from core.config import get_settings
    from db.stores import SqlConfigStore, SqlEntityStore, SqlSyncRunLog, SqlWarehouseRegistry
    from integrations.base import get_client

    settings = get_settings()
    config_store = SqlConfigStore(db)
    row = await config_store.get_row(integration_id)
    if row is None:
        raise ChannelNotSyncable("not_found")
    channel = await config_store.read(integration_id)
    if channel.platform_kind != PlatformKind.ECOMMERCE:
        raise ChannelNotSyncable("not_an_ecommerce_channel")
    if channel.status != IntegrationStatus.CONNECTED or not channel.enabled:
        raise ChannelNotSyncable("not_connected")

    credentials = await config_store.read_credentials(integration_id)
    factory = client_factory or get_client
    client = factory(channel.provider, row.shop_domain, credentials, page_size=settings.sync_page_size)
    pipeline = SyncPipeline(
        client,
        warehouses=SqlWarehouseRegistry(db),
        entities=SqlEntityStore(db),
        channel_state=config_store,
        locks=locks,
        observer=observer,
        run_log=SqlSyncRunLog(db),
    )
    try:
        return await pipeline.sync(channel, entity_kind, cursor, cancel=cancel)
    finally:
        await client.aclose()


async def run_carrier_refresh(
    db,
    integration_id: str,
    *,
    client_factory: Callable[..., Any] | None = None,
) -> dict:
    from db.stores import SqlCatalogStore, SqlConfigStore, SqlWarehouseRegistry
    from integrations.base import get_carrier_client
    from sync.carrier_catalog import refresh_carrier_catalog

    config_store = SqlConfigStore(db)
    channel = await config_store.read(integration_id)
    if channel is None or not isinstance(channel.settings, ShippingSettings):
        raise ChannelNotSyncable("not_a_shipping_channel")

    credentials = await config_store.read_credentials(integration_id)
    factory = client_factory or get_carrier_client
    client = factory(channel.settings.carrier, credentials)
    if client is None:
        logger.warning("carrier_catalog.no_client", carrier=channel.settings.carrier, integration_id=integration_id)
        return {"status": "skipped", "reason": "no_carrier_client", "carrier": channel.settings.carrier}

    catalog_store = SqlCatalogStore(db)
    warehouses = await SqlWarehouseRegistry(db).list_warehouses(channel.store_id)
    refreshed = []
    for warehouse in warehouses:
        result = await refresh_carrier_catalog(client, catalog_store, warehouse.id)
        refreshed.append({"warehouse_id": warehouse.id, "services": result.services, "boxes": result.boxes})
    return {"status": "success", "carrier": channel.settings.carrier, "warehouses": refreshed}


def _coordination(settings):
    """Locks and progress publisher shared by every worker process."""
    import redis.asyncio as aioredis

    from sync.locks import InMemorySyncLocks, RedisSyncLocks

    if settings.coordination_backend == "memory":
        return InMemorySyncLocks(), None
    redis = aioredis.from_url(settings.redis_url)
    return RedisSyncLocks(redis, ttl_seconds=settings.sync_lock_ttl_seconds), redis


@celery_app.task(
    name="workers.sync.sync_channel",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
    acks_late=True,
)
def sync_channel(self, integration_id: str, entity_kind: str = "orders", cursor: str | None = None):
    """
    Sync orders or products for one channel.
    Scheduled via Celery Beat and enqueued after a successful OAuth callback.

    External failures are retried from the cursor of the last committed page.
    """
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    run_id = self.request.id or "manual"
    kind = EntityKind(entity_kind)
    log = logger.bind(integration_id=integration_id, entity_kind=kind.value, run_id=run_id)
    log.info("sync.task.started", resume_cursor=cursor)

    async def _sync():
        from core.config import get_settings
        from db.stores import SqlConfigStore
        from sync.progress import RedisProgressPublisher

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        locks, redis = _coordination(settings)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                observer = None
                if redis is not None:
                    channel = await SqlConfigStore(db).read(integration_id)
                    if channel is not None:
                        observer = RedisProgressPublisher(redis, channel.account_id)
                try:
                    result = await run_channel_sync(db, integration_id, kind, locks=locks, observer=observer, cursor=cursor)
                except ChannelNotSyncable as exc:
                    log.warning("sync.task.skipped", reason=exc.reason)
                    return {"status": "skipped", "reason": exc.reason}
                except SyncAlreadyRunning:
                    return {"status": "skipped", "reason": "already_running"}
                return result.to_dict()
        finally:
            if redis is not None:
                await redis.aclose()
            await engine.dispose()

    try:
        summary = asyncio.run(_sync())
    except Exception as exc:
        log.error("sync.task.failed", error=str(exc))
        raise

    if summary.get("status") == "error" and summary.get("error_origin") == EXTERNAL:
        log.warning("sync.task.retrying", error=summary.get("error"), end_cursor=summary.get("end_cursor"))
        raise self.retry(
            exc=PlatformFetchError(summary.get("error") or "platform fetch failed"),
            kwargs={"integration_id": integration_id, "entity_kind": kind.value, "cursor": summary.get("end_cursor")},
        )
    return summary


@celery_app.task(
    name="workers.sync.refresh_carrier_catalogs",
    bind=True,
    max_retries=3,
    default_retry_delay=300,
    acks_late=True,
)
def refresh_carrier_catalogs(self, integration_id: str):
    """
    Refresh carrier services and boxes for a shipping channel.
    Scheduled via Celery Beat (daily).
    """
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    run_id = self.request.id or "manual"
    logger.info("carrier_catalog.task.started", integration_id=integration_id, run_id=run_id)

    async def _refresh():
        from core.config import get_settings

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                try:
                    return await run_carrier_refresh(db, integration_id)
                except ChannelNotSyncable as exc:
                    return {"status": "skipped", "reason": exc.reason}
        finally:
            await engine.dispose()

    try:
        return asyncio.run(_refresh())
    except PlatformFetchError as exc:
        logger.error("carrier_catalog.task.api_error", integration_id=integration_id, error=exc.message)
        raise self.retry(exc=exc)
    except Exception as exc:
        logger.error("carrier_catalog.task.failed", integration_id=integration_id, error=str(exc))
        raise
