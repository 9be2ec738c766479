"""
Paginated Sync Pipeline

Pulls orders or products from a sales channel page by page:

    IDLE → FETCHING_PAGE → TRANSFORMING → MERGING → (FETCHING_PAGE | DONE)

with ERROR reachable from any stage and CANCELLED when the caller abandons
the run at a page boundary. Each page is merged and committed before the
next one is requested, so an aborted run keeps everything it already
merged and reports the cursor of the last committed page.

The channel's ``last_sync_at`` only moves forward when a run reaches DONE;
the next run then asks the platform for records updated since that run
started.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import structlog

from core.errors import StockRouteError
from integrations.base import ExternalPlatformClient, FetchFilter
from routing.models import ChannelIntegration, EcommerceSettings, EntityKind, SyncDirection, Warehouse
from routing.resolver import resolve_order_warehouse, resolve_product_destinations
from sync.locks import SyncLocks, hold_sync_lock
from sync.merge import merge_page, natural_key
from sync.progress import ProgressObserver, SyncEvent
from sync.transform import transform_page

logger = structlog.get_logger()

# Matches the (store_id, platform, external_id) unique key on orders and products
KEY_FIELDS = ("platform", "external_id")

ORDER_LOCAL_FIELDS = ("order_id", "created_at", "warehouse_id", "notes")
PRODUCT_LOCAL_FIELDS = ("product_id", "created_at", "warehouse_ids")
# Stock belongs to the warehouses unless the platform is the inventory source
PRODUCT_STOCK_FIELDS = ("quantity", "stock_status")


def locally_owned_fields(entity_kind: EntityKind, settings: EcommerceSettings) -> tuple[str, ...]:
    if entity_kind == EntityKind.ORDERS:
        return ORDER_LOCAL_FIELDS
    if settings.sync_direction == SyncDirection.PLATFORM_TO_WAREHOUSES:
        return PRODUCT_LOCAL_FIELDS
    return PRODUCT_LOCAL_FIELDS + PRODUCT_STOCK_FIELDS


# ── Collaborators ────────────────────────────────────────────────────────


class WarehouseRegistry(Protocol):
    async def list_warehouses(self, store_id: str) -> list[Warehouse]: ...


class EntityStore(Protocol):
    async def get_existing(
        self, entity_kind: EntityKind, store_id: str, keys: list[tuple[Any, ...]]
    ) -> dict[tuple[Any, ...], dict[str, Any]]: ...

    async def upsert_page(self, entity_kind: EntityKind, records: list[dict[str, Any]]) -> int: ...


class ChannelStateWriter(Protocol):
    async def save(self, channel_id: str, partial: dict[str, Any]) -> None: ...


class SyncRunLog(Protocol):
    async def record_run(self, channel: ChannelIntegration, entity_kind: EntityKind, result: "SyncResult") -> None: ...


# ── Result types ─────────────────────────────────────────────────────────


class PipelineState(str, Enum):
    IDLE = "idle"
    FETCHING_PAGE = "fetching_page"
    TRANSFORMING = "transforming"
    MERGING = "merging"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass
class SyncResult:
    status: PipelineState
    records_processed: int = 0
    pages: int = 0
    end_cursor: str | None = None
    error: str | None = None
    error_origin: str | None = None
    failed_stage: PipelineState | None = None
    warnings: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def success(self) -> bool:
        return self.status == PipelineState.DONE

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "records_processed": self.records_processed,
            "pages": self.pages,
            "end_cursor": self.end_cursor,
            "error": self.error,
            "error_origin": self.error_origin,
            "warnings": self.warnings,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Pipeline ─────────────────────────────────────────────────────────────


class SyncPipeline:
    """One pipeline per platform client; safe to reuse across runs."""

    def __init__(
        self,
        client: ExternalPlatformClient,
        *,
        warehouses: WarehouseRegistry,
        entities: EntityStore,
        channel_state: ChannelStateWriter,
        locks: SyncLocks,
        observer: ProgressObserver | None = None,
        run_log: SyncRunLog | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.client = client
        self.warehouses = warehouses
        self.entities = entities
        self.channel_state = channel_state
        self.locks = locks
        self.observer = observer
        self.run_log = run_log
        self.clock = clock

    async def sync(
        self,
        channel: ChannelIntegration,
        entity_kind: EntityKind,
        cursor: str | None = None,
        *,
        cancel: asyncio.Event | None = None,
    ) -> SyncResult:
        """
        Run one sync for ``(channel, entity_kind)``.

        Raises ``SyncAlreadyRunning`` if another run holds the lock. Every
        other failure is reported in the returned ``SyncResult`` and written
        to the run log.
        """
        async with hold_sync_lock(self.locks, channel.id, entity_kind):
            result = await self._run(channel, entity_kind, cursor, cancel)

        if self.run_log is not None:
            try:
                await self.run_log.record_run(channel, entity_kind, result)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "sync.run_log_failed",
                    integration_id=channel.id,
                    entity_kind=entity_kind.value,
                    status=result.status.value,
                    error=str(exc),
                )
        return result

    async def _emit(self, channel: ChannelIntegration, entity_kind: EntityKind, stage: str, **kwargs) -> None:
        if self.observer is None:
            return
        try:
            await self.observer(
                SyncEvent(integration_id=channel.id, entity_kind=entity_kind.value, stage=stage, **kwargs)
            )
        except Exception as exc:
            logger.warning("sync.observer_failed", integration_id=channel.id, stage=stage, error=str(exc))

    async def _run(
        self,
        channel: ChannelIntegration,
        entity_kind: EntityKind,
        cursor: str | None,
        cancel: asyncio.Event | None,
    ) -> SyncResult:
        log = logger.bind(integration_id=channel.id, entity_kind=entity_kind.value)
        started_at = self.clock()
        result = SyncResult(status=PipelineState.IDLE, end_cursor=cursor, started_at=started_at)
        fetch_filter = FetchFilter(updated_at_min=channel.last_sync_at)
        state = PipelineState.IDLE

        log.info("sync.started", incremental=fetch_filter.is_incremental, resume_cursor=cursor)
        await self._emit(channel, entity_kind, "starting")

        try:
            settings = channel.ecommerce
            owned = locally_owned_fields(entity_kind, settings)
            warehouses = await self.warehouses.list_warehouses(channel.store_id)
            product_destinations: list[str] = []
            if entity_kind == EntityKind.PRODUCTS:
                product_destinations = resolve_product_destinations(settings.product_sync, settings.routing, warehouses)

            while True:
                if cancel is not None and cancel.is_set():
                    result.status = PipelineState.CANCELLED
                    break

                page_number = result.pages + 1
                state = PipelineState.FETCHING_PAGE
                await self._emit(channel, entity_kind, f"fetching-page {page_number}", page=page_number,
                                 records_processed=result.records_processed)
                page = await self.client.fetch_page(entity_kind, result.end_cursor, fetch_filter)
                if not page.records:
                    result.status = PipelineState.DONE
                    break

                state = PipelineState.TRANSFORMING
                records, warnings = transform_page(
                    entity_kind, page.records, store_id=channel.store_id, platform=channel.provider
                )
                for warning in warnings:
                    log.warning(
                        "sync.transform_warning",
                        external_id=warning.external_id,
                        field=warning.field,
                        value=warning.value,
                        message=warning.message,
                    )
                result.warnings += len(warnings)

                for record in records:
                    if entity_kind == EntityKind.ORDERS:
                        record["warehouse_id"] = resolve_order_warehouse(
                            settings.routing,
                            warehouses,
                            record.get("shipping_region_code"),
                            record.get("shipping_country_code"),
                        )
                    else:
                        record["warehouse_ids"] = list(product_destinations)

                state = PipelineState.MERGING
                await self._emit(channel, entity_kind, f"merging-page {page_number}", page=page_number,
                                 records_processed=result.records_processed)
                keys = [natural_key(r, KEY_FIELDS) for r in records]
                existing = await self.entities.get_existing(entity_kind, channel.store_id, keys)
                merged = merge_page(existing, records, KEY_FIELDS, owned)
                result.records_processed += await self.entities.upsert_page(entity_kind, merged)
                result.pages = page_number
                result.end_cursor = page.end_cursor or result.end_cursor
                log.info("sync.page.merged", page=page_number, records=len(merged))

                if not page.has_next_page:
                    result.status = PipelineState.DONE
                    break

        except StockRouteError as exc:
            result.status = PipelineState.ERROR
            result.error = exc.message
            result.error_origin = exc.origin
            result.failed_stage = state
            log.error(
                "sync.failed",
                stage=state.value,
                error=exc.message,
                origin=exc.origin,
                pages_committed=result.pages,
                records_processed=result.records_processed,
            )
        except Exception as exc:  # noqa: BLE001
            result.status = PipelineState.ERROR
            result.error = str(exc) or exc.__class__.__name__
            result.error_origin = "internal"
            result.failed_stage = state
            log.exception(
                "sync.crashed",
                stage=state.value,
                pages_committed=result.pages,
                records_processed=result.records_processed,
            )

        result.completed_at = self.clock()

        if result.status == PipelineState.DONE:
            await self.channel_state.save(channel.id, {"last_sync_at": started_at})
            channel.last_sync_at = started_at
            log.info("sync.completed", pages=result.pages, records_processed=result.records_processed)
            await self._emit(channel, entity_kind, "done", page=result.pages,
                             records_processed=result.records_processed)
        elif result.status == PipelineState.CANCELLED:
            log.info("sync.cancelled", pages=result.pages, end_cursor=result.end_cursor)
            await self._emit(channel, entity_kind, "cancelled", page=result.pages,
                             records_processed=result.records_processed)
        else:
            await self._emit(channel, entity_kind, "failed", page=result.pages,
                             records_processed=result.records_processed, detail=result.error)
        return result
