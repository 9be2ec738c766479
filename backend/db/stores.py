"""
SQL-backed collaborators for the sync core.

Each class wraps one ``AsyncSession`` and implements one of the small
interfaces the routing, connect and sync modules depend on. Domain ids
are strings; the tables use UUIDs.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from core.security import decrypt_credentials, encrypt_credentials
from db.models import (
    ChannelIntegrationRow,
    IntegrationSyncLog,
    Order,
    Product,
    ShippingBox,
    ShippingService,
)
from db.models import Warehouse as WarehouseRow
from routing.models import (
    ChannelIntegration,
    EntityKind,
    IntegrationStatus,
    PlatformKind,
    SyncDirection,
    Warehouse,
    settings_from_row,
)
from sync.pipeline import SyncResult

logger = structlog.get_logger()

ENTITY_MODELS = {
    EntityKind.ORDERS: Order,
    EntityKind.PRODUCTS: Product,
}

_CONFIG_JSON_FIELDS = ("routing_config", "product_sync_config", "shipping_config")
_CONFIG_SCALAR_FIELDS = (
    "name",
    "shop_domain",
    "status",
    "enabled",
    "inventory_sync_enabled",
    "sync_direction",
    "connected_at",
    "last_sync_at",
)


def _as_uuid(value: str | uuid.UUID) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _naive_utc(value: datetime | None) -> datetime | None:
    """Stored DateTime columns are naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _aware_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def row_to_dict(row: Any) -> dict[str, Any]:
    return {column.key: getattr(row, column.key) for column in row.__table__.columns}


def channel_from_row(row: ChannelIntegrationRow) -> ChannelIntegration:
    platform_kind = PlatformKind(row.platform_kind)
    return ChannelIntegration(
        id=str(row.integration_id),
        account_id=str(row.account_id),
        store_id=str(row.store_id),
        platform_kind=platform_kind,
        provider=row.provider,
        name=row.name,
        settings=settings_from_row(
            platform_kind,
            routing_config=row.routing_config,
            product_sync_config=row.product_sync_config,
            inventory_sync_enabled=row.inventory_sync_enabled,
            sync_direction=row.sync_direction,
            shipping_config=row.shipping_config,
        ),
        status=IntegrationStatus(row.status),
        enabled=bool(row.enabled),
        connected_at=_aware_utc(row.connected_at),
        last_sync_at=_aware_utc(row.last_sync_at),
    )


# ── Config store ─────────────────────────────────────────────────────────


class SqlConfigStore:
    """Partial, merge-on-save writes to ``channel_integrations``."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_row(self, channel_id: str) -> ChannelIntegrationRow | None:
        try:
            key = _as_uuid(channel_id)
        except ValueError:
            return None
        return await self.session.get(ChannelIntegrationRow, key)

    async def save(self, channel_id: str, partial: dict[str, Any]) -> None:
        row = await self.get_row(channel_id)
        if row is None:
            raise LookupError(f"Channel integration {channel_id} not found")
        unknown = set(partial) - set(_CONFIG_JSON_FIELDS) - set(_CONFIG_SCALAR_FIELDS) - {"credentials"}
        if unknown:
            raise ValueError(f"Unknown channel fields: {sorted(unknown)}")

        for field in _CONFIG_JSON_FIELDS:
            if field in partial:
                # Reassign so SQLAlchemy sees the JSON change
                setattr(row, field, {**(getattr(row, field) or {}), **(partial[field] or {})})
        for field in _CONFIG_SCALAR_FIELDS:
            if field in partial:
                value = partial[field]
                if isinstance(value, datetime):
                    value = _naive_utc(value)
                setattr(row, field, value)
        if "credentials" in partial:
            credentials = partial["credentials"]
            row.credentials_encrypted = encrypt_credentials(credentials) if credentials else None

        if not row.inventory_sync_enabled:
            row.sync_direction = SyncDirection.MANUAL.value

        await self.session.commit()

    async def read(self, channel_id: str) -> ChannelIntegration | None:
        row = await self.get_row(channel_id)
        if row is None:
            return None
        await self.session.refresh(row)
        return channel_from_row(row)

    async def read_credentials(self, channel_id: str) -> dict[str, Any]:
        row = await self.get_row(channel_id)
        if row is None:
            return {}
        return decrypt_credentials(row.credentials_encrypted)

    async def list_channels(self, account_id: str, store_id: str | None = None) -> list[ChannelIntegration]:
        query = select(ChannelIntegrationRow).where(ChannelIntegrationRow.account_id == _as_uuid(account_id))
        if store_id is not None:
            query = query.where(ChannelIntegrationRow.store_id == _as_uuid(store_id))
        result = await self.session.execute(query.order_by(ChannelIntegrationRow.created_at))
        return [channel_from_row(row) for row in result.scalars().all()]


# ── Warehouse registry ───────────────────────────────────────────────────


class SqlWarehouseRegistry:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_warehouses(self, store_id: str) -> list[Warehouse]:
        result = await self.session.execute(
            select(WarehouseRow)
            .where(WarehouseRow.store_id == _as_uuid(store_id), WarehouseRow.is_active.is_(True))
            .order_by(WarehouseRow.created_at)
        )
        return [
            Warehouse(id=str(w.warehouse_id), name=w.name, region_code=w.state)
            for w in result.scalars().all()
        ]


# ── Entity store ─────────────────────────────────────────────────────────


class SqlEntityStore:
    """Orders and products keyed by ``(platform, external_id)`` within a store."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _rows(self, entity_kind: EntityKind, store_id: Any, keys: list[tuple[str, str]]) -> list[Any]:
        if not keys:
            return []
        model = ENTITY_MODELS[entity_kind]
        by_platform: dict[str, list[str]] = {}
        for platform, external_id in keys:
            by_platform.setdefault(platform, []).append(external_id)
        result = await self.session.execute(
            select(model).where(
                model.store_id == _as_uuid(store_id),
                or_(
                    *(
                        and_(model.platform == platform, model.external_id.in_(external_ids))
                        for platform, external_ids in by_platform.items()
                    )
                ),
            )
        )
        return list(result.scalars().all())

    async def get_existing(
        self, entity_kind: EntityKind, store_id: str, keys: list[tuple[Any, ...]]
    ) -> dict[tuple[Any, ...], dict[str, Any]]:
        rows = await self._rows(entity_kind, store_id, [(k[0], k[1]) for k in keys])
        return {(row.platform, row.external_id): row_to_dict(row) for row in rows}

    async def upsert_page(self, entity_kind: EntityKind, records: list[dict[str, Any]]) -> int:
        """Insert new records, update known ones. Safe to repeat for the same page."""
        if not records:
            return 0
        model = ENTITY_MODELS[entity_kind]
        columns = {c.key for c in model.__table__.columns}
        store_id = records[0]["store_id"]
        keys = [(r["platform"], r["external_id"]) for r in records]
        existing = {(row.platform, row.external_id): row for row in await self._rows(entity_kind, store_id, keys)}

        try:
            for key, record in zip(keys, records):
                row = existing.get(key)
                if row is None:
                    row = model()
                    self.session.add(row)
                    existing[key] = row
                for field, value in record.items():
                    if field in columns:
                        setattr(row, field, value)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise
        return len(records)


# ── Sync run log ─────────────────────────────────────────────────────────


class SqlSyncRunLog:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def record_run(self, channel: ChannelIntegration, entity_kind: EntityKind, result: SyncResult) -> None:
        self.session.add(
            IntegrationSyncLog(
                integration_id=_as_uuid(channel.id),
                entity_kind=entity_kind.value,
                status=result.status.value,
                records_processed=result.records_processed,
                pages=result.pages,
                warnings=result.warnings,
                end_cursor=result.end_cursor,
                error=result.error,
                error_origin=result.error_origin,
                started_at=result.started_at,
                completed_at=result.completed_at,
            )
        )
        await self.session.commit()

    async def recent_runs(self, channel_id: str, limit: int = 20) -> list[IntegrationSyncLog]:
        result = await self.session.execute(
            select(IntegrationSyncLog)
            .where(IntegrationSyncLog.integration_id == _as_uuid(channel_id))
            .order_by(IntegrationSyncLog.started_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


# ── Carrier catalog store ────────────────────────────────────────────────


class SqlCatalogStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _list(self, model: Any, warehouse_id: str, carrier: str) -> list[dict[str, Any]]:
        result = await self.session.execute(
            select(model).where(model.warehouse_id == _as_uuid(warehouse_id), model.carrier == carrier)
        )
        return [row_to_dict(row) for row in result.scalars().all()]

    async def _save(self, model: Any, id_field: str, records: list[dict[str, Any]]) -> int:
        columns = {c.key for c in model.__table__.columns}
        for record in records:
            row = await self.session.get(model, record[id_field]) if record.get(id_field) else None
            if row is None:
                row = model()
                self.session.add(row)
            for key, value in record.items():
                if key in columns:
                    setattr(row, key, value)
        await self.session.commit()
        return len(records)

    async def list_services(self, warehouse_id: str, carrier: str) -> list[dict[str, Any]]:
        return await self._list(ShippingService, warehouse_id, carrier)

    async def save_services(self, warehouse_id: str, records: list[dict[str, Any]]) -> int:
        return await self._save(ShippingService, "service_id", records)

    async def list_boxes(self, warehouse_id: str, carrier: str) -> list[dict[str, Any]]:
        return await self._list(ShippingBox, warehouse_id, carrier)

    async def save_boxes(self, warehouse_id: str, records: list[dict[str, Any]]) -> int:
        return await self._save(ShippingBox, "box_id", records)
