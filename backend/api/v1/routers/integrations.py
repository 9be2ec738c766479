"""
Integrations Router — channel configuration, Shopify OAuth, sync runs.

Internal errors (the user must edit the configuration) map to 4xx;
external ones (platform unreachable, reconnect required) map to 502.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import (
    get_client_factory,
    get_current_user,
    get_db,
    get_state_store,
    get_sync_locks,
    get_task_dispatcher,
    get_token_exchanger,
)
from connect.orchestrator import ConnectOrchestrator, ConnectRequest, ConnectState
from connect.state_store import StateStore
from core.config import get_settings
from core.errors import (
    ConfigInvalid,
    InvalidOAuthState,
    StockRouteError,
    SyncAlreadyRunning,
)
from db.models import ChannelIntegrationRow, Store
from db.stores import SqlConfigStore, SqlSyncRunLog, SqlWarehouseRegistry, channel_from_row
from integrations.shopify import verify_callback_hmac
from routing.conflicts import detect_conflicts
from routing.models import (
    EcommerceSettings,
    EntityKind,
    PlatformKind,
    ProductSyncConfig,
    ProductSyncMode,
    RegionAssignment,
    RoutingConfig,
    RoutingMode,
    SyncDirection,
)
from routing.regions import auto_assign_regions, normalize_region_code, unassigned_regions
from routing.resolver import resolve_product_destinations, resolve_routing_warehouses
from routing.validation import remove_selected_warehouse, validate_ecommerce_settings
from sync.locks import SyncLocks
from sync.pipeline import PipelineState
from sync.progress import RecordingObserver
from workers.sync import ChannelNotSyncable, run_channel_sync

router = APIRouter(prefix="/api/v1/integrations", tags=["integrations"])
settings = get_settings()


# ─── Schemas ────────────────────────────────────────────────────────────────


class IntegrationResponse(BaseModel):
    integration_id: UUID
    account_id: UUID
    store_id: UUID
    platform_kind: str
    provider: str
    name: str
    shop_domain: str | None
    status: str
    enabled: bool
    inventory_sync_enabled: bool
    sync_direction: str
    routing_config: dict[str, Any] | None
    product_sync_config: dict[str, Any] | None
    connected_at: datetime | None
    last_sync_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class IntegrationCreate(BaseModel):
    store_id: UUID
    provider: str = Field(min_length=1, max_length=50)
    name: str = Field(min_length=1, max_length=255)
    platform_kind: PlatformKind = PlatformKind.ECOMMERCE
    shipping_config: dict[str, Any] | None = None


class RegionAssignmentIn(BaseModel):
    warehouse_id: str
    regions: list[str] = []
    is_active: bool = True


class RoutingConfigIn(BaseModel):
    mode: RoutingMode = RoutingMode.SIMPLE
    primary_warehouse_id: str | None = None
    fallback_warehouse_id: str | None = None
    assignments: list[RegionAssignmentIn] = []

    def to_domain(self) -> RoutingConfig:
        return RoutingConfig(
            mode=self.mode,
            primary_warehouse_id=self.primary_warehouse_id or None,
            fallback_warehouse_id=self.fallback_warehouse_id or None,
            assignments=[
                RegionAssignment(
                    warehouse_id=a.warehouse_id,
                    regions=frozenset(normalize_region_code(r) for r in a.regions if r and r.strip()),
                    is_active=a.is_active,
                )
                for a in self.assignments
            ],
        )


class ProductSyncConfigIn(BaseModel):
    mode: ProductSyncMode = ProductSyncMode.PRIMARY_ONLY
    selected_warehouse_ids: list[str] = []

    def to_domain(self) -> ProductSyncConfig:
        return ProductSyncConfig(mode=self.mode, selected_warehouse_ids=list(self.selected_warehouse_ids))


class ConfigUpdate(BaseModel):
    routing_config: RoutingConfigIn | None = None
    product_sync_config: ProductSyncConfigIn | None = None
    inventory_sync_enabled: bool | None = None
    sync_direction: SyncDirection | None = None


class ConnectBody(BaseModel):
    shop: str
    routing_config: RoutingConfigIn
    product_sync_config: ProductSyncConfigIn = ProductSyncConfigIn()
    inventory_sync_enabled: bool = False
    sync_direction: SyncDirection = SyncDirection.MANUAL


class SyncBody(BaseModel):
    cursor: str | None = None


# ─── Helpers ────────────────────────────────────────────────────────────────


def _error_detail(exc: StockRouteError) -> dict[str, Any]:
    return {"message": exc.message, "reasons": exc.reasons, "origin": exc.origin}


async def _load_row(db: AsyncSession, integration_id: UUID, user: dict) -> ChannelIntegrationRow:
    row = await db.get(ChannelIntegrationRow, integration_id)
    if row is None or str(row.account_id) != str(user.get("account_id")):
        raise HTTPException(status_code=404, detail="Integration not found")
    return row


def _ecommerce_settings(row: ChannelIntegrationRow) -> EcommerceSettings:
    channel = channel_from_row(row)
    if not isinstance(channel.settings, EcommerceSettings):
        raise HTTPException(status_code=400, detail="Not an e-commerce integration")
    return channel.settings


# ─── CRUD ───────────────────────────────────────────────────────────────────


@router.get("/", response_model=list[IntegrationResponse])
async def list_integrations(
    store_id: UUID | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """List all channel integrations for the current account."""
    query = select(ChannelIntegrationRow).where(ChannelIntegrationRow.account_id == UUID(str(user["account_id"])))
    if store_id is not None:
        query = query.where(ChannelIntegrationRow.store_id == store_id)
    result = await db.execute(query.order_by(ChannelIntegrationRow.created_at))
    return result.scalars().all()


@router.post("/", response_model=IntegrationResponse, status_code=201)
async def create_integration(
    body: IntegrationCreate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Register a channel for a store. It starts disconnected."""
    store = await db.get(Store, body.store_id)
    if store is None or str(store.account_id) != str(user["account_id"]):
        raise HTTPException(status_code=404, detail="Store not found")

    row = ChannelIntegrationRow(
        account_id=store.account_id,
        store_id=store.store_id,
        platform_kind=body.platform_kind.value,
        provider=body.provider.lower(),
        name=body.name,
        status="disconnected",
        enabled=False,
        routing_config={},
        product_sync_config={},
        shipping_config=body.shipping_config or {},
    )
    db.add(row)
    await db.commit()
    await db.refresh(row)
    return row


@router.get("/{integration_id}", response_model=IntegrationResponse)
async def get_integration(
    integration_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    return await _load_row(db, integration_id, user)


@router.delete("/{integration_id}", status_code=204)
async def disconnect_integration(
    integration_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
    state_store: StateStore = Depends(get_state_store),
):
    """Disconnect a channel. The row is kept; the credential is discarded."""
    await _load_row(db, integration_id, user)
    config_store = SqlConfigStore(db)
    orchestrator = ConnectOrchestrator(config_store, SqlWarehouseRegistry(db), state_store)
    await orchestrator.disconnect(str(integration_id))


# ─── Configuration ──────────────────────────────────────────────────────────


@router.put("/{integration_id}/config")
async def update_config(
    integration_id: UUID,
    body: ConfigUpdate,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """
    Validate and save routing, product-sync and inventory settings.

    Returns the saved integration plus advisory sync-direction conflicts.
    """
    row = await _load_row(db, integration_id, user)
    current = _ecommerce_settings(row)
    proposed = EcommerceSettings(
        routing=body.routing_config.to_domain() if body.routing_config else current.routing,
        product_sync=body.product_sync_config.to_domain() if body.product_sync_config else current.product_sync,
        inventory_sync_enabled=(
            body.inventory_sync_enabled if body.inventory_sync_enabled is not None else current.inventory_sync_enabled
        ),
        sync_direction=body.sync_direction or current.sync_direction,
    )

    warehouses = await SqlWarehouseRegistry(db).list_warehouses(str(row.store_id))
    try:
        validated = validate_ecommerce_settings(proposed, warehouses)
    except ConfigInvalid as exc:
        raise HTTPException(status_code=422, detail=_error_detail(exc)) from exc

    config_store = SqlConfigStore(db)
    await config_store.save(
        str(integration_id),
        {
            "routing_config": validated.routing.to_dict(),
            "product_sync_config": validated.product_sync.to_dict(),
            "inventory_sync_enabled": validated.inventory_sync_enabled,
            "sync_direction": validated.sync_direction.value,
        },
    )
    channels = await config_store.list_channels(str(row.account_id))
    conflicts = detect_conflicts(channels, str(integration_id))
    await db.refresh(row)
    return {
        "integration": IntegrationResponse.model_validate(row).model_dump(mode="json"),
        "conflicts": [c.to_dict() for c in conflicts],
    }


@router.get("/{integration_id}/conflicts")
async def get_conflicts(
    integration_id: UUID,
    proposed_direction: SyncDirection | None = None,
    proposed_inventory_sync: bool | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Preview conflicts for the stored settings or for a proposed change."""
    row = await _load_row(db, integration_id, user)
    channels = await SqlConfigStore(db).list_channels(str(row.account_id))
    conflicts = detect_conflicts(
        channels,
        str(integration_id),
        proposed_direction=proposed_direction,
        proposed_inventory_sync=proposed_inventory_sync,
    )
    return {"conflicts": [c.to_dict() for c in conflicts]}


@router.get("/{integration_id}/routing")
async def preview_routing(
    integration_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Warehouses currently in routing and receiving product imports."""
    row = await _load_row(db, integration_id, user)
    current = _ecommerce_settings(row)
    warehouses = await SqlWarehouseRegistry(db).list_warehouses(str(row.store_id))
    try:
        routing_warehouses = resolve_routing_warehouses(current.routing, warehouses)
        destinations = resolve_product_destinations(current.product_sync, current.routing, warehouses)
    except ConfigInvalid as exc:
        raise HTTPException(status_code=422, detail=_error_detail(exc)) from exc
    return {
        "mode": current.routing.mode.value,
        "routing_warehouses": routing_warehouses,
        "product_destinations": destinations,
        "unassigned_regions": unassigned_regions(current.routing) if current.routing.mode == RoutingMode.ADVANCED else [],
    }


@router.post("/{integration_id}/routing/auto-assign")
async def auto_assign(
    integration_id: UUID,
    body: RoutingConfigIn,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Suggest a region split for the given assignments. Nothing is saved."""
    row = await _load_row(db, integration_id, user)
    warehouses = await SqlWarehouseRegistry(db).list_warehouses(str(row.store_id))
    suggested = auto_assign_regions(body.to_domain(), warehouses)
    return {"routing_config": suggested.to_dict(), "unassigned_regions": unassigned_regions(suggested)}


@router.delete("/{integration_id}/product-sync/warehouses/{warehouse_id}")
async def remove_product_destination(
    integration_id: UUID,
    warehouse_id: str,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    row = await _load_row(db, integration_id, user)
    current = _ecommerce_settings(row)
    try:
        updated = remove_selected_warehouse(current.product_sync, warehouse_id)
    except ConfigInvalid as exc:
        raise HTTPException(status_code=422, detail=_error_detail(exc)) from exc
    await SqlConfigStore(db).save(str(integration_id), {"product_sync_config": updated.to_dict()})
    return {"product_sync_config": updated.to_dict()}


# ─── Shopify OAuth ──────────────────────────────────────────────────────────


@router.post("/{integration_id}/connect")
async def connect_integration(
    integration_id: UUID,
    body: ConnectBody,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
    state_store: StateStore = Depends(get_state_store),
):
    """Save and verify the configuration, then hand back the OAuth URL."""
    row = await _load_row(db, integration_id, user)
    orchestrator = ConnectOrchestrator(
        SqlConfigStore(db),
        SqlWarehouseRegistry(db),
        state_store,
        state_ttl_seconds=settings.oauth_state_ttl_seconds,
    )
    result = await orchestrator.connect(
        ConnectRequest(
            account_id=str(row.account_id),
            store_id=str(row.store_id),
            channel_id=str(integration_id),
            shop=body.shop,
            settings=EcommerceSettings(
                routing=body.routing_config.to_domain(),
                product_sync=body.product_sync_config.to_domain(),
                inventory_sync_enabled=body.inventory_sync_enabled,
                sync_direction=body.sync_direction,
            ),
        )
    )
    if result.state == ConnectState.EDITING:
        raise HTTPException(status_code=422, detail={"state": result.state.value, "message": result.message, "reasons": result.reasons})
    if result.state == ConnectState.VERIFY_FAILED:
        raise HTTPException(status_code=409, detail={"state": result.state.value, "message": result.message, "reasons": result.reasons})
    return {"state": result.state.value, "authorization_url": result.authorization_url}


@router.get("/shopify/callback")
async def shopify_callback(
    request: Request,
    code: str,
    shop: str,
    state: str,
    db: AsyncSession = Depends(get_db),
    state_store: StateStore = Depends(get_state_store),
    exchange_code: Callable[..., Any] = Depends(get_token_exchanger),
    dispatch: Callable[[str, dict], Any] = Depends(get_task_dispatcher),
):
    """Handle the Shopify OAuth callback: verify, exchange the code, start the first sync."""
    if settings.shopify_api_secret and not verify_callback_hmac(dict(request.query_params), settings.shopify_api_secret):
        raise HTTPException(status_code=401, detail="Invalid callback signature")

    orchestrator = ConnectOrchestrator(SqlConfigStore(db), SqlWarehouseRegistry(db), state_store)
    try:
        context = await orchestrator.complete_authorization(state, shop)
    except InvalidOAuthState as exc:
        raise HTTPException(status_code=400, detail=_error_detail(exc)) from exc

    try:
        token = await exchange_code(context["shop"], code)
    except StockRouteError as exc:
        raise HTTPException(status_code=502, detail=_error_detail(exc)) from exc

    await orchestrator.finish_connection(context, {"access_token": token["access_token"], "scope": token.get("scope")})
    for kind in (EntityKind.ORDERS, EntityKind.PRODUCTS):
        dispatch("workers.sync.sync_channel", {"integration_id": context["channel_id"], "entity_kind": kind.value})
    return {"status": "connected", "integration_id": context["channel_id"], "shop": context["shop"]}


# ─── Sync ───────────────────────────────────────────────────────────────────


@router.post("/{integration_id}/sync")
async def trigger_sync(
    integration_id: UUID,
    entity_kind: EntityKind = Query(EntityKind.ORDERS),
    body: SyncBody | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
    locks: SyncLocks = Depends(get_sync_locks),
    client_factory: Callable[..., Any] = Depends(get_client_factory),
):
    """Run a sync inline and return its result with the stage trail."""
    await _load_row(db, integration_id, user)
    observer = RecordingObserver()
    try:
        result = await run_channel_sync(
            db,
            str(integration_id),
            entity_kind,
            locks=locks,
            observer=observer,
            cursor=body.cursor if body else None,
            client_factory=client_factory,
        )
    except ChannelNotSyncable as exc:
        raise HTTPException(status_code=409, detail={"message": "Integration cannot be synced", "reasons": [exc.reason]}) from exc
    except SyncAlreadyRunning as exc:
        raise HTTPException(status_code=409, detail=_error_detail(exc)) from exc

    payload = {**result.to_dict(), "stages": observer.stages}
    if result.status == PipelineState.ERROR:
        code = status.HTTP_502_BAD_GATEWAY if result.error_origin == "external" else 422
        raise HTTPException(status_code=code, detail=payload)
    return payload


@router.post("/{integration_id}/test")
async def test_connection(
    integration_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
    client_factory: Callable[..., Any] = Depends(get_client_factory),
):
    row = await _load_row(db, integration_id, user)
    if row.platform_kind != PlatformKind.ECOMMERCE.value or not row.credentials_encrypted:
        raise HTTPException(status_code=409, detail="Integration is not connected")
    credentials = await SqlConfigStore(db).read_credentials(str(integration_id))
    client = client_factory(row.provider, row.shop_domain, credentials, page_size=settings.sync_page_size)
    try:
        check = await client.test_connection()
    finally:
        await client.aclose()
    return {"success": check.success, "detail": check.detail, "metadata": check.metadata}


@router.get("/{integration_id}/sync-logs")
async def list_sync_logs(
    integration_id: UUID,
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    await _load_row(db, integration_id, user)
    runs = await SqlSyncRunLog(db).recent_runs(str(integration_id), limit=limit)
    return [
        {
            "sync_id": str(r.sync_id),
            "entity_kind": r.entity_kind,
            "status": r.status,
            "records_processed": r.records_processed,
            "pages": r.pages,
            "warnings": r.warnings,
            "end_cursor": r.end_cursor,
            "error": r.error,
            "error_origin": r.error_origin,
            "started_at": r.started_at.isoformat() if r.started_at else None,
            "completed_at": r.completed_at.isoformat() if r.completed_at else None,
        }
        for r in runs
    ]
