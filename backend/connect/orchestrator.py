"""
Connect / Verify Orchestrator

Connecting a sales channel is an explicit state machine:

    EDITING → SAVING_CONFIG → VERIFYING → REDIRECTING
    EDITING → SAVING_CONFIG → VERIFY_FAILED → EDITING

Configuration is validated and persisted, then read back from the store,
and only a verified configuration earns an OAuth redirect. A channel can
therefore never be authorized against a routing config that was lost on
save. Each call returns a ``ConnectResult``; callers branch on ``state``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

import structlog

from connect.state_store import StateStore
from core.errors import ConfigInvalid, InvalidOAuthState
from core.security import generate_state_token
from integrations.shopify import build_authorization_url, normalize_shop_domain
from routing.models import (
    ChannelIntegration,
    EcommerceSettings,
    IntegrationStatus,
    RoutingMode,
    Warehouse,
)
from routing.validation import validate_ecommerce_settings

logger = structlog.get_logger()


class ConfigStore(Protocol):
    async def save(self, channel_id: str, partial: dict[str, Any]) -> None: ...

    async def read(self, channel_id: str) -> ChannelIntegration | None: ...


class WarehouseRegistry(Protocol):
    async def list_warehouses(self, store_id: str) -> list[Warehouse]: ...


class ConnectState(str, Enum):
    EDITING = "editing"
    SAVING_CONFIG = "saving_config"
    VERIFYING = "verifying"
    VERIFY_FAILED = "verify_failed"
    REDIRECTING = "redirecting"


@dataclass
class ConnectRequest:
    account_id: str
    store_id: str
    channel_id: str
    shop: str
    settings: EcommerceSettings


@dataclass
class ConnectResult:
    state: ConnectState
    authorization_url: str | None = None
    state_token: str | None = None
    message: str | None = None
    reasons: list[str] = field(default_factory=list)

    @property
    def redirecting(self) -> bool:
        return self.state == ConnectState.REDIRECTING


def verification_errors(stored: ChannelIntegration | None) -> list[str]:
    """What is missing from a read-back config; empty means it is usable."""
    if stored is None:
        return ["config_not_found"]
    settings = stored.settings
    if not isinstance(settings, EcommerceSettings):
        return ["not_an_ecommerce_channel"]

    errors = []
    if not settings.routing.primary_warehouse_id:
        errors.append("primary_warehouse_missing")
    if settings.routing.mode == RoutingMode.ADVANCED and not any(
        a.regions for a in settings.routing.active_assignments
    ):
        errors.append("advanced_routing_has_no_assignments")
    return errors


class ConnectOrchestrator:
    def __init__(
        self,
        config_store: ConfigStore,
        warehouses: WarehouseRegistry,
        state_store: StateStore,
        *,
        state_ttl_seconds: int = 600,
        authorization_url_builder: Callable[[str, str], str] = build_authorization_url,
        token_factory: Callable[[], str] = generate_state_token,
    ):
        self.config_store = config_store
        self.warehouses = warehouses
        self.state_store = state_store
        self.state_ttl_seconds = state_ttl_seconds
        self.authorization_url_builder = authorization_url_builder
        self.token_factory = token_factory

    async def connect(self, request: ConnectRequest) -> ConnectResult:
        log = logger.bind(integration_id=request.channel_id, store_id=request.store_id)

        # SAVING_CONFIG
        try:
            shop = normalize_shop_domain(request.shop)
            warehouses = await self.warehouses.list_warehouses(request.store_id)
            settings = validate_ecommerce_settings(request.settings, warehouses)
        except ConfigInvalid as exc:
            log.info("connect.config_rejected", reasons=exc.reasons)
            return ConnectResult(state=ConnectState.EDITING, message=exc.message, reasons=exc.reasons)

        try:
            await self.config_store.save(
                request.channel_id,
                {
                    "shop_domain": shop,
                    "routing_config": settings.routing.to_dict(),
                    "product_sync_config": settings.product_sync.to_dict(),
                    "inventory_sync_enabled": settings.inventory_sync_enabled,
                    "sync_direction": settings.sync_direction.value,
                },
            )
        except Exception as exc:  # noqa: BLE001
            log.error("connect.save_failed", error=str(exc), exc_info=True)
            return ConnectResult(
                state=ConnectState.VERIFY_FAILED,
                message="Configuration could not be saved; try again",
                reasons=["config_save_failed"],
            )
        log.info("connect.config_saved", shop=shop)

        # VERIFYING
        try:
            stored = await self.config_store.read(request.channel_id)
        except Exception as exc:  # noqa: BLE001
            log.error("connect.read_back_failed", error=str(exc), exc_info=True)
            return ConnectResult(
                state=ConnectState.VERIFY_FAILED,
                message="Saved configuration could not be read back; try again",
                reasons=["config_read_failed"],
            )
        errors = verification_errors(stored)
        if errors:
            log.warning("connect.verify_failed", reasons=errors)
            return ConnectResult(
                state=ConnectState.VERIFY_FAILED,
                message="Saved configuration could not be verified; review routing and try again",
                reasons=errors,
            )

        # REDIRECTING
        token = self.token_factory()
        stored_settings = stored.ecommerce
        await self.state_store.put(
            token,
            {
                "account_id": request.account_id,
                "store_id": request.store_id,
                "channel_id": request.channel_id,
                "shop": shop,
                "routing_config": stored_settings.routing.to_dict(),
                "inventory_sync_enabled": stored_settings.inventory_sync_enabled,
                "sync_direction": stored_settings.sync_direction.value,
                "issued_at": datetime.now(timezone.utc).isoformat(),
            },
            self.state_ttl_seconds,
        )
        log.info("connect.redirecting", shop=shop)
        return ConnectResult(
            state=ConnectState.REDIRECTING,
            authorization_url=self.authorization_url_builder(shop, token),
            state_token=token,
        )

    async def complete_authorization(self, state: str, shop: str) -> dict[str, Any]:
        """
        Consume the state token from an OAuth callback.

        Returns the context saved at redirect time. Unknown, expired, reused
        or shop-mismatched tokens raise ``InvalidOAuthState``.
        """
        context = await self.state_store.pop(state) if state else None
        if context is None:
            logger.warning("connect.oauth_state_rejected", reason="unknown_or_expired")
            raise InvalidOAuthState("OAuth state is unknown or expired", reasons=["state_unknown_or_expired"])

        try:
            callback_shop = normalize_shop_domain(shop)
        except ConfigInvalid:
            callback_shop = None
        if callback_shop != context.get("shop"):
            logger.warning(
                "connect.oauth_state_rejected",
                reason="shop_mismatch",
                integration_id=context.get("channel_id"),
            )
            raise InvalidOAuthState("OAuth callback shop does not match the request", reasons=["shop_mismatch"])
        return context

    async def finish_connection(self, context: dict[str, Any], credentials: dict[str, Any]) -> None:
        """Store the granted credential and mark the channel connected."""
        await self.config_store.save(
            context["channel_id"],
            {
                "credentials": credentials,
                "status": IntegrationStatus.CONNECTED.value,
                "enabled": True,
                "connected_at": datetime.now(timezone.utc),
            },
        )
        logger.info("connect.completed", integration_id=context["channel_id"], shop=context.get("shop"))

    async def disconnect(self, channel_id: str) -> None:
        """Logical delete: the row stays, the credential goes."""
        await self.config_store.save(
            channel_id,
            {
                "credentials": None,
                "status": IntegrationStatus.DISCONNECTED.value,
                "enabled": False,
            },
        )
        logger.info("connect.disconnected", integration_id=channel_id)
