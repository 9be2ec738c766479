"""
Routing and channel configuration types.

Channel integrations are a tagged variant on ``platform_kind``: e-commerce
channels carry routing, product-sync and inventory-sync settings, shipping
channels carry a carrier account reference. Stored as JSON on the
``channel_integrations`` row and rebuilt here with ``from_dict``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union


class PlatformKind(str, Enum):
    ECOMMERCE = "ecommerce"
    SHIPPING = "shipping"


class IntegrationStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class RoutingMode(str, Enum):
    SIMPLE = "simple"
    ADVANCED = "advanced"


class ProductSyncMode(str, Enum):
    ALL_ROUTING_WAREHOUSES = "all_routing_warehouses"
    PRIMARY_ONLY = "primary_only"
    SPECIFIC_WAREHOUSES = "specific_warehouses"


class SyncDirection(str, Enum):
    PLATFORM_TO_WAREHOUSES = "platform_to_warehouses"
    WAREHOUSES_TO_PLATFORM = "warehouses_to_platform"
    MANUAL = "manual"


class EntityKind(str, Enum):
    ORDERS = "orders"
    PRODUCTS = "products"


# ── Warehouses ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Warehouse:
    """Read-only view of a warehouse from the registry."""

    id: str
    name: str
    region_code: str | None = None  # US state code of the warehouse address


# ── Routing configuration ────────────────────────────────────────────────


@dataclass
class RegionAssignment:
    warehouse_id: str
    regions: frozenset[str] = field(default_factory=frozenset)
    is_active: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RegionAssignment":
        return cls(
            warehouse_id=str(data.get("warehouse_id") or ""),
            regions=frozenset(str(r).strip().upper() for r in data.get("regions") or [] if str(r).strip()),
            is_active=bool(data.get("is_active", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "warehouse_id": self.warehouse_id,
            "regions": sorted(self.regions),
            "is_active": self.is_active,
        }


@dataclass
class RoutingConfig:
    mode: RoutingMode = RoutingMode.SIMPLE
    primary_warehouse_id: str | None = None
    fallback_warehouse_id: str | None = None
    assignments: list[RegionAssignment] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RoutingConfig":
        data = data or {}
        return cls(
            mode=RoutingMode(data.get("mode") or RoutingMode.SIMPLE.value),
            primary_warehouse_id=data.get("primary_warehouse_id") or None,
            fallback_warehouse_id=data.get("fallback_warehouse_id") or None,
            assignments=[RegionAssignment.from_dict(a) for a in data.get("assignments") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "primary_warehouse_id": self.primary_warehouse_id,
            "fallback_warehouse_id": self.fallback_warehouse_id,
            "assignments": [a.to_dict() for a in self.assignments],
        }

    @property
    def active_assignments(self) -> list[RegionAssignment]:
        return [a for a in self.assignments if a.is_active]


@dataclass
class ProductSyncConfig:
    mode: ProductSyncMode = ProductSyncMode.PRIMARY_ONLY
    selected_warehouse_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProductSyncConfig":
        data = data or {}
        return cls(
            mode=ProductSyncMode(data.get("mode") or ProductSyncMode.PRIMARY_ONLY.value),
            selected_warehouse_ids=[str(w) for w in data.get("selected_warehouse_ids") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "selected_warehouse_ids": list(self.selected_warehouse_ids),
        }


# ── Channel variants ─────────────────────────────────────────────────────


@dataclass
class EcommerceSettings:
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    product_sync: ProductSyncConfig = field(default_factory=ProductSyncConfig)
    inventory_sync_enabled: bool = False
    sync_direction: SyncDirection = SyncDirection.MANUAL


@dataclass
class ShippingSettings:
    carrier: str = ""
    environment: str = "sandbox"


ChannelSettings = Union[EcommerceSettings, ShippingSettings]


@dataclass
class ChannelIntegration:
    """One external platform connection for one store."""

    id: str
    account_id: str
    store_id: str
    platform_kind: PlatformKind
    provider: str
    name: str
    settings: ChannelSettings
    status: IntegrationStatus = IntegrationStatus.DISCONNECTED
    enabled: bool = False
    connected_at: datetime | None = None
    last_sync_at: datetime | None = None

    @property
    def ecommerce(self) -> EcommerceSettings:
        """Narrow to the e-commerce variant or fail loudly."""
        if isinstance(self.settings, EcommerceSettings):
            return self.settings
        if isinstance(self.settings, ShippingSettings):
            raise TypeError(f"Channel {self.id} is a shipping channel")
        raise TypeError(f"Unknown settings variant for channel {self.id}")


def settings_from_row(
    platform_kind: PlatformKind,
    *,
    routing_config: dict[str, Any] | None,
    product_sync_config: dict[str, Any] | None,
    inventory_sync_enabled: bool,
    sync_direction: str | None,
    shipping_config: dict[str, Any] | None = None,
) -> ChannelSettings:
    """Build the settings variant for a stored channel row."""
    if platform_kind == PlatformKind.ECOMMERCE:
        return EcommerceSettings(
            routing=RoutingConfig.from_dict(routing_config),
            product_sync=ProductSyncConfig.from_dict(product_sync_config),
            inventory_sync_enabled=bool(inventory_sync_enabled),
            sync_direction=SyncDirection(sync_direction or SyncDirection.MANUAL.value),
        )
    if platform_kind == PlatformKind.SHIPPING:
        shipping_config = shipping_config or {}
        return ShippingSettings(
            carrier=str(shipping_config.get("carrier", "")),
            environment=str(shipping_config.get("environment", "sandbox")),
        )
    raise ValueError(f"Unsupported platform kind: {platform_kind}")
