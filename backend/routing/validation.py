"""
Save-time validation for channel routing and inventory settings.

Configuration problems are rejected here with ``ConfigInvalid`` so that the
resolver never has to guess at routing time.
"""

from __future__ import annotations

import structlog

from core.errors import ConfigInvalid, InvalidRoutingConfig
from routing.models import (
    EcommerceSettings,
    ProductSyncConfig,
    ProductSyncMode,
    RoutingConfig,
    RoutingMode,
    SyncDirection,
    Warehouse,
)
from routing.regions import US_STATES

logger = structlog.get_logger()


def routing_config_errors(config: RoutingConfig, warehouses: list[Warehouse]) -> list[str]:
    """Return every problem with a routing config; empty list means valid."""
    errors: list[str] = []
    known = {w.id for w in warehouses}

    if not config.primary_warehouse_id:
        if warehouses:
            errors.append("primary_warehouse_required")
        return errors
    if config.primary_warehouse_id not in known:
        errors.append(f"primary_warehouse_unknown:{config.primary_warehouse_id}")

    if config.fallback_warehouse_id:
        if config.fallback_warehouse_id == config.primary_warehouse_id:
            errors.append("fallback_same_as_primary")
        elif config.fallback_warehouse_id not in known:
            errors.append(f"fallback_warehouse_unknown:{config.fallback_warehouse_id}")

    if config.mode == RoutingMode.ADVANCED:
        claimed_by: dict[str, str] = {}
        seen_warehouses: set[str] = set()
        for assignment in config.assignments:
            if assignment.warehouse_id not in known:
                errors.append(f"assignment_warehouse_unknown:{assignment.warehouse_id}")
            if assignment.warehouse_id in seen_warehouses:
                errors.append(f"assignment_duplicated:{assignment.warehouse_id}")
            seen_warehouses.add(assignment.warehouse_id)
            if not assignment.is_active:
                continue
            for region in sorted(assignment.regions):
                if region not in US_STATES:
                    errors.append(f"region_unknown:{region}")
                owner = claimed_by.get(region)
                if owner is not None and owner != assignment.warehouse_id:
                    errors.append(f"region_ambiguous:{region}:{owner},{assignment.warehouse_id}")
                claimed_by.setdefault(region, assignment.warehouse_id)

    return errors


def validate_routing_config(config: RoutingConfig, warehouses: list[Warehouse]) -> RoutingConfig:
    """Raise ``InvalidRoutingConfig`` unless the config is usable for routing."""
    errors = routing_config_errors(config, warehouses)
    if errors:
        logger.warning("routing.config_rejected", errors=errors)
        raise InvalidRoutingConfig("Routing configuration is invalid", reasons=errors)
    return config


def validate_product_sync_config(config: ProductSyncConfig, routing: RoutingConfig) -> ProductSyncConfig:
    if config.mode == ProductSyncMode.SPECIFIC_WAREHOUSES and not config.selected_warehouse_ids:
        raise ConfigInvalid(
            "Select at least one destination warehouse",
            reasons=["selected_warehouses_required"],
        )
    if config.mode == ProductSyncMode.PRIMARY_ONLY and not routing.primary_warehouse_id:
        raise ConfigInvalid("Primary-only product sync needs a primary warehouse", reasons=["primary_warehouse_required"])
    return config


def remove_selected_warehouse(config: ProductSyncConfig, warehouse_id: str) -> ProductSyncConfig:
    """Drop one destination; the last remaining destination cannot be removed."""
    remaining = [w for w in config.selected_warehouse_ids if w != warehouse_id]
    if config.mode == ProductSyncMode.SPECIFIC_WAREHOUSES and not remaining:
        raise ConfigInvalid("At least one warehouse must be selected", reasons=["minimum_one_destination"])
    return ProductSyncConfig(mode=config.mode, selected_warehouse_ids=remaining)


def normalize_inventory_settings(enabled: bool, direction: SyncDirection | str | None) -> tuple[bool, SyncDirection]:
    """Direction only means something while inventory sync is on; otherwise it is manual."""
    if not enabled:
        return False, SyncDirection.MANUAL
    return True, SyncDirection(direction or SyncDirection.MANUAL.value)


def validate_ecommerce_settings(settings: EcommerceSettings, warehouses: list[Warehouse]) -> EcommerceSettings:
    """Full save-time check; returns settings with the inventory invariant applied."""
    validate_routing_config(settings.routing, warehouses)
    validate_product_sync_config(settings.product_sync, settings.routing)
    enabled, direction = normalize_inventory_settings(settings.inventory_sync_enabled, settings.sync_direction)
    return EcommerceSettings(
        routing=settings.routing,
        product_sync=settings.product_sync,
        inventory_sync_enabled=enabled,
        sync_direction=direction,
    )
