"""
Routing Resolver

Decides which warehouses receive a channel's orders and product imports.
Pure functions over a routing config and the store's warehouse list.
"""

from __future__ import annotations

from core.errors import InvalidRoutingConfig
from routing.models import ProductSyncConfig, ProductSyncMode, RoutingConfig, RoutingMode, Warehouse
from routing.regions import normalize_region_code


def _require_primary(config: RoutingConfig, warehouses: list[Warehouse]) -> str | None:
    if not config.primary_warehouse_id:
        if warehouses:
            raise InvalidRoutingConfig(
                "A primary warehouse must be set before routing",
                reasons=["primary_warehouse_required"],
            )
        return None
    return config.primary_warehouse_id


def resolve_routing_warehouses(config: RoutingConfig, warehouses: list[Warehouse]) -> list[str]:
    """
    Ordered, de-duplicated set of warehouses in routing for a channel.

    Simple mode: primary, then the fallback when one is set. Assignments are
    ignored even when present.
    Advanced mode: primary, then each active assignment's warehouse in
    assignment order.
    """
    primary = _require_primary(config, warehouses)
    if primary is None:
        return []

    ordered = [primary]
    if config.mode == RoutingMode.SIMPLE:
        if config.fallback_warehouse_id and config.fallback_warehouse_id != primary:
            ordered.append(config.fallback_warehouse_id)
        return ordered

    for assignment in config.active_assignments:
        if assignment.warehouse_id not in ordered:
            ordered.append(assignment.warehouse_id)
    return ordered


def resolve_order_warehouse(
    config: RoutingConfig,
    warehouses: list[Warehouse],
    region_code: str | None,
    country_code: str | None = None,
) -> str | None:
    """Pick the single warehouse that fulfils one order."""
    primary = _require_primary(config, warehouses)
    if primary is None:
        return None

    if config.mode == RoutingMode.SIMPLE:
        registered = {w.id for w in warehouses}
        if primary not in registered and config.fallback_warehouse_id in registered:
            return config.fallback_warehouse_id
        return primary

    # Region assignments only cover US states
    if country_code and country_code.strip().upper() not in ("US", "USA"):
        return primary
    region = normalize_region_code(region_code)
    if not region:
        return primary
    registered = {w.id for w in warehouses}
    for assignment in config.active_assignments:
        if region in assignment.regions:
            # A warehouse removed after the config was saved no longer receives orders
            return assignment.warehouse_id if assignment.warehouse_id in registered else primary
    return primary


def resolve_product_destinations(
    product_sync: ProductSyncConfig,
    routing: RoutingConfig,
    warehouses: list[Warehouse],
) -> list[str]:
    """Warehouses that receive products imported from the channel."""
    if product_sync.mode == ProductSyncMode.ALL_ROUTING_WAREHOUSES:
        return resolve_routing_warehouses(routing, warehouses)

    if product_sync.mode == ProductSyncMode.PRIMARY_ONLY:
        primary = _require_primary(routing, warehouses)
        return [primary] if primary else []

    registered = {w.id for w in warehouses}
    selected: list[str] = []
    for warehouse_id in product_sync.selected_warehouse_ids:
        if warehouse_id in registered and warehouse_id not in selected:
            selected.append(warehouse_id)
    return selected
