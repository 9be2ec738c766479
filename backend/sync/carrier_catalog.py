"""
Carrier catalog refresh.

Pulls a carrier's shipping services and boxes and reconciles them with each
warehouse's stored copy. Users toggle services and boxes on and off and
size their own boxes; none of that may be lost when the catalog refreshes.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import structlog

from integrations.base import CarrierCatalogClient
from sync.merge import merge_collection

logger = structlog.get_logger()

SERVICE_KEY = ("carrier", "service_code")
SERVICE_LOCAL_FIELDS = ("service_id", "is_active", "created_at")

BOX_KEY = ("carrier", "box_code")
BOX_LOCAL_FIELDS = ("box_id", "is_active", "created_at")

VARIABLE_BOX_CODES = {"PACKAGE_VARIABLE", "PACKAGE_GROUND"}


class CatalogStore(Protocol):
    async def list_services(self, warehouse_id: str, carrier: str) -> list[dict[str, Any]]: ...

    async def save_services(self, warehouse_id: str, records: list[dict[str, Any]]) -> int: ...

    async def list_boxes(self, warehouse_id: str, carrier: str) -> list[dict[str, Any]]: ...

    async def save_boxes(self, warehouse_id: str, records: list[dict[str, Any]]) -> int: ...


def is_customized_box(box: Mapping[str, Any]) -> bool:
    """Custom boxes, and variable boxes the user has given real dimensions."""
    if box.get("box_type") == "custom":
        return True
    if box.get("box_code") not in VARIABLE_BOX_CODES and not box.get("is_variable"):
        return False
    dims = [box.get("length") or 0, box.get("width") or 0, box.get("height") or 0]
    return all(float(d) > 0 for d in dims)


@dataclass
class CatalogRefreshResult:
    warehouse_id: str
    carrier: str
    services: int = 0
    boxes: int = 0


async def refresh_carrier_catalog(
    client: CarrierCatalogClient,
    store: CatalogStore,
    warehouse_id: str,
) -> CatalogRefreshResult:
    log = logger.bind(carrier=client.carrier, warehouse_id=warehouse_id)
    result = CatalogRefreshResult(warehouse_id=warehouse_id, carrier=client.carrier)

    fetched_services = [{**s, "carrier": client.carrier, "warehouse_id": warehouse_id} for s in await client.fetch_services()]
    existing_services = await store.list_services(warehouse_id, client.carrier)
    services = merge_collection(existing_services, fetched_services, SERVICE_KEY, SERVICE_LOCAL_FIELDS)
    result.services = await store.save_services(warehouse_id, services)

    fetched_boxes = [{**b, "carrier": client.carrier, "warehouse_id": warehouse_id} for b in await client.fetch_boxes()]
    existing_boxes = await store.list_boxes(warehouse_id, client.carrier)
    boxes = merge_collection(existing_boxes, fetched_boxes, BOX_KEY, BOX_LOCAL_FIELDS, keep_local=is_customized_box)
    result.boxes = await store.save_boxes(warehouse_id, boxes)

    log.info("carrier_catalog.refreshed", services=result.services, boxes=result.boxes)
    return result
