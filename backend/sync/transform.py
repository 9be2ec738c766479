"""
Platform record → local record mapping.

Pure and deterministic: the same platform node always yields the same
record. Anything that can't be mapped cleanly falls back to a documented
default and is reported as a ``TransformWarning`` instead of failing the
page.

Weights are normalized to ounces; money stays ``Decimal`` with its
currency.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from core.errors import TransformWarning
from routing.models import EntityKind

FULFILLMENT_STATUS_MAP = {
    "FULFILLED": "fulfilled",
    "PARTIALLY_FULFILLED": "partially_fulfilled",
    "UNFULFILLED": "unfulfilled",
    "RESTOCKED": "cancelled",
    "PENDING_FULFILLMENT": "pending",
    "OPEN": "unfulfilled",
    "IN_PROGRESS": "processing",
    "ON_HOLD": "on_hold",
    "SCHEDULED": "scheduled",
}
DEFAULT_FULFILLMENT_STATUS = "unfulfilled"

FINANCIAL_STATUS_MAP = {
    "PENDING": "pending",
    "AUTHORIZED": "processing",
    "PAID": "paid",
    "PARTIALLY_PAID": "partially_paid",
    "REFUNDED": "refunded",
    "PARTIALLY_REFUNDED": "partially_refunded",
    "VOIDED": "cancelled",
    "EXPIRED": "expired",
}

PRODUCT_STATUS_MAP = {
    "ACTIVE": "active",
    "DRAFT": "draft",
    "ARCHIVED": "archived",
}
DEFAULT_PRODUCT_STATUS = "inactive"

# Multiplier to ounces
WEIGHT_TO_OUNCES = {
    "GRAMS": 1 / 28.3495,
    "KILOGRAMS": 35.274,
    "POUNDS": 16.0,
    "OUNCES": 1.0,
}

LOW_STOCK_THRESHOLD = 10


# ── Scalar helpers ───────────────────────────────────────────────────────


class _Warnings:
    """Collects warnings for one record."""

    def __init__(self, external_id: str):
        self.external_id = external_id
        self.items: list[TransformWarning] = []

    def add(self, field: str, value: Any, message: str) -> None:
        self.items.append(
            TransformWarning(
                external_id=self.external_id,
                field=field,
                value=None if value is None else str(value),
                message=message,
            )
        )


def gid_to_id(gid: str | None) -> str:
    if not gid:
        return ""
    return str(gid).rsplit("/", 1)[-1]


def parse_timestamp(value: Any, field: str, warnings: _Warnings) -> datetime | None:
    if not value:
        return None
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        warnings.add(field, value, "not an ISO-8601 timestamp; leaving empty")
        return None


def to_int(value: Any, field: str, warnings: _Warnings) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        warnings.add(field, value, "not a whole number; using 0")
        return 0


def to_decimal(value: Any, field: str, warnings: _Warnings) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        warnings.add(field, value, "not a decimal amount; using 0")
        return Decimal("0")


def money(money_set: dict[str, Any] | None, field: str, warnings: _Warnings) -> tuple[Decimal, str | None]:
    shop_money = (money_set or {}).get("shopMoney") or {}
    return to_decimal(shop_money.get("amount"), field, warnings), shop_money.get("currencyCode")


def weight_to_ounces(weight: dict[str, Any] | None, field: str, warnings: _Warnings) -> float:
    """``{"value": 500, "unit": "GRAMS"}`` -> 17.64. Unknown units count as 0."""
    if not weight or weight.get("value") in (None, ""):
        return 0.0
    unit = str(weight.get("unit") or "").upper()
    factor = WEIGHT_TO_OUNCES.get(unit)
    if factor is None:
        warnings.add(field, unit or None, "unknown weight unit; using 0")
        return 0.0
    try:
        value = float(weight["value"])
    except (TypeError, ValueError):
        warnings.add(field, weight.get("value"), "weight is not numeric; using 0")
        return 0.0
    return round(value * factor, 2)


def stock_status(quantity: int) -> str:
    if quantity > LOW_STOCK_THRESHOLD:
        return "in_stock"
    if quantity > 0:
        return "low_stock"
    return "out_of_stock"


def map_fulfillment_status(value: str | None, warnings: _Warnings) -> str:
    if value is None:
        return DEFAULT_FULFILLMENT_STATUS
    mapped = FULFILLMENT_STATUS_MAP.get(value)
    if mapped is None:
        warnings.add("fulfillment_status", value, f"unmapped status; using {DEFAULT_FULFILLMENT_STATUS}")
        return DEFAULT_FULFILLMENT_STATUS
    return mapped


def map_financial_status(value: str | None, warnings: _Warnings) -> str:
    if value is None:
        return "pending"
    mapped = FINANCIAL_STATUS_MAP.get(value)
    if mapped is None:
        warnings.add("financial_status", value, "unmapped status; passing through lower-cased")
        return value.lower()
    return mapped


def map_product_status(value: str | None, warnings: _Warnings) -> str:
    mapped = PRODUCT_STATUS_MAP.get(value or "")
    if mapped is None:
        warnings.add("status", value, f"unmapped status; using {DEFAULT_PRODUCT_STATUS}")
        return DEFAULT_PRODUCT_STATUS
    return mapped


def _edges(connection: dict[str, Any] | None) -> list[dict[str, Any]]:
    return [edge["node"] for edge in (connection or {}).get("edges") or []]


def _variant_weight(variant: dict[str, Any] | None) -> dict[str, Any] | None:
    item = (variant or {}).get("inventoryItem") or {}
    return (item.get("measurement") or {}).get("weight")


# ── Orders ───────────────────────────────────────────────────────────────


def map_order(node: dict[str, Any], *, store_id: str, platform: str = "shopify") -> tuple[dict[str, Any], list[TransformWarning]]:
    external_id = gid_to_id(node.get("id"))
    warnings = _Warnings(external_id)

    line_items = []
    for item in _edges(node.get("lineItems")):
        price, currency = money(item.get("originalUnitPriceSet"), "line_items.price", warnings)
        line_items.append(
            {
                "external_id": gid_to_id(item.get("id")),
                "name": item.get("name") or item.get("title") or "",
                "sku": item.get("sku") or "",
                "variant": item.get("variantTitle") or "Default",
                "quantity": to_int(item.get("quantity"), "line_items.quantity", warnings),
                "price": str(price),
                "currency": currency,
                "weight_oz": weight_to_ounces(_variant_weight(item.get("variant")), "line_items.weight", warnings),
            }
        )

    total, currency = money(node.get("totalPriceSet"), "total_amount", warnings)
    subtotal, _ = money(node.get("subtotalPriceSet"), "subtotal_amount", warnings)
    tax, _ = money(node.get("totalTaxSet"), "tax_amount", warnings)
    shipping_price, _ = money(node.get("totalShippingPriceSet"), "shipping_amount", warnings)

    address = node.get("shippingAddress") or {}
    customer = node.get("customer") or {}
    if customer:
        customer_name = f"{customer.get('firstName') or ''} {customer.get('lastName') or ''}".strip()
    elif address:
        customer_name = f"{address.get('firstName') or ''} {address.get('lastName') or ''}".strip()
    else:
        customer_name = "Unknown Customer"

    shipping_lines = _edges(node.get("shippingLines"))
    fulfillments = node.get("fulfillments") or []
    tracking = ((fulfillments[0] if fulfillments else {}).get("trackingInfo") or [None])[0] or {}

    record = {
        "external_id": external_id,
        "platform": platform,
        "store_id": store_id,
        "order_number": node.get("name") or "",
        "customer_name": customer_name or "Unknown Customer",
        "customer_email": node.get("email") or customer.get("email") or "",
        "total_amount": total,
        "subtotal_amount": subtotal,
        "tax_amount": tax,
        "shipping_amount": shipping_price,
        "currency": node.get("currencyCode") or currency or "USD",
        "financial_status": map_financial_status(node.get("displayFinancialStatus"), warnings),
        "fulfillment_status": map_fulfillment_status(node.get("displayFulfillmentStatus"), warnings),
        "order_date": parse_timestamp(node.get("createdAt"), "order_date", warnings),
        "external_updated_at": parse_timestamp(node.get("updatedAt"), "external_updated_at", warnings),
        "shipping_name": f"{address.get('firstName') or ''} {address.get('lastName') or ''}".strip(),
        "shipping_address1": address.get("address1") or "",
        "shipping_address2": address.get("address2") or "",
        "shipping_city": address.get("city") or "",
        "shipping_province": address.get("province") or "",
        "shipping_region_code": address.get("provinceCode") or "",
        "shipping_zip": address.get("zip") or "",
        "shipping_country": address.get("country") or "",
        "shipping_country_code": address.get("countryCode") or "",
        "shipping_phone": address.get("phone") or "",
        "requested_shipping": (shipping_lines[0].get("title") if shipping_lines else None) or "Standard Shipping",
        "line_items": line_items,
        "item_count": sum(i["quantity"] for i in line_items),
        "total_weight_oz": round(sum(i["weight_oz"] * i["quantity"] for i in line_items), 2),
        "tracking_number": tracking.get("number"),
        "customer_note": node.get("note") or "",
        "tags": list(node.get("tags") or []),
    }
    return record, warnings.items


# ── Products ─────────────────────────────────────────────────────────────


def map_product(node: dict[str, Any], *, store_id: str, platform: str = "shopify") -> tuple[dict[str, Any], list[TransformWarning]]:
    external_id = gid_to_id(node.get("id"))
    warnings = _Warnings(external_id)

    variants = []
    for variant in _edges(node.get("variants")):
        quantity = to_int(variant.get("inventoryQuantity"), "variants.quantity", warnings)
        compare_at = variant.get("compareAtPrice")
        variants.append(
            {
                "external_id": gid_to_id(variant.get("id")),
                "name": variant.get("title") or "",
                "sku": variant.get("sku") or "",
                "price": str(to_decimal(variant.get("price"), "variants.price", warnings)),
                "compare_price": str(to_decimal(compare_at, "variants.compare_price", warnings)) if compare_at else None,
                "quantity": quantity,
                "stock_status": stock_status(quantity),
                "barcode": variant.get("barcode") or None,
                "weight_oz": weight_to_ounces(_variant_weight(variant), "variants.weight", warnings),
                "attributes": [
                    {"name": opt.get("name"), "value": opt.get("value")} for opt in variant.get("selectedOptions") or []
                ],
            }
        )

    primary = variants[0] if variants else {}
    quantity = primary.get("quantity", 0)
    images = [
        {
            "external_id": gid_to_id(image.get("id")),
            "url": image.get("url"),
            "alt_text": image.get("altText") or node.get("title") or "",
            "position": position,
            "is_main": position == 0,
        }
        for position, image in enumerate(_edges(node.get("images")))
    ]

    record = {
        "external_id": external_id,
        "platform": platform,
        "store_id": store_id,
        "sku": primary.get("sku") or f"SHOPIFY-{external_id}",
        "name": node.get("title") or "",
        "description": node.get("description") or "",
        "product_type": "variant" if len(variants) > 1 else "simple",
        "category": node.get("productType") or "Uncategorized",
        "vendor": node.get("vendor") or "",
        "price": Decimal(primary.get("price", "0")),
        "compare_price": Decimal(primary["compare_price"]) if primary.get("compare_price") else None,
        "currency": "USD",
        "quantity": quantity,
        "stock_status": stock_status(quantity),
        "weight_oz": primary.get("weight_oz", 0.0),
        "barcode": primary.get("barcode") or "",
        "status": map_product_status(node.get("status"), warnings),
        "tags": list(node.get("tags") or []),
        "images": images,
        "variants": variants,
        "published_at": parse_timestamp(node.get("publishedAt"), "published_at", warnings),
        "external_updated_at": parse_timestamp(node.get("updatedAt"), "external_updated_at", warnings),
    }
    return record, warnings.items


_MAPPERS = {
    EntityKind.ORDERS: map_order,
    EntityKind.PRODUCTS: map_product,
}


def transform_page(
    entity_kind: EntityKind,
    nodes: list[dict[str, Any]],
    *,
    store_id: str,
    platform: str = "shopify",
) -> tuple[list[dict[str, Any]], list[TransformWarning]]:
    """Map a whole page; warnings from every record are concatenated."""
    mapper = _MAPPERS[entity_kind]
    records: list[dict[str, Any]] = []
    warnings: list[TransformWarning] = []
    for node in nodes:
        record, record_warnings = mapper(node, store_id=store_id, platform=platform)
        records.append(record)
        warnings.extend(record_warnings)
    return records, warnings
