from datetime import datetime, timezone
from decimal import Decimal

from routing.models import EntityKind
from sync.transform import map_order, map_product, stock_status, transform_page


def _money(amount, currency="USD"):
    return {"shopMoney": {"amount": amount, "currencyCode": currency}}


ORDER_NODE = {
    "id": "gid://shopify/Order/5001",
    "name": "#1001",
    "email": "ada@example.com",
    "createdAt": "2026-03-01T12:00:00Z",
    "updatedAt": "2026-03-02T08:30:00Z",
    "currencyCode": "USD",
    "totalPriceSet": _money("54.50"),
    "subtotalPriceSet": _money("45.00"),
    "totalTaxSet": _money("3.50"),
    "totalShippingPriceSet": _money("6.00"),
    "displayFulfillmentStatus": "UNFULFILLED",
    "displayFinancialStatus": "PAID",
    "customer": {"id": "gid://shopify/Customer/9", "firstName": "Ada", "lastName": "Lovelace"},
    "shippingAddress": {
        "firstName": "Ada",
        "lastName": "Lovelace",
        "address1": "1 Main St",
        "city": "Columbus",
        "province": "Ohio",
        "provinceCode": "OH",
        "country": "United States",
        "countryCode": "US",
        "zip": "43004",
    },
    "lineItems": {
        "edges": [
            {
                "node": {
                    "id": "gid://shopify/LineItem/1",
                    "name": "Trail Mug",
                    "sku": "MUG-1",
                    "quantity": 2,
                    "originalUnitPriceSet": _money("15.00"),
                    "variant": {"inventoryItem": {"measurement": {"weight": {"value": 1, "unit": "POUNDS"}}}},
                }
            },
            {
                "node": {
                    "id": "gid://shopify/LineItem/2",
                    "name": "Sticker",
                    "sku": "STK-1",
                    "quantity": 3,
                    "originalUnitPriceSet": _money("5.00"),
                    "variant": {"inventoryItem": {"measurement": {"weight": {"value": 2, "unit": "STONES"}}}},
                }
            },
        ]
    },
    "shippingLines": {"edges": [{"node": {"title": "Priority"}}]},
    "fulfillments": [],
    "note": "leave at door",
    "tags": ["vip"],
}

PRODUCT_NODE = {
    "id": "gid://shopify/Product/777",
    "title": "Trail Mug",
    "productType": "Drinkware",
    "vendor": "Acme",
    "status": "ACTIVE",
    "updatedAt": "2026-03-02T08:30:00Z",
    "tags": [],
    "variants": {
        "edges": [
            {
                "node": {
                    "id": "gid://shopify/ProductVariant/1",
                    "title": "Blue",
                    "sku": "MUG-BLUE",
                    "price": "15.00",
                    "compareAtPrice": "19.00",
                    "inventoryQuantity": 4,
                    "inventoryItem": {"measurement": {"weight": {"value": 500, "unit": "GRAMS"}}},
                    "selectedOptions": [{"name": "Color", "value": "Blue"}],
                }
            },
            {
                "node": {
                    "id": "gid://shopify/ProductVariant/2",
                    "title": "Red",
                    "sku": "MUG-RED",
                    "price": "15.00",
                    "inventoryQuantity": 40,
                }
            },
        ]
    },
    "images": {"edges": [{"node": {"id": "gid://shopify/ProductImage/3", "url": "https://cdn/mug.png"}}]},
}


def test_map_order_normalizes_money_address_and_status():
    record, warnings = map_order(ORDER_NODE, store_id="store-1", platform="shopify")

    assert record["external_id"] == "5001"
    assert record["order_number"] == "#1001"
    assert record["total_amount"] == Decimal("54.50")
    assert record["fulfillment_status"] == "unfulfilled"
    assert record["financial_status"] == "paid"
    assert record["shipping_region_code"] == "OH"
    assert record["shipping_country_code"] == "US"
    assert record["requested_shipping"] == "Priority"
    assert record["item_count"] == 5
    assert record["order_date"] == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert record["customer_name"] == "Ada Lovelace"


def test_unknown_weight_unit_counts_as_zero_with_warning():
    record, warnings = map_order(ORDER_NODE, store_id="store-1")

    assert record["line_items"][0]["weight_oz"] == 16.0
    assert record["line_items"][1]["weight_oz"] == 0.0
    assert record["total_weight_oz"] == 32.0
    assert [(w.field, w.value) for w in warnings] == [("line_items.weight", "STONES")]


def test_unmapped_fulfillment_status_falls_back_with_warning():
    node = dict(ORDER_NODE, displayFulfillmentStatus="TELEPORTED", lineItems={"edges": []})
    record, warnings = map_order(node, store_id="store-1")
    assert record["fulfillment_status"] == "unfulfilled"
    assert warnings[0].field == "fulfillment_status"
    assert warnings[0].external_id == "5001"


def test_map_product_uses_first_variant_and_converts_weight():
    record, warnings = map_product(PRODUCT_NODE, store_id="store-1")

    assert warnings == []
    assert record["external_id"] == "777"
    assert record["sku"] == "MUG-BLUE"
    assert record["product_type"] == "variant"
    assert record["price"] == Decimal("15.00")
    assert record["compare_price"] == Decimal("19.00")
    assert record["quantity"] == 4
    assert record["stock_status"] == "low_stock"
    assert record["weight_oz"] == 17.64
    assert record["status"] == "active"
    assert record["variants"][1]["stock_status"] == "in_stock"
    assert record["images"][0]["is_main"] is True


def test_transform_is_deterministic():
    first = transform_page(EntityKind.PRODUCTS, [PRODUCT_NODE], store_id="s")
    second = transform_page(EntityKind.PRODUCTS, [PRODUCT_NODE], store_id="s")
    assert first == second


def test_stock_status_thresholds():
    assert stock_status(0) == "out_of_stock"
    assert stock_status(10) == "low_stock"
    assert stock_status(11) == "in_stock"


def test_malformed_timestamps_and_quantities_become_warnings():
    order, order_warnings = map_order(
        {"id": "gid://shopify/Order/1", "createdAt": "not-a-date", "updatedAt": "2026-13-45"}, store_id="s"
    )
    assert order["order_date"] is None
    assert order["external_updated_at"] is None
    assert [w.field for w in order_warnings] == ["order_date", "external_updated_at"]

    node = {
        "id": "gid://shopify/Product/2",
        "status": "ACTIVE",
        "publishedAt": "yesterday",
        "variants": {"edges": [{"node": {"sku": "X", "price": "1.00", "inventoryQuantity": "lots"}}]},
    }
    product, product_warnings = map_product(node, store_id="s")
    assert product["quantity"] == 0
    assert product["stock_status"] == "out_of_stock"
    assert product["published_at"] is None
    assert {(w.field, w.value) for w in product_warnings} == {
        ("variants.quantity", "lots"),
        ("published_at", "yesterday"),
    }


def test_page_with_a_bad_record_still_maps_every_record():
    bad = dict(ORDER_NODE, id="gid://shopify/Order/2", createdAt="31/02/2026")
    records, warnings = transform_page(EntityKind.ORDERS, [ORDER_NODE, bad], store_id="s")

    assert [r["external_id"] for r in records] == ["5001", "2"]
    assert ("2", "order_date") in {(w.external_id, w.field) for w in warnings}
