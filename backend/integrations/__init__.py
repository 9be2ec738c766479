"""
Sales-channel and carrier clients.

Platform clients register themselves by provider name:

    from integrations.base import get_client

    client = get_client("shopify", "acme.myshopify.com", {"access_token": "..."})
    page = await client.fetch_page(EntityKind.ORDERS)
"""

from integrations.base import (
    CarrierCatalogClient,
    ConnectionCheck,
    ExternalPlatformClient,
    FetchFilter,
    Page,
    get_carrier_client,
    get_client,
    register_carrier_client,
    register_client,
    registered_providers,
)
from integrations.shopify import ShopifyClient

__all__ = [
    "CarrierCatalogClient",
    "ConnectionCheck",
    "ExternalPlatformClient",
    "FetchFilter",
    "Page",
    "ShopifyClient",
    "get_carrier_client",
    "get_client",
    "register_carrier_client",
    "register_client",
    "registered_providers",
]
