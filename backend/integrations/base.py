"""
External Platform Client — Abstract Base Class

Every sales channel (Shopify, WooCommerce, ...) implements this interface so
the sync pipeline can page through orders and products without knowing
which platform it talks to.

Carrier catalogs (UPS, USPS) are a separate, smaller capability: they only
expose their service and box lists.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import structlog

from routing.models import EntityKind

logger = structlog.get_logger()


# ── Paging types ──────────────────────────────────────────────────────────


@dataclass
class FetchFilter:
    """Server-side filter for incremental sync."""

    updated_at_min: datetime | None = None

    @property
    def is_incremental(self) -> bool:
        return self.updated_at_min is not None


@dataclass
class Page:
    """One page of raw platform records plus the cursor to continue from."""

    records: list[dict[str, Any]] = field(default_factory=list)
    has_next_page: bool = False
    end_cursor: str | None = None


@dataclass
class ConnectionCheck:
    success: bool
    detail: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


# ── Abstract client ──────────────────────────────────────────────────────


class ExternalPlatformClient(ABC):
    """
    Base class for all sales-channel clients.

    Lifecycle:
        1. __init__(shop, credentials)   — credentials already decrypted
        2. test_connection()             — validate the credential
        3. fetch_page(kind, cursor, f)   — one page of orders or products

    Implementations raise ``PlatformAuthError`` when the platform rejects the
    credential and ``PlatformFetchError`` for any other network or HTTP
    failure. They never retry past their own transport retries.
    """

    provider: str = ""

    def __init__(self, shop: str, credentials: dict[str, Any], *, page_size: int = 50):
        self.shop = shop
        self.credentials = credentials
        self.page_size = page_size
        self.logger = logger.bind(provider=self.provider, shop=shop)

    @abstractmethod
    async def test_connection(self) -> ConnectionCheck:
        """Validate that the stored credential can reach the platform."""
        ...

    @abstractmethod
    async def fetch_page(
        self,
        entity_kind: EntityKind,
        cursor: str | None = None,
        fetch_filter: FetchFilter | None = None,
    ) -> Page:
        """Fetch one page of ``entity_kind`` records after ``cursor``."""
        ...

    async def aclose(self) -> None:
        """Release any pooled connections."""
        return None


class CarrierCatalogClient(Protocol):
    """Opaque carrier capability: list services and boxes for a carrier account."""

    carrier: str

    async def fetch_services(self) -> list[dict[str, Any]]: ...

    async def fetch_boxes(self) -> list[dict[str, Any]]: ...


# ── Client registry ──────────────────────────────────────────────────────

_CLIENT_REGISTRY: dict[str, type[ExternalPlatformClient]] = {}


def register_client(client_cls: type[ExternalPlatformClient]):
    """Decorator: register a client class for its provider name."""
    _CLIENT_REGISTRY[client_cls.provider] = client_cls
    return client_cls


def get_client(
    provider: str,
    shop: str,
    credentials: dict[str, Any],
    *,
    page_size: int = 50,
) -> ExternalPlatformClient:
    """Factory: return the right client instance for the given provider."""
    client_cls = _CLIENT_REGISTRY.get(provider)
    if client_cls is None:
        raise ValueError(f"No client registered for provider: {provider}")
    return client_cls(shop=shop, credentials=credentials, page_size=page_size)


def registered_providers() -> list[str]:
    return sorted(_CLIENT_REGISTRY)


_CARRIER_REGISTRY: dict[str, Callable[[dict[str, Any]], CarrierCatalogClient]] = {}


def register_carrier_client(carrier: str, factory: Callable[[dict[str, Any]], CarrierCatalogClient]) -> None:
    """Register a factory that builds a catalog client from decrypted credentials."""
    _CARRIER_REGISTRY[carrier.lower()] = factory


def get_carrier_client(carrier: str, credentials: dict[str, Any]) -> CarrierCatalogClient | None:
    factory = _CARRIER_REGISTRY.get(carrier.lower())
    if factory is None:
        return None
    return factory(credentials)
