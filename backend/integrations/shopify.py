"""
Shopify Admin GraphQL Client

Pages through orders and products for the sync pipeline and handles the
pieces of the OAuth handshake that talk to Shopify (authorize URL, code
exchange, callback HMAC).
"""

import hashlib
import hmac
import re
from typing import Any
from urllib.parse import urlencode

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import get_settings
from core.errors import ConfigInvalid, PlatformAuthError, PlatformFetchError
from integrations.base import ConnectionCheck, ExternalPlatformClient, FetchFilter, Page, register_client
from routing.models import EntityKind

SHOP_DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9\-]*\.myshopify\.com$")

_MONEY = "shopMoney { amount currencyCode }"

ORDERS_QUERY = f"""
query getOrders($first: Int!, $after: String, $query: String) {{
  orders(first: $first, after: $after, query: $query, sortKey: UPDATED_AT) {{
    edges {{
      cursor
      node {{
        id
        name
        email
        createdAt
        updatedAt
        currencyCode
        totalPriceSet {{ {_MONEY} }}
        subtotalPriceSet {{ {_MONEY} }}
        totalTaxSet {{ {_MONEY} }}
        totalShippingPriceSet {{ {_MONEY} }}
        displayFulfillmentStatus
        displayFinancialStatus
        customer {{ id email firstName lastName phone }}
        shippingAddress {{
          firstName lastName address1 address2 city province provinceCode
          country countryCode zip phone
        }}
        lineItems(first: 250) {{
          edges {{
            node {{
              id title name sku variantTitle quantity
              originalUnitPriceSet {{ {_MONEY} }}
              variant {{ id inventoryItem {{ measurement {{ weight {{ value unit }} }} }} }}
            }}
          }}
        }}
        shippingLines(first: 5) {{
          edges {{ node {{ id title originalPriceSet {{ {_MONEY} }} }} }}
        }}
        fulfillments(first: 10) {{ id status trackingInfo(first: 5) {{ company number url }} }}
        note
        tags
      }}
    }}
    pageInfo {{ hasNextPage endCursor }}
  }}
}}
"""

PRODUCTS_QUERY = """
query getProducts($first: Int!, $after: String, $query: String) {
  products(first: $first, after: $after, query: $query, sortKey: UPDATED_AT) {
    edges {
      cursor
      node {
        id
        title
        description
        vendor
        productType
        status
        createdAt
        updatedAt
        publishedAt
        tags
        variants(first: 100) {
          edges {
            node {
              id title sku barcode price compareAtPrice inventoryQuantity position
              selectedOptions { name value }
              inventoryItem { measurement { weight { value unit } } }
            }
          }
        }
        images(first: 10) { edges { node { id url altText } } }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""

SHOP_QUERY = "query { shop { id name email currencyCode } }"


def normalize_shop_domain(shop: str) -> str:
    """
    Turn user input into a canonical ``<name>.myshopify.com`` domain.

    Accepts "my-store", "my-store.myshopify.com" or a pasted admin URL.
    Raises ``ConfigInvalid`` for anything that still isn't a shop domain.
    """
    cleaned = (shop or "").strip().lower()
    cleaned = re.sub(r"^https?://", "", cleaned)
    cleaned = cleaned.split("/", 1)[0]
    if cleaned and not cleaned.endswith(".myshopify.com"):
        cleaned = f"{cleaned}.myshopify.com"
    if not SHOP_DOMAIN_RE.match(cleaned):
        raise ConfigInvalid(f"Invalid Shopify shop domain: {shop!r}", reasons=["shop_domain_invalid"])
    return cleaned


def build_authorization_url(shop: str, state: str) -> str:
    settings = get_settings()
    params = {
        "client_id": settings.shopify_api_key,
        "scope": settings.shopify_scopes,
        "redirect_uri": settings.oauth_redirect_uri,
        "state": state,
    }
    return f"https://{shop}/admin/oauth/authorize?{urlencode(params)}"


def verify_callback_hmac(query: dict[str, str], secret: str | None = None) -> bool:
    """Check the ``hmac`` Shopify appends to OAuth callback query strings."""
    provided = query.get("hmac")
    if not provided:
        return False
    secret = secret if secret is not None else get_settings().shopify_api_secret
    message = "&".join(f"{key}={query[key]}" for key in sorted(query) if key not in ("hmac", "signature"))
    digest = hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()
    return hmac.compare_digest(digest, provided)


async def exchange_code_for_token(
    shop: str,
    code: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, Any]:
    """Trade the OAuth ``code`` for an offline access token."""
    settings = get_settings()
    async with httpx.AsyncClient(transport=transport, timeout=30.0) as client:
        try:
            response = await client.post(
                f"https://{shop}/admin/oauth/access_token",
                json={
                    "client_id": settings.shopify_api_key,
                    "client_secret": settings.shopify_api_secret,
                    "code": code,
                },
            )
        except httpx.HTTPError as exc:
            raise PlatformFetchError(f"Token exchange with {shop} failed: {exc}") from exc
    if response.status_code in (400, 401, 403):
        raise PlatformAuthError(f"Shopify rejected the authorization code for {shop}", status_code=response.status_code)
    if response.is_error:
        raise PlatformFetchError(f"Token exchange with {shop} failed", status_code=response.status_code)
    return response.json()


def _updated_at_query(fetch_filter: FetchFilter | None) -> str | None:
    if fetch_filter is None or fetch_filter.updated_at_min is None:
        return None
    return f"updated_at:>='{fetch_filter.updated_at_min.isoformat()}'"


@register_client
class ShopifyClient(ExternalPlatformClient):
    """Client for the Shopify Admin GraphQL API."""

    provider = "shopify"

    def __init__(
        self,
        shop: str,
        credentials: dict[str, Any],
        *,
        page_size: int = 50,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(shop, credentials, page_size=page_size)
        settings = get_settings()
        self.endpoint = f"https://{shop}/admin/api/{settings.shopify_api_version}/graphql.json"
        self.headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": credentials.get("access_token", ""),
        }
        self._client = httpx.AsyncClient(transport=transport, headers=self.headers, timeout=30.0)

    async def aclose(self) -> None:
        await self._client.aclose()

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(min=1, max=10),
        reraise=True,
    )
    async def _post(self, query: str, variables: dict[str, Any] | None) -> httpx.Response:
        return await self._client.post(self.endpoint, json={"query": query, "variables": variables or {}})

    async def request(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        """Execute a GraphQL query and return its ``data``."""
        try:
            response = await self._post(query, variables)
        except httpx.HTTPError as exc:
            raise PlatformFetchError(f"Shopify request to {self.shop} failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise PlatformAuthError(
                f"Shopify rejected the access token for {self.shop}",
                status_code=response.status_code,
            )
        if response.is_error:
            raise PlatformFetchError(
                f"Shopify returned HTTP {response.status_code} for {self.shop}",
                status_code=response.status_code,
            )

        body = response.json()
        errors = body.get("errors")
        if errors:
            messages = [e.get("message", str(e)) if isinstance(e, dict) else str(e) for e in errors]
            raise PlatformFetchError(f"Shopify GraphQL error: {', '.join(messages)}", reasons=messages)
        return body.get("data") or {}

    async def test_connection(self) -> ConnectionCheck:
        try:
            data = await self.request(SHOP_QUERY)
        except PlatformFetchError as exc:
            self.logger.warning("shopify.connection_test_failed", error=exc.message)
            return ConnectionCheck(success=False, detail=exc.message)
        shop = data.get("shop") or {}
        return ConnectionCheck(
            success=True,
            detail=f"Connected to {shop.get('name', self.shop)}",
            metadata={"currency": shop.get("currencyCode"), "email": shop.get("email")},
        )

    async def fetch_page(
        self,
        entity_kind: EntityKind,
        cursor: str | None = None,
        fetch_filter: FetchFilter | None = None,
    ) -> Page:
        if entity_kind == EntityKind.ORDERS:
            query, root = ORDERS_QUERY, "orders"
        elif entity_kind == EntityKind.PRODUCTS:
            query, root = PRODUCTS_QUERY, "products"
        else:
            raise ValueError(f"Unsupported entity kind: {entity_kind}")

        variables = {
            "first": self.page_size,
            "after": cursor,
            "query": _updated_at_query(fetch_filter),
        }
        data = await self.request(query, variables)
        connection = data.get(root) or {}
        page_info = connection.get("pageInfo") or {}
        records = [edge["node"] for edge in connection.get("edges") or []]
        self.logger.debug(
            "shopify.page_fetched",
            entity_kind=entity_kind.value,
            records=len(records),
            has_next_page=bool(page_info.get("hasNextPage")),
        )
        return Page(
            records=records,
            has_next_page=bool(page_info.get("hasNextPage")),
            end_cursor=page_info.get("endCursor"),
        )
