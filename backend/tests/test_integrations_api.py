"""
API Integration Tests — Channel configuration, OAuth connect flow, sync runs.
"""

import hashlib
import hmac
import uuid
from urllib.parse import parse_qs, urlparse

import pytest
from httpx import AsyncClient

from api.v1.routers import integrations as integrations_router
from core.errors import PlatformFetchError
from db.models import ChannelIntegrationRow
from integrations.base import ConnectionCheck, ExternalPlatformClient, Page
from routing.models import EntityKind
from sync.locks import lock_key


class StubClient(ExternalPlatformClient):
    provider = "shopify"

    def __init__(self, pages=(), *, error=None):
        super().__init__("acme.myshopify.com", {})
        self.pages = list(pages)
        self.error = error

    async def test_connection(self):
        return ConnectionCheck(success=True, detail="Connected to Acme", metadata={"currency": "USD"})

    async def fetch_page(self, entity_kind, cursor=None, fetch_filter=None):
        if self.error is not None:
            raise self.error
        index = 0 if cursor is None else int(cursor)
        if index >= len(self.pages):
            return Page()
        return Page(records=self.pages[index], has_next_page=index + 1 < len(self.pages), end_cursor=str(index + 1))


def _order(n):
    return {
        "id": f"gid://shopify/Order/{n}",
        "name": f"#{n}",
        "displayFulfillmentStatus": "UNFULFILLED",
        "displayFinancialStatus": "PAID",
        "shippingAddress": {"provinceCode": "NJ", "countryCode": "US"},
    }


def _routing(seeded_db, **overrides):
    routing = {
        "mode": "simple",
        "primary_warehouse_id": str(seeded_db["west"].warehouse_id),
        "fallback_warehouse_id": str(seeded_db["east"].warehouse_id),
        "assignments": [],
    }
    routing.update(overrides)
    return routing


@pytest.mark.asyncio
class TestIntegrationsCrud:
    async def test_health(self, client: AsyncClient):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    async def test_list_integrations_empty(self, client: AsyncClient):
        resp = await client.get("/api/v1/integrations/")
        assert resp.status_code == 200
        assert resp.json() == []

    async def test_list_integrations_with_data(self, client: AsyncClient, seeded_db):
        resp = await client.get("/api/v1/integrations/")
        assert resp.status_code == 200
        data = resp.json()
        assert len(data) == 1
        assert data[0]["provider"] == "shopify"
        assert data[0]["status"] == "disconnected"
        assert data[0]["sync_direction"] == "manual"

    async def test_create_integration(self, client: AsyncClient, seeded_db):
        resp = await client.post(
            "/api/v1/integrations/",
            json={"store_id": str(seeded_db["store"].store_id), "provider": "Shopify", "name": "Second shop"},
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["provider"] == "shopify"
        assert data["status"] == "disconnected"
        assert data["enabled"] is False

    async def test_create_integration_for_unknown_store(self, client: AsyncClient, seeded_db):
        resp = await client.post(
            "/api/v1/integrations/",
            json={"store_id": str(uuid.uuid4()), "provider": "shopify", "name": "Nowhere"},
        )
        assert resp.status_code == 404

    async def test_other_accounts_channels_are_hidden(self, client: AsyncClient, seeded_db, mock_user):
        mock_user["account_id"] = "00000000-0000-0000-0000-000000000002"
        channel_id = seeded_db["channel"].integration_id
        resp = await client.get(f"/api/v1/integrations/{channel_id}")
        assert resp.status_code == 404

    async def test_disconnect_integration(self, client: AsyncClient, test_db, connected_channel):
        channel = connected_channel["channel"]
        resp = await client.delete(f"/api/v1/integrations/{channel.integration_id}")
        assert resp.status_code == 204

        await test_db.refresh(channel)
        assert channel.status == "disconnected"
        assert channel.enabled is False
        assert channel.credentials_encrypted is None


@pytest.mark.asyncio
class TestIntegrationConfig:
    async def test_save_valid_config(self, client: AsyncClient, seeded_db):
        channel_id = seeded_db["channel"].integration_id
        resp = await client.put(
            f"/api/v1/integrations/{channel_id}/config",
            json={
                "routing_config": _routing(seeded_db),
                "product_sync_config": {"mode": "all_routing_warehouses"},
                "inventory_sync_enabled": False,
                "sync_direction": "platform_to_warehouses",
            },
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["integration"]["routing_config"]["primary_warehouse_id"] == str(seeded_db["west"].warehouse_id)
        assert data["integration"]["sync_direction"] == "manual"
        assert data["conflicts"] == []

    async def test_invalid_routing_is_rejected_with_reasons(self, client: AsyncClient, seeded_db):
        channel_id = seeded_db["channel"].integration_id
        resp = await client.put(
            f"/api/v1/integrations/{channel_id}/config",
            json={"routing_config": _routing(seeded_db, primary_warehouse_id="missing", fallback_warehouse_id=None)},
        )
        assert resp.status_code == 422
        detail = resp.json()["detail"]
        assert detail["reasons"] == ["primary_warehouse_unknown:missing"]
        assert detail["origin"] == "internal"

    async def test_ambiguous_regions_are_rejected(self, client: AsyncClient, seeded_db):
        channel_id = seeded_db["channel"].integration_id
        west, east = str(seeded_db["west"].warehouse_id), str(seeded_db["east"].warehouse_id)
        resp = await client.put(
            f"/api/v1/integrations/{channel_id}/config",
            json={
                "routing_config": {
                    "mode": "advanced",
                    "primary_warehouse_id": west,
                    "assignments": [
                        {"warehouse_id": west, "regions": ["California"]},
                        {"warehouse_id": east, "regions": ["ca", "NY"]},
                    ],
                }
            },
        )
        assert resp.status_code == 422
        assert resp.json()["detail"]["reasons"] == [f"region_ambiguous:CA:{west},{east}"]

    async def test_conflicting_inventory_direction_is_reported(self, client: AsyncClient, test_db, seeded_db):
        other = ChannelIntegrationRow(
            account_id=seeded_db["account_id"],
            store_id=seeded_db["store"].store_id,
            provider="shopify",
            name="Wholesale Shopify",
            status="connected",
            enabled=True,
            inventory_sync_enabled=True,
            sync_direction="platform_to_warehouses",
        )
        test_db.add(other)
        await test_db.commit()

        channel_id = seeded_db["channel"].integration_id
        preview = await client.get(
            f"/api/v1/integrations/{channel_id}/conflicts",
            params={"proposed_direction": "platform_to_warehouses", "proposed_inventory_sync": "true"},
        )
        assert preview.status_code == 200
        assert [c["other_channel_name"] for c in preview.json()["conflicts"]] == ["Wholesale Shopify"]

        resp = await client.put(
            f"/api/v1/integrations/{channel_id}/config",
            json={
                "routing_config": _routing(seeded_db),
                "inventory_sync_enabled": True,
                "sync_direction": "platform_to_warehouses",
            },
        )
        assert resp.status_code == 200
        conflicts = resp.json()["conflicts"]
        assert [c["other_channel_id"] for c in conflicts] == [str(other.integration_id)]

    async def test_routing_preview(self, client: AsyncClient, connected_channel):
        channel_id = connected_channel["channel"].integration_id
        resp = await client.get(f"/api/v1/integrations/{channel_id}/routing")
        assert resp.status_code == 200
        data = resp.json()
        west, east = str(connected_channel["west"].warehouse_id), str(connected_channel["east"].warehouse_id)
        assert data["routing_warehouses"] == [west, east]
        assert data["product_destinations"] == [west, east]
        assert data["unassigned_regions"] == []

    async def test_auto_assign_suggests_full_coverage(self, client: AsyncClient, seeded_db):
        channel_id = seeded_db["channel"].integration_id
        west, midwest = str(seeded_db["west"].warehouse_id), str(seeded_db["midwest"].warehouse_id)
        resp = await client.post(
            f"/api/v1/integrations/{channel_id}/routing/auto-assign",
            json={
                "mode": "advanced",
                "primary_warehouse_id": west,
                "assignments": [{"warehouse_id": west}, {"warehouse_id": midwest}],
            },
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["unassigned_regions"] == []
        regions = {a["warehouse_id"]: a["regions"] for a in data["routing_config"]["assignments"]}
        assert "CA" in regions[west]
        assert "OH" in regions[midwest]

    async def test_last_product_destination_cannot_be_removed(self, client: AsyncClient, test_db, seeded_db):
        channel = seeded_db["channel"]
        west = str(seeded_db["west"].warehouse_id)
        channel.product_sync_config = {"mode": "specific_warehouses", "selected_warehouse_ids": [west]}
        await test_db.commit()

        resp = await client.delete(f"/api/v1/integrations/{channel.integration_id}/product-sync/warehouses/{west}")
        assert resp.status_code == 422
        assert resp.json()["detail"]["reasons"] == ["minimum_one_destination"]


@pytest.mark.asyncio
class TestShopifyConnectFlow:
    async def test_connect_then_callback_connects_and_starts_sync(
        self, client: AsyncClient, test_db, seeded_db, dispatched
    ):
        channel = seeded_db["channel"]
        resp = await client.post(
            f"/api/v1/integrations/{channel.integration_id}/connect",
            json={"shop": "acme", "routing_config": _routing(seeded_db)},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["state"] == "redirecting"
        url = urlparse(data["authorization_url"])
        assert url.netloc == "acme.myshopify.com"
        state = parse_qs(url.query)["state"][0]

        callback = await client.get(
            "/api/v1/integrations/shopify/callback",
            params={"code": "auth-code", "shop": "acme.myshopify.com", "state": state},
        )
        assert callback.status_code == 200
        assert callback.json()["status"] == "connected"

        await test_db.refresh(channel)
        assert channel.status == "connected"
        assert channel.enabled is True
        assert channel.shop_domain == "acme.myshopify.com"
        assert channel.credentials_encrypted

        assert dispatched == [
            ("workers.sync.sync_channel", {"integration_id": str(channel.integration_id), "entity_kind": "orders"}),
            ("workers.sync.sync_channel", {"integration_id": str(channel.integration_id), "entity_kind": "products"}),
        ]

        replay = await client.get(
            "/api/v1/integrations/shopify/callback",
            params={"code": "auth-code", "shop": "acme.myshopify.com", "state": state},
        )
        assert replay.status_code == 400

    async def test_connect_with_invalid_config_stays_editing(self, client: AsyncClient, seeded_db, state_store):
        channel_id = seeded_db["channel"].integration_id
        resp = await client.post(
            f"/api/v1/integrations/{channel_id}/connect",
            json={"shop": "acme", "routing_config": {"mode": "simple"}},
        )
        assert resp.status_code == 422
        assert resp.json()["detail"]["state"] == "editing"
        assert len(state_store) == 0

    async def test_callback_with_unknown_state(self, client: AsyncClient, seeded_db):
        resp = await client.get(
            "/api/v1/integrations/shopify/callback",
            params={"code": "x", "shop": "acme.myshopify.com", "state": "never-issued"},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"]["reasons"] == ["state_unknown_or_expired"]

    async def test_callback_signature_is_checked_when_secret_configured(
        self, client: AsyncClient, seeded_db, monkeypatch
    ):
        monkeypatch.setattr(integrations_router.settings, "shopify_api_secret", "app-secret")
        resp = await client.get(
            "/api/v1/integrations/shopify/callback",
            params={"code": "x", "shop": "acme.myshopify.com", "state": "s", "hmac": "forged"},
        )
        assert resp.status_code == 401

    async def test_signed_callback_is_accepted(self, client: AsyncClient, seeded_db, monkeypatch):
        monkeypatch.setattr(integrations_router.settings, "shopify_api_secret", "app-secret")
        channel_id = seeded_db["channel"].integration_id
        connect = await client.post(
            f"/api/v1/integrations/{channel_id}/connect",
            json={"shop": "acme", "routing_config": _routing(seeded_db)},
        )
        state = parse_qs(urlparse(connect.json()["authorization_url"]).query)["state"][0]

        params = {"code": "auth-code", "shop": "acme.myshopify.com", "state": state, "timestamp": "1767225600"}
        message = "&".join(f"{k}={params[k]}" for k in sorted(params))
        params["hmac"] = hmac.new(b"app-secret", message.encode(), hashlib.sha256).hexdigest()

        resp = await client.get("/api/v1/integrations/shopify/callback", params=params)
        assert resp.status_code == 200


@pytest.mark.asyncio
class TestSyncEndpoints:
    async def test_sync_runs_inline_and_reports_stages(self, client: AsyncClient, connected_channel, platform_clients):
        platform_clients["client"] = StubClient([[_order(1), _order(2)], [_order(3)]])
        channel_id = connected_channel["channel"].integration_id

        resp = await client.post(f"/api/v1/integrations/{channel_id}/sync", params={"entity_kind": "orders"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "done"
        assert data["records_processed"] == 3
        assert data["stages"][-1] == "done"
        assert "fetching-page 2" in data["stages"]

        logs = await client.get(f"/api/v1/integrations/{channel_id}/sync-logs")
        assert logs.status_code == 200
        assert logs.json()[0]["status"] == "done"
        assert logs.json()[0]["records_processed"] == 3

    async def test_sync_platform_failure_is_bad_gateway(self, client: AsyncClient, connected_channel, platform_clients):
        platform_clients["client"] = StubClient(error=PlatformFetchError("HTTP 503", status_code=503))
        channel_id = connected_channel["channel"].integration_id

        resp = await client.post(f"/api/v1/integrations/{channel_id}/sync")
        assert resp.status_code == 502
        assert resp.json()["detail"]["error_origin"] == "external"

    async def test_sync_rejected_while_running(self, client: AsyncClient, connected_channel, sync_locks, platform_clients):
        platform_clients["client"] = StubClient([[_order(1)]])
        channel_id = connected_channel["channel"].integration_id
        await sync_locks.acquire(lock_key(str(channel_id), EntityKind.ORDERS))

        resp = await client.post(f"/api/v1/integrations/{channel_id}/sync")
        assert resp.status_code == 409
        assert resp.json()["detail"]["reasons"] == ["sync_already_running"]

    async def test_sync_requires_connection(self, client: AsyncClient, seeded_db):
        channel_id = seeded_db["channel"].integration_id
        resp = await client.post(f"/api/v1/integrations/{channel_id}/sync")
        assert resp.status_code == 409
        assert resp.json()["detail"]["reasons"] == ["not_connected"]

    async def test_connection_test_endpoint(self, client: AsyncClient, connected_channel, platform_clients):
        platform_clients["client"] = StubClient()
        channel_id = connected_channel["channel"].integration_id

        resp = await client.post(f"/api/v1/integrations/{channel_id}/test")
        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert platform_clients["built_with"][0][2] == {"access_token": "shpat_stored"}
