"""
Marketplace client tests - reactive refresh and error mapping
"""
import httpx
import pytest

from app.services.credential_vault import CredentialVault
from app.services.errors import RefreshFailure, UpstreamError
from app.services.marketplace_client import MarketplaceClient


def _client(db_session, key, fake, integration) -> MarketplaceClient:
    http = fake.client()
    vault = CredentialVault(db_session, key=key, http=http)
    return MarketplaceClient(vault, integration.id, http=http)


class TestAuthRetry:
    """401/403 trigger one refresh and one retry"""

    @pytest.mark.asyncio
    async def test_rejected_token_refreshed_and_retried(self, db_session, key, fake, make_integration):
        integration = make_integration(access_token="revoked")
        fake.add("GET", "/orders/1", json={"id": 1})
        client = _client(db_session, key, fake, integration)

        order = await client.get_order("1")

        assert order == {"id": 1}
        assert fake.refresh_calls == 1
        calls = fake.calls_to("/orders/1")
        assert [c.headers["authorization"] for c in calls] == ["Bearer revoked", "Bearer access-2"]

    @pytest.mark.asyncio
    async def test_forbidden_also_refreshes(self, db_session, key, fake, make_integration):
        integration = make_integration()
        state = {"n": 0}

        def first_forbidden(request):
            state["n"] += 1
            if state["n"] == 1:
                return httpx.Response(403, json={"message": "forbidden"})
            return httpx.Response(200, json={"id": 7})

        fake.add("GET", "/items/MLB7", handler=first_forbidden)
        client = _client(db_session, key, fake, integration)

        assert await client.get_item("MLB7") == {"id": 7}
        assert fake.refresh_calls == 1

    @pytest.mark.asyncio
    async def test_second_rejection_is_refresh_failure(self, db_session, key, fake, make_integration):
        integration = make_integration(access_token="revoked")
        fake.accept_refreshed = False
        fake.add("GET", "/orders/1", json={"id": 1})
        client = _client(db_session, key, fake, integration)

        with pytest.raises(RefreshFailure):
            await client.get_order("1")
        assert fake.refresh_calls == 1
        assert len(fake.calls_to("/orders/1")) == 2

    @pytest.mark.asyncio
    async def test_token_reused_across_calls(self, db_session, key, fake, make_integration):
        integration = make_integration()
        fake.add("GET", "/orders/1", json={"id": 1})
        fake.add("GET", "/orders/2", json={"id": 2})
        client = _client(db_session, key, fake, integration)

        await client.get_order("1")
        await client.get_order("2")

        assert fake.refresh_calls == 0


class TestErrors:
    """Non-auth failures surface as UpstreamError"""

    @pytest.mark.asyncio
    async def test_not_found(self, db_session, key, fake, make_integration):
        integration = make_integration()
        client = _client(db_session, key, fake, integration)

        with pytest.raises(UpstreamError) as exc_info:
            await client.get_order("404")
        assert exc_info.value.status_code == 404
        assert exc_info.value.path == "/orders/404"
        assert "not_found" in exc_info.value.body_preview

    @pytest.mark.asyncio
    async def test_shipment_uses_new_format_header(self, db_session, key, fake, make_integration):
        integration = make_integration()
        fake.add("GET", "/shipments/900", json={"id": 900})
        client = _client(db_session, key, fake, integration)

        await client.get_shipment("900")

        assert fake.calls_to("/shipments/900")[0].headers["x-format-new"] == "true"

    @pytest.mark.asyncio
    async def test_list_orders_params(self, db_session, key, fake, make_integration):
        integration = make_integration()
        fake.add("GET", "/orders/search", json={"results": [], "paging": {"total": 0}})
        client = _client(db_session, key, fake, integration)

        await client.list_orders("555", offset=50, limit=50, status="paid", updated_from="2024-05-01T11:50:00.000Z")

        params = fake.calls_to("/orders/search")[0].url.params
        assert params["seller"] == "555"
        assert params["offset"] == "50"
        assert params["sort"] == "date_desc"
        assert params["order.status"] == "paid"
        assert params["order.last_updated.from"] == "2024-05-01T11:50:00.000Z"
