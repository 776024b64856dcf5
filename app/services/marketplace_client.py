"""
Marketplace REST client bound to one integration.

Every call goes through request(), which attaches the bearer token and, on a
401/403, refreshes the token once and retries once. A second auth rejection means
the refreshed credentials are unusable and surfaces as TokenRejected (a RefreshFailure).
"""
import logging
from typing import Any, Optional

import httpx

from app.config import settings
from app.services.credential_vault import AccessToken, CredentialVault
from app.services.errors import TokenRejected, UpstreamAuthError, UpstreamError
from app.services.http_client import request_with_retry

logger = logging.getLogger(__name__)

AUTH_STATUSES = (401, 403)


class MarketplaceClient:
    def __init__(
        self,
        vault: CredentialVault,
        integration_id: str,
        http: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.vault = vault
        self.integration_id = integration_id
        self.http = http
        self.base_url = (base_url or settings.MARKETPLACE_API_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.MARKETPLACE_HTTP_TIMEOUT_SEC
        self._token: Optional[AccessToken] = None

    async def _current_token(self) -> AccessToken:
        if self._token is None:
            self._token = await self.vault.get_valid_access_token(self.integration_id)
        return self._token

    async def _send(self, method: str, path: str, token: str, params: Optional[dict], headers: Optional[dict]) -> httpx.Response:
        hdrs = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
        hdrs.update(headers or {})
        # only idempotent reads are retried on 5xx / connection errors
        retries = 2 if method.upper() == "GET" else 0
        return await request_with_retry(
            method,
            f"{self.base_url}{path}",
            client=self.http,
            timeout=self.timeout,
            max_retries=retries,
            params=params,
            headers=hdrs,
        )

    @staticmethod
    def _raise_for_status(resp: httpx.Response, path: str) -> None:
        if resp.status_code < 400:
            return
        preview = (resp.text or "")[:300]
        if resp.status_code in AUTH_STATUSES:
            raise UpstreamAuthError(resp.status_code, path, preview)
        raise UpstreamError(resp.status_code, path, preview)

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        headers: Optional[dict] = None,
    ) -> Any:
        """Execute with auth retry. Returns the decoded JSON body (None for empty bodies)."""
        token = await self._current_token()
        resp = await self._send(method, path, token.token, params, headers)
        if resp.status_code in AUTH_STATUSES:
            logger.info(
                "Marketplace %s %s returned %s for integration=%s; refreshing token",
                method, path, resp.status_code, self.integration_id,
            )
            self._token = await self.vault.refresh(self.integration_id, stale_token=token.token)
            resp = await self._send(method, path, self._token.token, params, headers)
            if resp.status_code in AUTH_STATUSES:
                raise TokenRejected(
                    f"Marketplace still rejects refreshed token ({resp.status_code} on {path})",
                    path=path,
                    status_code=resp.status_code,
                    details=(resp.text or "")[:300],
                )
        self._raise_for_status(resp, path)
        if not resp.content:
            return None
        return resp.json()

    async def get(self, path: str, params: Optional[dict] = None, headers: Optional[dict] = None) -> Any:
        return await self.request("GET", path, params=params, headers=headers)

    # --- resources ---

    async def list_orders(
        self,
        seller_id: str,
        offset: int = 0,
        limit: int = 50,
        status: Optional[str] = None,
        updated_from: Optional[str] = None,
    ) -> dict:
        params: dict = {"seller": seller_id, "offset": offset, "limit": limit, "sort": "date_desc"}
        if status:
            params["order.status"] = status
        if updated_from:
            params["order.last_updated.from"] = updated_from
        return await self.get("/orders/search", params=params) or {}

    async def get_order(self, order_id: str) -> dict:
        return await self.get(f"/orders/{order_id}") or {}

    async def get_payment(self, payment_id: str) -> dict:
        return await self.get(f"/v1/payments/{payment_id}") or {}

    async def get_shipment(self, shipment_id: str) -> dict:
        return await self.get(f"/shipments/{shipment_id}", headers={"x-format-new": "true"}) or {}

    async def get_shipment_tracking(self, shipment_id: str) -> Any:
        return await self.get(f"/shipments/{shipment_id}/tracking")

    async def get_shipment_costs(self, shipment_id: str) -> Any:
        return await self.get(f"/shipments/{shipment_id}/costs")

    async def get_item(self, item_id: str) -> dict:
        return await self.get(f"/items/{item_id}") or {}

    async def get_resource(self, resource: str) -> Any:
        """Fetch a webhook resource path as given, e.g. /user-products/MLBU123/stock."""
        path = resource if resource.startswith("/") else f"/{resource}"
        return await self.get(path)
