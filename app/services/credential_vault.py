"""
Credential vault: hands out valid marketplace access tokens per integration.

Tokens are stored encrypted (see token_cipher). When the stored access token has
expired, or the marketplace rejects it, the vault runs the OAuth refresh grant and
persists the new pair. Refreshes are single-flight per integration: concurrent
callers wait on the same lock and pick up the token the winner stored.
"""
import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.models import MarketplaceApp, MarketplaceIntegration
from app.services.datetime_utils import utcnow
from app.services.errors import ConfigMissing, IntegrationNotFound, RefreshFailure
from app.services.http_client import post_form_no_retry
from app.services.token_cipher import decrypt_token, encrypt_token, load_key

logger = logging.getLogger(__name__)


class _RefreshSlot:
    """Lock plus the number of callers holding or waiting on it."""

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


# loop -> integration id -> slot; asyncio locks must not cross event loops
_refresh_locks: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, _RefreshSlot]]" = (
    weakref.WeakKeyDictionary()
)


@asynccontextmanager
async def _refresh_lock(integration_id: str):
    """Serialize refreshes per integration; the slot is dropped once nobody uses it."""
    loop = asyncio.get_running_loop()
    slots = _refresh_locks.get(loop)
    if slots is None:
        slots = {}
        _refresh_locks[loop] = slots
    slot = slots.get(integration_id)
    if slot is None:
        slot = _RefreshSlot()
        slots[integration_id] = slot
    slot.users += 1
    try:
        async with slot.lock:
            yield
    finally:
        slot.users -= 1
        if slot.users == 0 and slots.get(integration_id) is slot:
            del slots[integration_id]


@dataclass
class AccessToken:
    integration_id: str
    organization_id: str
    external_user_id: Optional[str]
    token: str
    expires_at: Optional[datetime]


class CredentialVault:
    """Loads, decrypts and refreshes marketplace OAuth credentials."""

    def __init__(
        self,
        db: Session,
        key: Optional[bytes] = None,
        http: Optional[httpx.AsyncClient] = None,
        marketplace_name: Optional[str] = None,
    ):
        self.db = db
        self._key = key
        self.http = http
        self.marketplace_name = marketplace_name or settings.MARKETPLACE_NAME

    @property
    def key(self) -> bytes:
        if self._key is None:
            self._key = load_key()
        return self._key

    # --- lookup ---

    def get_integration(self, integration_id: str) -> MarketplaceIntegration:
        integration = (
            self.db.query(MarketplaceIntegration)
            .filter(MarketplaceIntegration.id == integration_id)
            .first()
        )
        if not integration:
            raise IntegrationNotFound(f"Integration {integration_id} not found")
        return integration

    def find_active_integration(
        self, organization_id: Optional[str] = None, seller_id: Optional[str] = None
    ) -> MarketplaceIntegration:
        """Most recently issued enabled integration for an organization or marketplace seller id."""
        if not organization_id and not seller_id:
            raise IntegrationNotFound("organization_id or seller_id is required")
        q = self.db.query(MarketplaceIntegration).filter(
            MarketplaceIntegration.marketplace_name == self.marketplace_name,
            MarketplaceIntegration.enabled.is_(True),
        )
        if organization_id:
            q = q.filter(MarketplaceIntegration.organization_id == organization_id)
        if seller_id:
            q = q.filter(MarketplaceIntegration.external_user_id == str(seller_id))
        integration = q.order_by(
            MarketplaceIntegration.expires_at.desc().nullslast(),
            MarketplaceIntegration.created_at.desc(),
        ).first()
        if not integration:
            who = f"organization {organization_id}" if organization_id else f"seller {seller_id}"
            raise IntegrationNotFound(f"No {self.marketplace_name} integration for {who}")
        return integration

    # --- tokens ---

    def _access_token(self, integration: MarketplaceIntegration) -> AccessToken:
        return AccessToken(
            integration_id=integration.id,
            organization_id=integration.organization_id,
            external_user_id=integration.external_user_id,
            token=decrypt_token(self.key, integration.access_token or ""),
            expires_at=integration.expires_at,
        )

    @staticmethod
    def _is_fresh(integration: MarketplaceIntegration) -> bool:
        return integration.expires_at is not None and utcnow() < integration.expires_at

    async def get_valid_access_token(self, integration_id: str) -> AccessToken:
        """Return a usable access token, refreshing first if the stored one has expired."""
        integration = self.get_integration(integration_id)
        if self._is_fresh(integration):
            return self._access_token(integration)
        logger.info("Access token expired for integration=%s; refreshing", integration_id)
        return await self.refresh(integration_id)

    async def refresh(
        self, integration_id: str, stale_token: Optional[str] = None, force: bool = False
    ) -> AccessToken:
        """
        Run the refresh grant once for this integration.

        stale_token is the access token the caller saw rejected; if the row already
        holds a different unexpired token (another caller refreshed while we waited)
        that token is returned without a second refresh. force skips that check.
        """
        async with _refresh_lock(integration_id):
            integration = self.get_integration(integration_id)
            self.db.refresh(integration)
            if not force and self._is_fresh(integration):
                current = self._access_token(integration)
                if stale_token is None or current.token != stale_token:
                    logger.debug("Integration %s already refreshed by a concurrent caller", integration_id)
                    return current
            return await self._refresh_locked(integration)

    def _app_credentials(self) -> Tuple[str, str]:
        app = self.db.query(MarketplaceApp).filter(MarketplaceApp.name == self.marketplace_name).first()
        client_id = app.client_id if app and app.client_id else settings.MARKETPLACE_CLIENT_ID
        client_secret = settings.MARKETPLACE_CLIENT_SECRET
        if app and app.client_secret:
            client_secret = decrypt_token(self.key, app.client_secret)
        if not client_id or not client_secret:
            raise ConfigMissing(f"Missing client credentials for app {self.marketplace_name}")
        return client_id, client_secret

    async def _refresh_locked(self, integration: MarketplaceIntegration) -> AccessToken:
        if not integration.refresh_token:
            raise RefreshFailure(f"Integration {integration.id} has no refresh_token")
        client_id, client_secret = self._app_credentials()
        refresh_plain = decrypt_token(self.key, integration.refresh_token)

        try:
            resp = await post_form_no_retry(
                settings.MARKETPLACE_OAUTH_URL,
                client=self.http,
                data={
                    "grant_type": "refresh_token",
                    "client_id": client_id,
                    "client_secret": client_secret,
                    "refresh_token": refresh_plain,
                },
            )
        except httpx.HTTPError as e:
            logger.warning("Refresh call failed for integration=%s: %s", integration.id, e)
            raise RefreshFailure(f"Failed to call OAuth token endpoint: {e}") from e

        try:
            payload = resp.json()
        except ValueError:
            payload = {"raw": resp.text[:500]}

        if resp.status_code >= 400 or not isinstance(payload, dict) or not payload.get("access_token"):
            message = "Refresh failed"
            if isinstance(payload, dict):
                message = payload.get("error_description") or payload.get("message") or message
            logger.warning(
                "Refresh rejected for integration=%s status=%s error=%s",
                integration.id, resp.status_code, message,
            )
            raise RefreshFailure(message, status_code=resp.status_code, details=payload)

        expires_in = int(payload.get("expires_in") or 0)
        integration.access_token = encrypt_token(self.key, payload["access_token"])
        if payload.get("refresh_token"):
            integration.refresh_token = encrypt_token(self.key, payload["refresh_token"])
        integration.expires_at = utcnow() + timedelta(seconds=expires_in)
        if payload.get("user_id") is not None:
            integration.external_user_id = str(payload["user_id"])
        integration.updated_at = utcnow()
        self.db.commit()
        logger.info(
            "Refreshed integration=%s expires_at=%s user_id=%s",
            integration.id, integration.expires_at.isoformat(), integration.external_user_id,
        )
        return AccessToken(
            integration_id=integration.id,
            organization_id=integration.organization_id,
            external_user_id=integration.external_user_id,
            token=payload["access_token"],
            expires_at=integration.expires_at,
        )
