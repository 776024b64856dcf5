"""
Marketplace notification router.

accept() validates a notification and decides the HTTP answer without touching the
marketplace API; the actual handler runs later through run(), on its own DB session
and HTTP client, so the marketplace gets its acknowledgement immediately. Anything
that goes wrong in the background is logged with the correlation id and dropped:
the marketplace redelivers notifications it cares about.
"""
import hashlib
import hmac
import json
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.database import SessionLocal
from app.services.credential_vault import CredentialVault
from app.services.errors import IntegrationNotFound
from app.services.http_client import new_client
from app.services.item_sync import (
    item_id_from_resource,
    refresh_item,
    refresh_user_product_stock,
    user_product_id_from_resource,
)
from app.services.marketplace_client import MarketplaceClient
from app.services.order_sync import OrderSyncEngine

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("resource", "user_id", "topic")

# topic -> handler method name
TOPIC_HANDLERS = {
    "items": "handle_items",
    "shipments": "handle_shipments",
    "orders": "handle_orders",
    "orders_v2": "handle_orders",
    "stock_locations": "handle_stock",
    "available_quantity": "handle_stock",
}
SUPPORTED_TOPICS = list(TOPIC_HANDLERS)

_NUMERIC_ID = re.compile(r"/(?:orders|shipments)/(\d+)")
_TRAILING_ID = re.compile(r"(\d+)/?$")


def correlation_id_from(headers: Mapping) -> str:
    return headers.get("x-request-id") or headers.get("x-correlation-id") or str(uuid.uuid4())


def extract_resource_id(resource: str) -> Optional[str]:
    """Numeric id from /orders/123, /shipments/456 or a bare trailing id."""
    resource = str(resource or "")
    m = _NUMERIC_ID.search(resource) or _TRAILING_ID.search(resource)
    return m.group(1) if m else None


def verify_signature(body: bytes, signature_header: Optional[str], secret: Optional[str]) -> bool:
    """
    x-meli-signature: hex HMAC-SHA256(raw_body, secret), optionally prefixed sha256=.
    """
    if not secret or not signature_header:
        return False
    provided = signature_header.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[7:]
    computed = hmac.new(secret.encode("utf-8"), body or b"", hashlib.sha256).hexdigest()
    return hmac.compare_digest(computed, provided.lower())


@dataclass
class WebhookDecision:
    status_code: int
    body: dict
    correlation_id: str
    notification: Optional[dict] = None

    @property
    def dispatch(self) -> bool:
        return self.notification is not None


class WebhookRouter:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        http_factory: Callable[[], httpx.AsyncClient] = new_client,
        signing_secret: Optional[str] = None,
    ):
        self.session_factory = session_factory
        self.http_factory = http_factory
        self.signing_secret = settings.WEBHOOK_SIGNING_SECRET if signing_secret is None else signing_secret

    def accept(self, db: Session, raw_body: bytes, headers: Mapping) -> WebhookDecision:
        """Validate and classify a notification. Never calls the marketplace."""
        correlation_id = correlation_id_from(headers)
        signature = headers.get("x-meli-signature")
        logger.info(
            "Marketplace webhook received correlation_id=%s signature_present=%s bytes=%s",
            correlation_id, bool(signature), len(raw_body or b""),
        )

        if self.signing_secret and not verify_signature(raw_body, signature, self.signing_secret):
            logger.warning("Marketplace webhook signature mismatch correlation_id=%s", correlation_id)
            return WebhookDecision(401, {"ok": False, "error": "Invalid webhook signature", "correlationId": correlation_id}, correlation_id)

        try:
            notification = json.loads(raw_body.decode("utf-8")) if raw_body else None
        except (UnicodeDecodeError, ValueError):
            notification = None
        if not isinstance(notification, dict):
            logger.warning("Marketplace webhook invalid JSON correlation_id=%s", correlation_id)
            return WebhookDecision(
                400,
                {"ok": False, "error": "Invalid JSON body", "missing": list(REQUIRED_FIELDS), "correlationId": correlation_id},
                correlation_id,
            )

        missing = [f for f in REQUIRED_FIELDS if notification.get(f) in (None, "")]
        if missing:
            logger.warning("Marketplace webhook missing=%s correlation_id=%s", missing, correlation_id)
            return WebhookDecision(
                400,
                {"ok": False, "error": "Invalid notification format", "missing": missing, "correlationId": correlation_id},
                correlation_id,
            )

        topic = str(notification["topic"])
        if topic not in TOPIC_HANDLERS:
            logger.info("Marketplace webhook unsupported topic=%s correlation_id=%s", topic, correlation_id)
            return WebhookDecision(
                200,
                {
                    "ok": True,
                    "accepted": False,
                    "topic": topic,
                    "supported_topics": SUPPORTED_TOPICS,
                    "correlationId": correlation_id,
                },
                correlation_id,
            )

        try:
            CredentialVault(db).find_active_integration(seller_id=str(notification["user_id"]))
        except IntegrationNotFound:
            logger.warning(
                "Marketplace webhook for unknown seller user_id=%s topic=%s correlation_id=%s",
                notification["user_id"], topic, correlation_id,
            )
            return WebhookDecision(
                200,
                {"ok": True, "accepted": True, "routed": False, "topic": topic, "correlationId": correlation_id},
                correlation_id,
            )

        return WebhookDecision(
            200,
            {"ok": True, "accepted": True, "topic": topic, "correlationId": correlation_id},
            correlation_id,
            notification=notification,
        )

    async def run(self, notification: dict, correlation_id: str) -> None:
        """Background entry point: own session, own client, every error logged and dropped."""
        db = self.session_factory()
        http = self.http_factory()
        try:
            await self.dispatch(db, http, notification, correlation_id)
        except Exception as e:
            logger.exception(
                "Marketplace webhook handler failed topic=%s resource=%s correlation_id=%s: %s",
                notification.get("topic"), notification.get("resource"), correlation_id, e,
            )
        finally:
            await http.aclose()
            db.close()

    async def dispatch(self, db: Session, http: httpx.AsyncClient, notification: dict, correlation_id: str) -> None:
        handler = getattr(self, TOPIC_HANDLERS[notification["topic"]])
        logger.info(
            "Dispatching topic=%s resource=%s correlation_id=%s",
            notification["topic"], notification.get("resource"), correlation_id,
        )
        await handler(db, http, notification, correlation_id)

    def _context(self, db: Session, http: httpx.AsyncClient, notification: dict):
        vault = CredentialVault(db, http=http)
        integration = vault.find_active_integration(seller_id=str(notification["user_id"]))
        return vault, integration

    async def handle_orders(self, db: Session, http: httpx.AsyncClient, notification: dict, correlation_id: str) -> None:
        order_id = extract_resource_id(notification["resource"])
        if not order_id:
            logger.warning("No order id in resource=%s correlation_id=%s", notification["resource"], correlation_id)
            return
        vault, integration = self._context(db, http, notification)
        engine = OrderSyncEngine(db, vault, http)
        result = await engine.sync(
            organization_id=integration.organization_id,
            seller_id=integration.external_user_id,
            order_ids=[order_id],
        )
        logger.info(
            "Order notification applied order=%s created=%s updated=%s failed=%s forwarded_from=%s correlation_id=%s",
            order_id, result.created, result.updated, result.failed,
            notification.get("_forwarded_from"), correlation_id,
        )

    async def handle_shipments(self, db: Session, http: httpx.AsyncClient, notification: dict, correlation_id: str) -> None:
        shipment_id = extract_resource_id(notification["resource"])
        if not shipment_id:
            logger.warning("No shipment id in resource=%s correlation_id=%s", notification["resource"], correlation_id)
            return
        vault, integration = self._context(db, http, notification)
        client = MarketplaceClient(vault, integration.id, http=http)
        shipment = await client.get_shipment(shipment_id)
        order_id = shipment.get("order_id")
        if not order_id and isinstance(shipment.get("orders"), list) and shipment["orders"]:
            first = shipment["orders"][0]
            order_id = first.get("id") if isinstance(first, dict) else first
        if not order_id:
            logger.warning("Shipment %s has no order id correlation_id=%s", shipment_id, correlation_id)
            return
        forwarded = {
            "topic": "orders",
            "resource": f"/orders/{order_id}",
            "user_id": notification["user_id"],
            "_forwarded_from": "shipments",
            "_shipment_id": shipment_id,
            "_original": notification,
        }
        await self.dispatch(db, http, forwarded, correlation_id)

    async def handle_items(self, db: Session, http: httpx.AsyncClient, notification: dict, correlation_id: str) -> None:
        item_id = item_id_from_resource(notification["resource"])
        if not item_id:
            logger.warning("No item id in resource=%s correlation_id=%s", notification["resource"], correlation_id)
            return
        vault, integration = self._context(db, http, notification)
        client = MarketplaceClient(vault, integration.id, http=http)
        await refresh_item(db, client, integration, item_id)

    async def handle_stock(self, db: Session, http: httpx.AsyncClient, notification: dict, correlation_id: str) -> None:
        resource = notification["resource"]
        user_product_id = user_product_id_from_resource(resource)
        if user_product_id:
            vault, integration = self._context(db, http, notification)
            client = MarketplaceClient(vault, integration.id, http=http)
            await refresh_user_product_stock(db, client, integration, user_product_id)
            return
        if item_id_from_resource(resource):
            await self.handle_items(db, http, notification, correlation_id)
            return
        logger.warning("Unrecognized stock resource=%s correlation_id=%s", resource, correlation_id)
