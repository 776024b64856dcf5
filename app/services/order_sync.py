"""
Incremental order synchronization for one marketplace integration.

Lists orders newest-first (bounded by a watermark derived from stored data), skips
orders whose last_updated has not moved, enriches the rest with payment fees and
shipment detail, and upserts them. A failing order is counted and skipped; only an
unusable token stops the run early.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple

import httpx
from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import settings
from app.models import MarketplaceIntegration, MarketplaceOrder
from app.services.credential_vault import CredentialVault
from app.services.datetime_utils import isoformat_utc, parse_ts, utcnow
from app.services.errors import IntegrationNotFound, MarketplaceError, RefreshFailure, TokenRejected, UpstreamError
from app.services.marketplace_client import MarketplaceClient
from app.services.marketplace_persist import build_order_values, find_order, persist_marketplace_order

logger = logging.getLogger(__name__)

# Marketplace sandbox order id that must never be fetched
TEST_ORDER_ID = "2000010000000000"
EPOCH = datetime(1970, 1, 1)
_DIGITS = re.compile(r"^\d+$")


@dataclass
class SyncResult:
    orders_found: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    orders_forced: Optional[int] = None
    degraded: bool = False
    errors: List[str] = field(default_factory=list)

    def to_response(self) -> dict:
        body = {
            "ok": True,
            "orders_found": self.orders_found,
            "created": self.created,
            "updated": self.updated,
        }
        if self.orders_forced is not None:
            body["orders_forced"] = self.orders_forced
        return body


def normalize_order_ids(order_ids: Optional[Iterable]) -> List[str]:
    """Digits-only, de-duplicated (first occurrence wins), sandbox id removed."""
    seen = []
    for raw in order_ids or []:
        oid = str(raw).strip()
        if not _DIGITS.match(oid) or oid == TEST_ORDER_ID or oid in seen:
            continue
        seen.append(oid)
    return seen


def remote_updated_at(order: dict) -> Optional[datetime]:
    return parse_ts(order.get("last_updated") or order.get("date_last_updated") or order.get("date_created"))


def compute_watermark(
    db: Session, organization_id: str, marketplace_name: str, overlap_minutes: int
) -> Optional[datetime]:
    """max(last_updated) of stored orders minus the overlap window; None when nothing is stored."""
    latest = (
        db.query(func.max(MarketplaceOrder.last_updated))
        .filter(
            MarketplaceOrder.organization_id == organization_id,
            MarketplaceOrder.marketplace_name == marketplace_name,
        )
        .scalar()
    )
    if latest is None:
        return None
    latest = parse_ts(latest)
    return max(EPOCH, latest - timedelta(minutes=overlap_minutes))


def _as_float(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def summarize_payment_fees(payment: dict) -> Tuple[Optional[list], Optional[float]]:
    """
    Fee lines of a payment detail. Prefers charges_details (type == "fee", amount
    from amounts.original) and falls back to fee_details. Returns (lines, total).
    """
    lines = []
    charges = payment.get("charges_details")
    if isinstance(charges, list) and charges:
        for charge in charges:
            if not isinstance(charge, dict) or charge.get("type") != "fee":
                continue
            amounts = charge.get("amounts")
            amount = _as_float(amounts.get("original")) if isinstance(amounts, dict) else None
            if amount is None:
                continue
            lines.append({
                "name": charge.get("name"),
                "type": charge.get("type"),
                "amount": amount,
                "accounts": charge.get("accounts"),
            })
    elif isinstance(payment.get("fee_details"), list):
        for fee in payment["fee_details"]:
            amount = _as_float(fee.get("amount")) if isinstance(fee, dict) else None
            if amount is None:
                continue
            lines.append({
                "name": fee.get("type"),
                "type": fee.get("type"),
                "amount": amount,
                "fee_payer": fee.get("fee_payer"),
            })
    else:
        return None, None
    return lines, round(sum(line["amount"] for line in lines), 2)


def shipment_ids_for(order: dict) -> List[str]:
    ids: List[str] = []
    shipping = order.get("shipping")
    if isinstance(shipping, dict) and shipping.get("id"):
        ids.append(str(shipping["id"]))
    for sh in order.get("shipments") or []:
        if not isinstance(sh, dict):
            continue
        sid = sh.get("id") or sh.get("shipment_id")
        if sid and str(sid) not in ids:
            ids.append(str(sid))
    return ids


class OrderSyncEngine:
    """Pull orders for one organization's marketplace integration into marketplace_orders_raw."""

    def __init__(
        self,
        db: Session,
        vault: CredentialVault,
        http: Optional[httpx.AsyncClient] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        overlap_minutes: Optional[int] = None,
    ):
        self.db = db
        self.vault = vault
        self.http = http
        self.page_size = page_size or settings.SYNC_PAGE_SIZE
        self.max_pages = max_pages or settings.SYNC_MAX_PAGES
        self.overlap_minutes = settings.SYNC_OVERLAP_MINUTES if overlap_minutes is None else overlap_minutes

    async def sync(
        self,
        organization_id: Optional[str] = None,
        seller_id: Optional[str] = None,
        full: bool = False,
        order_ids: Optional[Iterable] = None,
        status: Optional[str] = None,
    ) -> SyncResult:
        integration = self.vault.find_active_integration(organization_id=organization_id, seller_id=seller_id)
        client = MarketplaceClient(self.vault, integration.id, http=self.http)
        result = SyncResult()

        ids = normalize_order_ids(order_ids)
        forced = len(ids) > 0
        if forced:
            result.orders_forced = len(ids)
            orders = [{"id": oid} for oid in ids]
            logger.info("Order sync (forced) org=%s ids=%s", integration.organization_id, ids)
        else:
            watermark = None
            if not full:
                watermark = compute_watermark(
                    self.db, integration.organization_id, integration.marketplace_name, self.overlap_minutes
                )
            logger.info(
                "Order sync org=%s seller=%s full=%s watermark=%s",
                integration.organization_id, integration.external_user_id, full,
                watermark.isoformat() if watermark else None,
            )
            orders = await self._list_orders(client, integration, watermark, status, result)
        result.orders_found = len(orders)

        for summary in orders:
            if not isinstance(summary, dict):
                continue
            order_id = str(summary.get("id") or "")
            if not order_id:
                continue
            if not forced and self._is_unchanged(integration, order_id, summary):
                result.skipped += 1
                continue
            try:
                created = await self.sync_order(client, integration, order_id)
            except RefreshFailure as e:
                # token is unusable; remaining orders would fail the same way
                logger.error("Order sync stopped at order=%s: %s", order_id, e)
                result.degraded = True
                result.failed += 1
                result.errors.append(f"{order_id}: {e}")
                break
            except MarketplaceError as e:
                if not isinstance(e, UpstreamError):
                    raise
                self.db.rollback()
                logger.warning("Order %s failed: %s", order_id, e)
                result.failed += 1
                result.errors.append(f"{order_id}: {e}")
                continue
            except Exception as e:
                # malformed payloads, transport and database errors stay with this order
                self.db.rollback()
                logger.exception("Order %s failed: %s", order_id, e)
                result.failed += 1
                result.errors.append(f"{order_id}: {type(e).__name__}: {e}")
                continue
            if created:
                result.created += 1
            else:
                result.updated += 1

        logger.info(
            "Order sync done org=%s found=%s created=%s updated=%s skipped=%s failed=%s degraded=%s",
            integration.organization_id, result.orders_found, result.created, result.updated,
            result.skipped, result.failed, result.degraded,
        )
        return result

    async def _list_orders(
        self,
        client: MarketplaceClient,
        integration: MarketplaceIntegration,
        watermark: Optional[datetime],
        status: Optional[str],
        result: SyncResult,
    ) -> List[dict]:
        seller_id = integration.external_user_id
        if not seller_id:
            raise IntegrationNotFound(f"Integration {integration.id} has no marketplace seller id")
        updated_from = isoformat_utc(watermark) if watermark else None
        orders: List[dict] = []
        offset = 0
        for page in range(self.max_pages):
            try:
                payload = await client.list_orders(
                    seller_id, offset=offset, limit=self.page_size, status=status, updated_from=updated_from
                )
            except (RefreshFailure, UpstreamError, httpx.HTTPError) as e:
                if page == 0:
                    raise
                logger.warning("Order listing stopped at offset=%s: %s", offset, e)
                result.degraded = True
                break
            batch = payload.get("results") if isinstance(payload.get("results"), list) else []
            orders.extend(batch)
            offset += len(batch)
            if not batch:
                break
            if watermark is not None:
                oldest = remote_updated_at(batch[-1])
                if oldest is not None and oldest < watermark:
                    break
            total = int((payload.get("paging") or {}).get("total") or 0)
            if offset >= total:
                break
        else:
            logger.warning("Order listing hit the page cap (%s pages) for seller=%s", self.max_pages, seller_id)
        return orders

    def _is_unchanged(self, integration: MarketplaceIntegration, order_id: str, summary: dict) -> bool:
        existing = find_order(self.db, integration.organization_id, integration.marketplace_name, order_id)
        if existing is None or existing.last_updated is None:
            return False
        remote = remote_updated_at(summary)
        if remote is None:
            return False
        return remote <= parse_ts(existing.last_updated)

    async def sync_order(self, client: MarketplaceClient, integration: MarketplaceIntegration, order_id: str) -> bool:
        """Fetch, enrich and upsert one order. Returns True when the row was created."""
        order = await client.get_order(order_id)
        if not isinstance(order, dict) or not order:
            raise ValueError(f"Unexpected payload for order {order_id}: {type(order).__name__}")
        payments = await self._enrich_payments(client, order)
        shipments = await self._enrich_shipments(client, order)
        values = build_order_values(order, payments, shipments, company_id=integration.company_id)
        return persist_marketplace_order(
            self.db, integration.organization_id, integration.marketplace_name, order_id, values
        )

    async def _enrich_payments(self, client: MarketplaceClient, order: dict) -> list:
        enriched = []
        for payment in order.get("payments") or []:
            if not isinstance(payment, dict):
                continue
            fee_details, fees_total = None, None
            if payment.get("id"):
                detail = await self._fetch_optional(client.get_payment(str(payment["id"])), f"Payment {payment['id']}")
                if isinstance(detail, dict):
                    fee_details, fees_total = summarize_payment_fees(detail)
            upstream_fee = payment.get("marketplace_fee")
            enriched.append({
                **payment,
                "fee_details": fee_details,
                "fees_total": fees_total,
                "marketplace_fee": upstream_fee if upstream_fee is not None else fees_total,
            })
        return enriched

    async def _fetch_optional(self, coro, what: str):
        """
        Sub-resources are best effort. A token refused only for this path counts as
        unavailable; a failed refresh grant still propagates and stops the run.
        """
        try:
            return await coro
        except (UpstreamError, TokenRejected, httpx.HTTPError) as e:
            logger.info("%s unavailable: %s", what, e)
            return None

    async def _enrich_shipments(self, client: MarketplaceClient, order: dict) -> list:
        now_iso = utcnow().isoformat()
        detailed = []
        for sid in shipment_ids_for(order):
            detail = await self._fetch_optional(client.get_shipment(sid), f"Shipment {sid}")
            if detail:
                detailed.append(detail)

        if detailed:
            base, from_detail = detailed, True
        elif isinstance(order.get("shipments"), list) and order["shipments"]:
            base, from_detail = order["shipments"], False
        elif isinstance(order.get("shipping"), dict) and order["shipping"]:
            base, from_detail = [order["shipping"]], False
        else:
            return []

        normalized = []
        for sh in base:
            if not isinstance(sh, dict):
                continue
            sid = sh.get("id") or sh.get("shipment_id")
            tracking = costs = None
            if sid:
                tracking = await self._fetch_optional(client.get_shipment_tracking(str(sid)), f"Tracking {sid}")
                costs = await self._fetch_optional(client.get_shipment_costs(str(sid)), f"Costs {sid}")
            normalized.append({
                **sh,
                "tracking": tracking if tracking is not None else sh.get("tracking"),
                "costs": costs if costs is not None else sh.get("costs"),
                "detail_fetched_at": now_iso if from_detail else sh.get("detail_fetched_at"),
                "tracking_fetched_at": now_iso if tracking is not None else sh.get("tracking_fetched_at"),
                "costs_fetched_at": now_iso if costs is not None else sh.get("costs_fetched_at"),
            })
        return normalized
