"""
Item and stock refresh for marketplace notifications.
Items are re-fetched and upserted; stock notifications update available_quantity
on every stored item that belongs to the notified user product.
"""
import logging
import re
from typing import Optional

from sqlalchemy.orm import Session

from app.models import MarketplaceIntegration, MarketplaceItem
from app.services.datetime_utils import utcnow
from app.services.marketplace_client import MarketplaceClient
from app.services.marketplace_persist import build_item_values, persist_marketplace_item

logger = logging.getLogger(__name__)

_ITEM_ID = re.compile(r"/items/([A-Z]{3}\d+)", re.IGNORECASE)
_USER_PRODUCT_ID = re.compile(r"/user-products/([A-Z0-9]+)/stock", re.IGNORECASE)


def item_id_from_resource(resource: str) -> Optional[str]:
    m = _ITEM_ID.search(resource or "")
    if m:
        return m.group(1).upper()
    tail = (resource or "").strip().strip("/")
    if re.fullmatch(r"[A-Z]{3}\d+", tail, re.IGNORECASE):
        return tail.upper()
    return None


def user_product_id_from_resource(resource: str) -> Optional[str]:
    m = _USER_PRODUCT_ID.search(resource or "")
    return m.group(1).upper() if m else None


async def refresh_item(db: Session, client: MarketplaceClient, integration: MarketplaceIntegration, item_id: str) -> bool:
    """Fetch /items/{id} and upsert it. Returns True when the row was created."""
    item = await client.get_item(item_id)
    values = build_item_values(item, company_id=integration.company_id)
    created = persist_marketplace_item(db, integration.organization_id, integration.marketplace_name, item_id, values)
    logger.info("Item %s %s for org=%s", item_id, "created" if created else "updated", integration.organization_id)
    return created


def total_stock(payload: dict) -> int:
    """Sum of quantity across all stock locations of a user product."""
    total = 0
    for location in (payload or {}).get("locations") or []:
        if isinstance(location, dict):
            total += int(location.get("quantity") or 0)
    return total


async def refresh_user_product_stock(
    db: Session, client: MarketplaceClient, integration: MarketplaceIntegration, user_product_id: str
) -> int:
    """Apply /user-products/{id}/stock to stored items. Returns the number of items updated."""
    payload = await client.get_resource(f"/user-products/{user_product_id}/stock") or {}
    quantity = total_stock(payload)
    items = (
        db.query(MarketplaceItem)
        .filter(
            MarketplaceItem.organization_id == integration.organization_id,
            MarketplaceItem.marketplace_name == integration.marketplace_name,
            MarketplaceItem.user_product_id == user_product_id,
        )
        .all()
    )
    now = utcnow()
    for item in items:
        item.available_quantity = quantity
        item.last_synced_at = now
    db.commit()
    logger.info(
        "Stock for user_product=%s set to %s on %s item(s) org=%s",
        user_product_id, quantity, len(items), integration.organization_id,
    )
    return len(items)
