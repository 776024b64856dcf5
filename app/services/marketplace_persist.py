"""
Persist marketplace orders and items: upsert keyed on (organization, marketplace, external id).
Used by OrderSyncEngine and the item/stock webhook handlers so there is one write path.
"""
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import MarketplaceItem, MarketplaceOrder
from app.services.datetime_utils import parse_ts, utcnow

logger = logging.getLogger(__name__)

ORDER_FIELDS = (
    "company_id",
    "status",
    "status_detail",
    "order_items",
    "buyer",
    "seller",
    "payments",
    "shipments",
    "feedback",
    "tags",
    "data",
    "date_created",
    "date_closed",
    "last_updated",
    "last_synced_at",
    "updated_at",
)

ITEM_FIELDS = (
    "company_id",
    "user_product_id",
    "title",
    "sku",
    "condition",
    "status",
    "price",
    "available_quantity",
    "sold_quantity",
    "category_id",
    "permalink",
    "seller_id",
    "data",
    "last_synced_at",
    "updated_at",
)


def find_order(db: Session, organization_id: str, marketplace_name: str, order_id: str) -> Optional[MarketplaceOrder]:
    return (
        db.query(MarketplaceOrder)
        .filter(
            MarketplaceOrder.organization_id == organization_id,
            MarketplaceOrder.marketplace_name == marketplace_name,
            MarketplaceOrder.marketplace_order_id == str(order_id),
        )
        .first()
    )


def build_order_values(order: dict, payments: list, shipments: list, company_id: Optional[str] = None) -> dict:
    """Map an order detail payload plus enrichment onto MarketplaceOrder columns."""
    now = utcnow()
    return {
        "company_id": company_id,
        "status": order.get("status"),
        "status_detail": order.get("status_detail"),
        "order_items": order.get("order_items") if isinstance(order.get("order_items"), list) else [],
        "buyer": order.get("buyer"),
        "seller": order.get("seller"),
        "payments": payments,
        "shipments": shipments,
        "feedback": order.get("feedback"),
        "tags": order.get("tags") if isinstance(order.get("tags"), list) else [],
        "data": order,
        "date_created": parse_ts(order.get("date_created")),
        "date_closed": parse_ts(order.get("date_closed")),
        "last_updated": parse_ts(order.get("last_updated") or order.get("date_last_updated")),
        "last_synced_at": now,
        "updated_at": now,
    }


def persist_marketplace_order(
    db: Session, organization_id: str, marketplace_name: str, order_id: str, values: dict
) -> bool:
    """
    Insert or overwrite one order. Commits. Returns True when a row was created.
    A concurrent insert of the same key is retried once as an update.
    """
    for attempt in range(2):
        row = find_order(db, organization_id, marketplace_name, order_id)
        created = row is None
        if created:
            row = MarketplaceOrder(
                organization_id=organization_id,
                marketplace_name=marketplace_name,
                marketplace_order_id=str(order_id),
            )
            db.add(row)
        for field in ORDER_FIELDS:
            if field in values:
                setattr(row, field, values[field])
        try:
            db.commit()
            return created
        except IntegrityError:
            db.rollback()
            if attempt:
                raise
            logger.info("Order %s inserted concurrently; retrying as update", order_id)
    return False


def build_item_values(item: dict, company_id: Optional[str] = None) -> dict:
    now = utcnow()
    sku = item.get("seller_custom_field") or item.get("seller_sku")
    if not sku:
        for attr in item.get("attributes") or []:
            if isinstance(attr, dict) and attr.get("id") == "SELLER_SKU":
                sku = attr.get("value_name")
                break
    return {
        "company_id": company_id,
        "user_product_id": item.get("user_product_id"),
        "title": item.get("title"),
        "sku": sku,
        "condition": item.get("condition"),
        "status": item.get("status"),
        "price": item.get("price"),
        "available_quantity": item.get("available_quantity"),
        "sold_quantity": item.get("sold_quantity"),
        "category_id": item.get("category_id"),
        "permalink": item.get("permalink"),
        "seller_id": str(item["seller_id"]) if item.get("seller_id") is not None else None,
        "data": item,
        "last_synced_at": now,
        "updated_at": now,
    }


def persist_marketplace_item(
    db: Session, organization_id: str, marketplace_name: str, item_id: str, values: dict
) -> bool:
    """Insert or overwrite one item. Commits. Returns True when a row was created."""
    for attempt in range(2):
        row = (
            db.query(MarketplaceItem)
            .filter(
                MarketplaceItem.organization_id == organization_id,
                MarketplaceItem.marketplace_name == marketplace_name,
                MarketplaceItem.marketplace_item_id == str(item_id),
            )
            .first()
        )
        created = row is None
        if created:
            row = MarketplaceItem(
                organization_id=organization_id,
                marketplace_name=marketplace_name,
                marketplace_item_id=str(item_id),
            )
            db.add(row)
        for field in ITEM_FIELDS:
            if field in values:
                setattr(row, field, values[field])
        try:
            db.commit()
            return created
        except IntegrityError:
            db.rollback()
            if attempt:
                raise
            logger.info("Item %s inserted concurrently; retrying as update", item_id)
    return False
