"""
SQLAlchemy models for marketplace integrations, raw orders and items.
All model definitions live here for simplicity and to avoid circular imports.
"""
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Numeric, JSON, UniqueConstraint, Index
from sqlalchemy.sql import func
from app.database import Base
import uuid


class OrganizationMember(Base):
    __tablename__ = "organization_members"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column("organization_id", String, nullable=False, index=True)
    user_id = Column("user_id", String, nullable=False, index=True)
    role = Column("role", String, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())

    __table_args__ = (UniqueConstraint("organization_id", "user_id", name="organization_members_org_user_unique"),)


class MarketplaceApp(Base):
    """OAuth app registered with a marketplace. client_secret may be stored encrypted."""
    __tablename__ = "marketplace_apps"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column("name", String, unique=True, nullable=False)
    client_id = Column("client_id", String, nullable=False)
    client_secret = Column("client_secret", String, nullable=False)
    created_at = Column("created_at", DateTime, server_default=func.now())


class MarketplaceIntegration(Base):
    """
    OAuth credential set for one organization on one marketplace.
    access_token / refresh_token hold enc:gcm:<iv>:<ct> (or legacy plaintext).
    expires_at is an absolute UTC instant.
    """
    __tablename__ = "marketplace_integrations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column("organization_id", String, nullable=False, index=True)
    company_id = Column("company_id", String, nullable=True)
    marketplace_name = Column("marketplace_name", String, nullable=False)
    external_user_id = Column("external_user_id", String, nullable=True, index=True)
    access_token = Column("access_token", String, nullable=False)
    refresh_token = Column("refresh_token", String, nullable=True)
    expires_at = Column("expires_at", DateTime, nullable=True)
    enabled = Column("enabled", Boolean, nullable=False, default=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())


class MarketplaceOrder(Base):
    """Raw marketplace order, enriched with payment fees and shipment detail."""
    __tablename__ = "marketplace_orders_raw"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column("organization_id", String, nullable=False)
    company_id = Column("company_id", String, nullable=True)
    marketplace_name = Column("marketplace_name", String, nullable=False)
    marketplace_order_id = Column("marketplace_order_id", String, nullable=False)
    status = Column("status", String, nullable=True)
    status_detail = Column("status_detail", JSON, nullable=True)
    order_items = Column("order_items", JSON, nullable=True)
    buyer = Column("buyer", JSON, nullable=True)
    seller = Column("seller", JSON, nullable=True)
    payments = Column("payments", JSON, nullable=True)
    shipments = Column("shipments", JSON, nullable=True)
    feedback = Column("feedback", JSON, nullable=True)
    tags = Column("tags", JSON, nullable=True)
    data = Column("data", JSON, nullable=True)
    date_created = Column("date_created", DateTime, nullable=True)
    date_closed = Column("date_closed", DateTime, nullable=True)
    last_updated = Column("last_updated", DateTime, nullable=True)
    last_synced_at = Column("last_synced_at", DateTime, nullable=True)
    created_at = Column("created_at", DateTime, server_default=func.now())
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "marketplace_name", "marketplace_order_id",
            name="marketplace_orders_raw_org_marketplace_order_unique",
        ),
        Index("ix_marketplace_orders_raw_org_last_updated", "organization_id", "marketplace_name", "last_updated"),
    )


class MarketplaceItem(Base):
    """Marketplace listing snapshot kept current by item/stock webhooks."""
    __tablename__ = "marketplace_items"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    organization_id = Column("organization_id", String, nullable=False)
    company_id = Column("company_id", String, nullable=True)
    marketplace_name = Column("marketplace_name", String, nullable=False)
    marketplace_item_id = Column("marketplace_item_id", String, nullable=False)
    user_product_id = Column("user_product_id", String, nullable=True, index=True)
    title = Column("title", String, nullable=True)
    sku = Column("sku", String, nullable=True)
    condition = Column("condition", String, nullable=True)
    status = Column("status", String, nullable=True)
    price = Column("price", Numeric(12, 2), nullable=True)
    available_quantity = Column("available_quantity", Integer, nullable=True)
    sold_quantity = Column("sold_quantity", Integer, nullable=True)
    category_id = Column("category_id", String, nullable=True)
    permalink = Column("permalink", String, nullable=True)
    seller_id = Column("seller_id", String, nullable=True)
    data = Column("data", JSON, nullable=True)
    last_synced_at = Column("last_synced_at", DateTime, nullable=True)
    updated_at = Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "marketplace_name", "marketplace_item_id",
            name="marketplace_items_org_marketplace_item_unique",
        ),
    )
