"""Initial schema: marketplace integrations, apps, members, raw orders and items

Revision ID: initial_schema
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(updated: bool = True) -> list:
    cols = [sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=True)]
    if updated:
        cols.append(sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=True))
    return cols


def upgrade() -> None:
    """Create marketplace tables that are not there yet."""

    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = set(inspector.get_table_names())

    if "organization_members" not in tables:
        op.create_table('organization_members',
            sa.Column('id', sa.String(), nullable=False),
            sa.Column('organization_id', sa.String(), nullable=False),
            sa.Column('user_id', sa.String(), nullable=False),
            sa.Column('role', sa.String(), nullable=True),
            *_timestamps(updated=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('organization_id', 'user_id', name='organization_members_org_user_unique'),
        )
        op.create_index('ix_organization_members_organization_id', 'organization_members', ['organization_id'])
        op.create_index('ix_organization_members_user_id', 'organization_members', ['user_id'])

    if "marketplace_apps" not in tables:
        op.create_table('marketplace_apps',
            sa.Column('id', sa.String(), nullable=False),
            sa.Column('name', sa.String(), nullable=False),
            sa.Column('client_id', sa.String(), nullable=False),
            sa.Column('client_secret', sa.String(), nullable=False),
            *_timestamps(updated=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('name'),
        )

    if "marketplace_integrations" not in tables:
        op.create_table('marketplace_integrations',
            sa.Column('id', sa.String(), nullable=False),
            sa.Column('organization_id', sa.String(), nullable=False),
            sa.Column('company_id', sa.String(), nullable=True),
            sa.Column('marketplace_name', sa.String(), nullable=False),
            sa.Column('external_user_id', sa.String(), nullable=True),
            sa.Column('access_token', sa.String(), nullable=False),
            sa.Column('refresh_token', sa.String(), nullable=True),
            sa.Column('expires_at', sa.DateTime(), nullable=True),
            sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
        )
        op.create_index('ix_marketplace_integrations_organization_id', 'marketplace_integrations', ['organization_id'])
        op.create_index('ix_marketplace_integrations_external_user_id', 'marketplace_integrations', ['external_user_id'])

    if "marketplace_orders_raw" not in tables:
        op.create_table('marketplace_orders_raw',
            sa.Column('id', sa.String(), nullable=False),
            sa.Column('organization_id', sa.String(), nullable=False),
            sa.Column('company_id', sa.String(), nullable=True),
            sa.Column('marketplace_name', sa.String(), nullable=False),
            sa.Column('marketplace_order_id', sa.String(), nullable=False),
            sa.Column('status', sa.String(), nullable=True),
            sa.Column('status_detail', sa.JSON(), nullable=True),
            sa.Column('order_items', sa.JSON(), nullable=True),
            sa.Column('buyer', sa.JSON(), nullable=True),
            sa.Column('seller', sa.JSON(), nullable=True),
            sa.Column('payments', sa.JSON(), nullable=True),
            sa.Column('shipments', sa.JSON(), nullable=True),
            sa.Column('feedback', sa.JSON(), nullable=True),
            sa.Column('tags', sa.JSON(), nullable=True),
            sa.Column('data', sa.JSON(), nullable=True),
            sa.Column('date_created', sa.DateTime(), nullable=True),
            sa.Column('date_closed', sa.DateTime(), nullable=True),
            sa.Column('last_updated', sa.DateTime(), nullable=True),
            sa.Column('last_synced_at', sa.DateTime(), nullable=True),
            *_timestamps(),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint(
                'organization_id', 'marketplace_name', 'marketplace_order_id',
                name='marketplace_orders_raw_org_marketplace_order_unique',
            ),
        )
        op.create_index(
            'ix_marketplace_orders_raw_org_last_updated',
            'marketplace_orders_raw',
            ['organization_id', 'marketplace_name', 'last_updated'],
        )

    if "marketplace_items" not in tables:
        op.create_table('marketplace_items',
            sa.Column('id', sa.String(), nullable=False),
            sa.Column('organization_id', sa.String(), nullable=False),
            sa.Column('company_id', sa.String(), nullable=True),
            sa.Column('marketplace_name', sa.String(), nullable=False),
            sa.Column('marketplace_item_id', sa.String(), nullable=False),
            sa.Column('user_product_id', sa.String(), nullable=True),
            sa.Column('title', sa.String(), nullable=True),
            sa.Column('sku', sa.String(), nullable=True),
            sa.Column('condition', sa.String(), nullable=True),
            sa.Column('status', sa.String(), nullable=True),
            sa.Column('price', sa.Numeric(12, 2), nullable=True),
            sa.Column('available_quantity', sa.Integer(), nullable=True),
            sa.Column('sold_quantity', sa.Integer(), nullable=True),
            sa.Column('category_id', sa.String(), nullable=True),
            sa.Column('permalink', sa.String(), nullable=True),
            sa.Column('seller_id', sa.String(), nullable=True),
            sa.Column('data', sa.JSON(), nullable=True),
            sa.Column('last_synced_at', sa.DateTime(), nullable=True),
            sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=True),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint(
                'organization_id', 'marketplace_name', 'marketplace_item_id',
                name='marketplace_items_org_marketplace_item_unique',
            ),
        )
        op.create_index('ix_marketplace_items_user_product_id', 'marketplace_items', ['user_product_id'])


def downgrade() -> None:
    """Drop marketplace tables."""
    op.drop_index('ix_marketplace_items_user_product_id', table_name='marketplace_items')
    op.drop_table('marketplace_items')
    op.drop_index('ix_marketplace_orders_raw_org_last_updated', table_name='marketplace_orders_raw')
    op.drop_table('marketplace_orders_raw')
    op.drop_index('ix_marketplace_integrations_external_user_id', table_name='marketplace_integrations')
    op.drop_index('ix_marketplace_integrations_organization_id', table_name='marketplace_integrations')
    op.drop_table('marketplace_integrations')
    op.drop_table('marketplace_apps')
    op.drop_index('ix_organization_members_user_id', table_name='organization_members')
    op.drop_index('ix_organization_members_organization_id', table_name='organization_members')
    op.drop_table('organization_members')
