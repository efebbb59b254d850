"""allocation_schema

Revision ID: 3f9a1c2e7b40
Revises:
Create Date: 2026-10-19 09:12:41.118204+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3f9a1c2e7b40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Tables with tenant_id that get RLS
RLS_TABLES = [
    "users", "locations", "products", "purchase_orders", "transfers",
    "allocations", "allocation_audit_log", "allocation_templates",
    "transfer_allocations",
]


def upgrade() -> None:
    # 1. collaborator tables
    op.create_table('tenants',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('name', sa.String(length=200), nullable=False),
    sa.Column('slug', sa.String(length=50), nullable=False),
    sa.Column('status', sa.String(length=20), nullable=False, server_default='ACTIVE'),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('slug')
    )
    op.create_index('idx_tenants_slug', 'tenants', ['slug'], unique=False)

    op.create_table('users',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('email', sa.String(length=255), nullable=False),
    sa.Column('first_name', sa.String(length=100), nullable=True),
    sa.Column('last_name', sa.String(length=100), nullable=True),
    sa.Column('role', sa.String(length=50), nullable=False),
    sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('deleted_at', sa.DateTime(), nullable=True),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('email')
    )
    op.create_index('idx_users_tenant', 'users', ['tenant_id'], unique=False)
    op.create_index('idx_users_role', 'users', ['role'], unique=False)

    op.create_table('locations',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('name', sa.String(length=200), nullable=False),
    sa.Column('type', sa.String(length=30), nullable=False, server_default='RESTAURANT'),
    sa.Column('address', sa.Text(), nullable=True),
    sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_locations_tenant', 'locations', ['tenant_id'], unique=False)

    op.create_table('products',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('name', sa.String(length=200), nullable=False),
    sa.Column('sku', sa.String(length=100), nullable=True),
    sa.Column('unit', sa.String(length=20), nullable=False, server_default='each'),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_products_tenant', 'products', ['tenant_id'], unique=False)

    op.create_table('purchase_orders',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('po_number', sa.String(length=50), nullable=False),
    sa.Column('supplier_name', sa.String(length=200), nullable=True),
    sa.Column('status', sa.String(length=50), nullable=False, server_default='DRAFT'),
    sa.Column('total_cents', sa.BigInteger(), nullable=False, server_default='0'),
    sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
    sa.Column('created_by', sa.UUID(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.CheckConstraint("status IN ('DRAFT','PENDING_APPROVAL','APPROVED','RECEIVED','CANCELLED')", name='chk_po_status'),
    sa.ForeignKeyConstraint(['created_by'], ['users.id'], ),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('tenant_id', 'po_number', name='uq_po_tenant_number')
    )
    op.create_index('idx_po_tenant', 'purchase_orders', ['tenant_id'], unique=False)
    op.create_index('idx_po_status', 'purchase_orders', ['status'], unique=False)

    op.create_table('po_line_items',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('po_id', sa.UUID(), nullable=False),
    sa.Column('product_id', sa.UUID(), nullable=False),
    sa.Column('line_number', sa.Integer(), nullable=False),
    sa.Column('description', sa.Text(), nullable=True),
    sa.Column('quantity', sa.Integer(), nullable=False),
    sa.Column('unit_price_cents', sa.BigInteger(), nullable=False),
    sa.Column('received_quantity', sa.Integer(), nullable=False, server_default='0'),
    sa.CheckConstraint('quantity > 0', name='chk_po_line_qty'),
    sa.CheckConstraint('unit_price_cents >= 0', name='chk_po_line_price'),
    sa.ForeignKeyConstraint(['po_id'], ['purchase_orders.id'], ondelete='CASCADE'),
    sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('po_id', 'line_number', name='uq_po_line_item')
    )
    op.create_index('idx_po_items_po', 'po_line_items', ['po_id'], unique=False)

    op.create_table('transfers',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('product_id', sa.UUID(), nullable=False),
    sa.Column('source_location_id', sa.UUID(), nullable=False),
    sa.Column('destination_location_id', sa.UUID(), nullable=False),
    sa.Column('quantity_requested', sa.Integer(), nullable=False),
    sa.Column('quantity_shipped', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('quantity_received', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('priority', sa.String(length=20), nullable=False, server_default='NORMAL'),
    sa.Column('status', sa.String(length=20), nullable=False, server_default='REQUESTED'),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.Column('reason_code', sa.String(length=50), nullable=True),
    sa.Column('requested_by', sa.UUID(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.CheckConstraint('quantity_requested > 0', name='chk_transfer_qty'),
    sa.CheckConstraint('source_location_id <> destination_location_id', name='chk_transfer_distinct_locations'),
    sa.CheckConstraint("status IN ('REQUESTED','APPROVED','SHIPPED','RECEIVED','CANCELLED')", name='chk_transfer_status'),
    sa.CheckConstraint("priority IN ('NORMAL','HIGH','EMERGENCY')", name='chk_transfer_priority'),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
    sa.ForeignKeyConstraint(['source_location_id'], ['locations.id'], ),
    sa.ForeignKeyConstraint(['destination_location_id'], ['locations.id'], ),
    sa.ForeignKeyConstraint(['requested_by'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_transfers_tenant_status', 'transfers', ['tenant_id', 'status'], unique=False)

    # 2. allocation tables
    op.create_table('allocations',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('po_item_id', sa.UUID(), nullable=False),
    sa.Column('target_location_id', sa.UUID(), nullable=False),
    sa.Column('quantity_allocated', sa.Integer(), nullable=False),
    sa.Column('quantity_received', sa.Integer(), nullable=False, server_default='0'),
    sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.Column('created_by', sa.UUID(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.CheckConstraint('quantity_allocated > 0', name='chk_allocation_qty_positive'),
    sa.CheckConstraint('quantity_received >= 0 AND quantity_received <= quantity_allocated', name='chk_allocation_received_bound'),
    sa.CheckConstraint("status IN ('PENDING','SHIPPED','RECEIVED','CANCELLED')", name='chk_allocation_status'),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.ForeignKeyConstraint(['po_item_id'], ['po_line_items.id'], ),
    sa.ForeignKeyConstraint(['target_location_id'], ['locations.id'], ),
    sa.ForeignKeyConstraint(['created_by'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('tenant_id', 'po_item_id', 'target_location_id', name='uq_allocation_item_location')
    )
    op.create_index('idx_allocation_tenant_status', 'allocations', ['tenant_id', 'status'], unique=False)
    op.create_index('idx_allocation_tenant_location', 'allocations', ['tenant_id', 'target_location_id'], unique=False)
    op.create_index('idx_allocation_po_item', 'allocations', ['po_item_id'], unique=False)

    # allocation_id deliberately has no FK: entries outlive deleted allocations
    op.create_table('allocation_audit_log',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('allocation_id', sa.UUID(), nullable=False),
    sa.Column('action', sa.String(length=30), nullable=False),
    sa.Column('old_values', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('new_values', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('performed_by', sa.UUID(), nullable=True),
    sa.Column('performed_at', sa.DateTime(), nullable=False),
    sa.Column('notes', sa.Text(), nullable=True),
    sa.CheckConstraint("action IN ('CREATED','UPDATED','DELETED','STATUS_CHANGED')", name='chk_allocation_audit_action'),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.ForeignKeyConstraint(['performed_by'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index('idx_alloc_audit_tenant_allocation', 'allocation_audit_log', ['tenant_id', 'allocation_id'], unique=False)
    op.create_index('idx_alloc_audit_action', 'allocation_audit_log', ['action'], unique=False)
    op.create_index('idx_alloc_audit_performed_by', 'allocation_audit_log', ['performed_by'], unique=False)
    op.create_index('idx_alloc_audit_performed_at', 'allocation_audit_log', [sa.text('performed_at DESC')], unique=False)

    op.create_table('allocation_templates',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('name', sa.String(length=200), nullable=False),
    sa.Column('description', sa.Text(), nullable=True),
    sa.Column('template_data', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column('created_by', sa.UUID(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.Column('updated_at', sa.DateTime(), nullable=False),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.ForeignKeyConstraint(['created_by'], ['users.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('tenant_id', 'name', name='uq_allocation_template_name')
    )
    op.create_index('idx_allocation_template_tenant', 'allocation_templates', ['tenant_id'], unique=False)

    op.create_table('transfer_allocations',
    sa.Column('id', sa.UUID(), nullable=False),
    sa.Column('tenant_id', sa.UUID(), nullable=False),
    sa.Column('transfer_id', sa.UUID(), nullable=False),
    sa.Column('allocation_id', sa.UUID(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=False),
    sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ),
    sa.ForeignKeyConstraint(['transfer_id'], ['transfers.id'], ),
    sa.ForeignKeyConstraint(['allocation_id'], ['allocations.id'], ),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('tenant_id', 'transfer_id', 'allocation_id', name='uq_transfer_allocation')
    )
    op.create_index('idx_transfer_alloc_allocation', 'transfer_allocations', ['tenant_id', 'allocation_id'], unique=False)
    op.create_index('idx_transfer_alloc_transfer', 'transfer_allocations', ['tenant_id', 'transfer_id'], unique=False)

    # 3. tenant isolation
    for table in RLS_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY tenant_isolation ON {table} "
            f"USING (tenant_id = current_setting('app.current_tenant_id')::uuid)"
        )


def downgrade() -> None:
    for table in RLS_TABLES:
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation ON {table}")
    op.drop_table('transfer_allocations')
    op.drop_table('allocation_templates')
    op.drop_table('allocation_audit_log')
    op.drop_table('allocations')
    op.drop_table('transfers')
    op.drop_table('po_line_items')
    op.drop_table('purchase_orders')
    op.drop_table('products')
    op.drop_table('locations')
    op.drop_table('users')
    op.drop_table('tenants')
