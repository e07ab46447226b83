"""create vendor commission, payout and dropshipping tables

Revision ID: 0001_commission_core
Revises:
Create Date: 2026-10-19

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = '0001_commission_core'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # 1. Vendedores y proveedores
    op.create_table(
        'vendors',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('email', sa.String(length=120), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='VENDOR'),
        sa.Column('plan_type', sa.String(length=20), nullable=False, server_default='STARTER'),
        sa.Column('average_rating', sa.Numeric(precision=3, scale=2), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id', name='pk_vendors'),
        sa.UniqueConstraint('email', name='uq_vendors_email'),
    )

    op.create_table(
        'suppliers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='ACTIVE'),
        sa.Column('contact_email', sa.String(length=120), nullable=True),
        sa.Column('api_endpoint', sa.String(length=500), nullable=True),
        sa.Column('api_key', sa.String(length=500), nullable=True),
        sa.Column('api_email', sa.String(length=120), nullable=True),
        sa.Column('average_shipping', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id', name='pk_suppliers'),
    )

    op.create_table(
        'dropshipping_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('auto_send_orders', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('notify_customer_on_shipment', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('status_check_interval', sa.Integer(), nullable=False, server_default='12'),
        sa.Column('default_cost_ratio', sa.Numeric(precision=5, scale=2), nullable=False, server_default='0.70'),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id', name='pk_dropshipping_settings'),
    )

    op.create_table(
        'exchange_rates',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False, server_default='manual'),
        sa.Column('base_currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('quote_currency', sa.String(length=3), nullable=False),
        sa.Column('rate', sa.Numeric(precision=18, scale=6), nullable=False),
        sa.Column('as_of_date', sa.Date(), nullable=False),
        sa.Column('fetched_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_exchange_rates'),
        sa.UniqueConstraint(
            'provider', 'base_currency', 'quote_currency', 'as_of_date', name='uq_exchange_rate_daily'
        ),
    )

    # 2. Catalogo y ordenes
    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('sku', sa.String(length=100), nullable=True),
        sa.Column('price', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('cost_price', sa.Numeric(precision=12, scale=2), nullable=True),
        sa.Column('vendor_id', sa.Integer(), nullable=True),
        sa.Column('supplier_id', sa.Integer(), nullable=True),
        sa.Column('supplier_product_id', sa.String(length=100), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id'], name='fk_products_vendor_id_vendors'),
        sa.ForeignKeyConstraint(['supplier_id'], ['suppliers.id'], name='fk_products_supplier_id_suppliers'),
        sa.PrimaryKeyConstraint('id', name='pk_products'),
        sa.UniqueConstraint('sku', name='uq_products_sku'),
    )
    op.create_index('ix_products_vendor_id', 'products', ['vendor_id'])
    op.create_index('ix_products_supplier_id', 'products', ['supplier_id'])

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_number', sa.String(length=50), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('fulfillment_status', sa.String(length=30), nullable=False, server_default='PENDING'),
        sa.Column('customer_name', sa.String(length=200), nullable=True),
        sa.Column('customer_email', sa.String(length=120), nullable=True),
        sa.Column('shipping_address', sa.JSON(), nullable=True),
        sa.Column('total', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
        sa.UniqueConstraint('order_number', name='uq_orders_order_number'),
    )

    op.create_table(
        'supplier_orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('supplier_id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('external_order_id', sa.String(length=100), nullable=True),
        sa.Column('total_cost', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('shipping_cost', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('tracking_number', sa.String(length=100), nullable=True),
        sa.Column('tracking_url', sa.String(length=500), nullable=True),
        sa.Column('carrier', sa.String(length=100), nullable=True),
        sa.Column('estimated_delivery', sa.DateTime(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('last_checked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['supplier_id'], ['suppliers.id'], name='fk_supplier_orders_supplier_id_suppliers'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_supplier_orders_order_id_orders'),
        sa.PrimaryKeyConstraint('id', name='pk_supplier_orders'),
    )
    op.create_index('ix_supplier_orders_supplier_id', 'supplier_orders', ['supplier_id'])
    op.create_index('ix_supplier_orders_order_id', 'supplier_orders', ['order_id'])
    op.create_index('ix_supplier_orders_status', 'supplier_orders', ['status'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('price', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('total', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('supplier_order_id', sa.Integer(), nullable=True),
        sa.Column('supplier_order_status', sa.String(length=20), nullable=True),
        sa.Column('supplier_tracking_number', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_order_items_order_id_orders'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_order_items_product_id_products'),
        sa.ForeignKeyConstraint(
            ['supplier_order_id'], ['supplier_orders.id'], name='fk_order_items_supplier_order_id_supplier_orders'
        ),
        sa.PrimaryKeyConstraint('id', name='pk_order_items'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_supplier_order_id', 'order_items', ['supplier_order_id'])

    # 3. Comisiones y pagos
    op.create_table(
        'commission_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('vendor_id', sa.Integer(), nullable=False),
        sa.Column('default_commission_rate', sa.Numeric(precision=6, scale=4), nullable=False),
        sa.Column('tiered_rates', sa.JSON(), nullable=True),
        sa.Column('minimum_payout', sa.Numeric(precision=12, scale=2), nullable=False, server_default='25.00'),
        sa.Column('payment_method', sa.String(length=50), nullable=False, server_default='bank_transfer'),
        sa.Column('payment_details', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id'], name='fk_commission_settings_vendor_id_vendors'),
        sa.PrimaryKeyConstraint('id', name='pk_commission_settings'),
        sa.UniqueConstraint('vendor_id', name='uq_commission_settings_vendor_id'),
    )

    op.create_table(
        'payouts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('vendor_id', sa.Integer(), nullable=False),
        sa.Column('total_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('commission_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id'], name='fk_payouts_vendor_id_vendors'),
        sa.PrimaryKeyConstraint('id', name='pk_payouts'),
    )
    op.create_index('ix_payouts_vendor_id', 'payouts', ['vendor_id'])

    op.create_table(
        'commission_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('order_item_id', sa.Integer(), nullable=False),
        sa.Column('vendor_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('sale_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('commission_rate', sa.Numeric(precision=6, scale=4), nullable=False),
        sa.Column('base_commission', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('commission_amount', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('platform_earnings', sa.Numeric(precision=12, scale=2), nullable=False),
        sa.Column('transaction_fee', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('performance_bonus', sa.Numeric(precision=12, scale=2), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
        sa.Column('payout_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_commission_records_order_id_orders'),
        sa.ForeignKeyConstraint(
            ['order_item_id'], ['order_items.id'], name='fk_commission_records_order_item_id_order_items'
        ),
        sa.ForeignKeyConstraint(['vendor_id'], ['vendors.id'], name='fk_commission_records_vendor_id_vendors'),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], name='fk_commission_records_product_id_products'),
        sa.ForeignKeyConstraint(['payout_id'], ['payouts.id'], name='fk_commission_records_payout_id_payouts'),
        sa.PrimaryKeyConstraint('id', name='pk_commission_records'),
        sa.UniqueConstraint('order_item_id', 'vendor_id', name='uq_commission_records_item_vendor'),
    )
    op.create_index('ix_commission_records_order_id', 'commission_records', ['order_id'])
    op.create_index('ix_commission_records_payout_id', 'commission_records', ['payout_id'])
    op.create_index(
        'ix_commission_records_vendor_status_created',
        'commission_records',
        ['vendor_id', 'status', 'created_at'],
    )


def downgrade() -> None:
    for table in (
        'commission_records',
        'payouts',
        'commission_settings',
        'order_items',
        'supplier_orders',
        'orders',
        'products',
        'exchange_rates',
        'dropshipping_settings',
        'suppliers',
        'vendors',
    ):
        op.drop_table(table)
