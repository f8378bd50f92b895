"""Create stock ledger, purchase, dispatch, return and rider settlement tables

Revision ID: 20261019_create_ledger_schema
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_create_ledger_schema'
down_revision = None
branch_labels = None
depends_on = None


def _money(name, nullable=False, **kwargs):
    return sa.Column(name, sa.Numeric(12, 2), nullable=nullable, **kwargs)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # ==================== CATALOG ====================
    op.create_table(
        'products',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )

    op.create_table(
        'product_variants',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('product_id', sa.Uuid(), sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('sku', sa.String(100), unique=True, nullable=False, index=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('current_stock', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reorder_level', sa.Integer(), nullable=False, server_default='0'),
        _money('cost_price', server_default='0'),
        _money('selling_price', server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint('current_stock >= 0', name='ck_product_variants_stock_non_negative'),
    )

    # ==================== STOCK LEDGER ====================
    op.create_table(
        'stock_movements',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('movement_number', sa.String(50), unique=True, nullable=False, index=True),
        sa.Column('movement_type', sa.String(50), nullable=False, index=True,
                  comment='INWARD, OUTWARD, DAMAGE, ADJUSTMENT'),
        sa.Column('variant_id', sa.Uuid(), sa.ForeignKey('product_variants.id'), nullable=False, index=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('stock_delta', sa.Integer(), nullable=False),
        sa.Column('stock_before', sa.Integer(), nullable=False),
        sa.Column('stock_after', sa.Integer(), nullable=False),
        sa.Column('reference_type', sa.String(50), nullable=True, index=True),
        sa.Column('reference_id', sa.Uuid(), nullable=True, index=True),
        sa.Column('reference_number', sa.String(100), nullable=True),
        _money('unit_cost', nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('quantity > 0', name='ck_stock_movements_quantity_positive'),
        sa.CheckConstraint('stock_after = stock_before + stock_delta', name='ck_stock_movements_balance'),
    )

    # ==================== PURCHASES ====================
    op.create_table(
        'vendors',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False, index=True),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _money('balance', server_default='0', comment='Amount owed to vendor'),
        *_timestamps(),
    )

    op.create_table(
        'vendor_supplies',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('supply_number', sa.String(30), unique=True, nullable=False, index=True),
        sa.Column('vendor_id', sa.Uuid(), sa.ForeignKey('vendors.id', ondelete='RESTRICT'), nullable=False, index=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='RECEIVED', index=True,
                  comment='RECEIVED, PARTIAL, PAID'),
        _money('total_amount', server_default='0'),
        _money('paid_amount', server_default='0'),
        sa.Column('invoice_number', sa.String(100), nullable=True),
        sa.Column('invoice_date', sa.Date(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('received_by', sa.Uuid(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'vendor_supply_items',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('supply_id', sa.Uuid(), sa.ForeignKey('vendor_supplies.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('variant_id', sa.Uuid(), sa.ForeignKey('product_variants.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('line_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('quantity', sa.Integer(), nullable=False),
        _money('unit_cost'),
        _money('total_cost'),
        sa.Column('stock_applied', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('stock_error', sa.Text(), nullable=True),
    )

    op.create_table(
        'vendor_payments',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('supply_id', sa.Uuid(), sa.ForeignKey('vendor_supplies.id', ondelete='RESTRICT'), nullable=False, index=True),
        sa.Column('vendor_id', sa.Uuid(), sa.ForeignKey('vendors.id', ondelete='RESTRICT'), nullable=False, index=True),
        _money('amount'),
        sa.Column('payment_mode', sa.String(50), nullable=False, comment='CASH, BANK, UPI, CHEQUE'),
        sa.Column('reference_number', sa.String(100), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # ==================== RIDERS & DISPATCH ====================
    op.create_table(
        'riders',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('rider_code', sa.String(30), unique=True, nullable=False, index=True),
        sa.Column('full_name', sa.String(200), nullable=False),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='AVAILABLE',
                  comment='AVAILABLE, ON_DELIVERY, OFF_DUTY'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _money('current_cash_balance', server_default='0'),
        sa.Column('total_deliveries', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful_deliveries', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('returned_deliveries', sa.Integer(), nullable=False, server_default='0'),
        *_timestamps(),
        sa.CheckConstraint('current_cash_balance >= 0', name='ck_riders_cash_balance_non_negative'),
    )

    op.create_table(
        'dispatch_manifests',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('manifest_number', sa.String(30), unique=True, nullable=False, index=True),
        sa.Column('rider_id', sa.Uuid(), sa.ForeignKey('riders.id', ondelete='RESTRICT'), nullable=False, index=True),
        sa.Column('zone_name', sa.String(100), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='OPEN', index=True,
                  comment='OPEN, OUT_FOR_DELIVERY, PARTIALLY_SETTLED, SETTLED, CANCELLED'),
        sa.Column('total_orders', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('delivered_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('returned_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rescheduled_count', sa.Integer(), nullable=False, server_default='0'),
        _money('total_cod_expected', server_default='0'),
        _money('total_cod_collected', server_default='0'),
        _money('cash_received', server_default='0'),
        _money('settlement_variance', server_default='0'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('settlement_notes', sa.Text(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        sa.Column('dispatched_by', sa.Uuid(), nullable=True),
        sa.Column('dispatched_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('settled_by', sa.Uuid(), nullable=True),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancelled_by', sa.Uuid(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    # ==================== ORDERS ====================
    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('order_number', sa.String(30), unique=True, nullable=False, index=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='INTAKE', index=True),
        sa.Column('payment_method', sa.String(50), nullable=False, server_default='COD'),
        sa.Column('payment_status', sa.String(50), nullable=False, server_default='PENDING'),
        _money('total_amount', server_default='0'),
        sa.Column('customer_name', sa.String(200), nullable=True),
        sa.Column('customer_city', sa.String(100), nullable=True),
        sa.Column('rider_id', sa.Uuid(), sa.ForeignKey('riders.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('current_manifest_id', sa.Uuid(), sa.ForeignKey('dispatch_manifests.id', ondelete='SET NULL'),
                  nullable=True, index=True),
        sa.Column('delivery_attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_delivery_outcome', sa.String(50), nullable=True),
        sa.Column('packed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('packed_by', sa.Uuid(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        'order_items',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('order_id', sa.Uuid(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('variant_id', sa.Uuid(), sa.ForeignKey('product_variants.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        _money('unit_price', server_default='0'),
    )

    op.create_table(
        'manifest_items',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('manifest_id', sa.Uuid(), sa.ForeignKey('dispatch_manifests.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('order_id', sa.Uuid(), sa.ForeignKey('orders.id', ondelete='RESTRICT'), nullable=False, index=True),
        sa.Column('sequence_number', sa.Integer(), nullable=False),
        sa.Column('outcome', sa.String(50), nullable=False, server_default='PENDING', index=True),
        sa.Column('outcome_notes', sa.Text(), nullable=True),
        sa.Column('outcome_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('recorded_by', sa.Uuid(), nullable=True),
        _money('cod_amount', server_default='0'),
        _money('cod_collected', server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('manifest_id', 'order_id', name='uq_manifest_items_manifest_order'),
    )

    # ==================== RIDER CASH ====================
    op.create_table(
        'rider_balance_logs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('rider_id', sa.Uuid(), sa.ForeignKey('riders.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('change_type', sa.String(50), nullable=False, comment='COD_COLLECTION, SETTLEMENT'),
        _money('amount', comment='Signed change'),
        _money('balance_before'),
        _money('balance_after'),
        sa.Column('reference_type', sa.String(50), nullable=True),
        sa.Column('reference_id', sa.Uuid(), nullable=True),
        sa.Column('reference_number', sa.String(50), nullable=True),
        sa.Column('performed_by', sa.Uuid(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now(), index=True),
    )

    op.create_table(
        'rider_settlements',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('settlement_number', sa.String(30), unique=True, nullable=False, index=True),
        sa.Column('rider_id', sa.Uuid(), sa.ForeignKey('riders.id', ondelete='RESTRICT'), nullable=False, index=True),
        sa.Column('manifest_id', sa.Uuid(), sa.ForeignKey('dispatch_manifests.id', ondelete='SET NULL'),
                  nullable=True, index=True),
        sa.Column('settlement_date', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        _money('total_cod_collected'),
        _money('amount_deposited'),
        _money('balance_before'),
        _money('balance_after'),
        sa.Column('payment_method', sa.String(50), nullable=False, server_default='CASH'),
        sa.Column('deposit_reference', sa.String(100), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='PENDING', index=True,
                  comment='PENDING, SETTLED, VERIFIED'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        sa.Column('verified_by', sa.Uuid(), nullable=True),
        sa.Column('verified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # ==================== RETURNS ====================
    op.create_table(
        'order_returns',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('return_number', sa.String(30), unique=True, nullable=False, index=True),
        sa.Column('order_id', sa.Uuid(), sa.ForeignKey('orders.id', ondelete='RESTRICT'), nullable=False, index=True),
        sa.Column('rider_id', sa.Uuid(), sa.ForeignKey('riders.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('manifest_id', sa.Uuid(), sa.ForeignKey('dispatch_manifests.id', ondelete='SET NULL'), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='RECEIVED'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('received_by', sa.Uuid(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        'order_return_items',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('return_id', sa.Uuid(), sa.ForeignKey('order_returns.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('variant_id', sa.Uuid(), sa.ForeignKey('product_variants.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('condition', sa.String(50), nullable=False, comment='GOOD, DAMAGED'),
        sa.Column('movement_id', sa.Uuid(), sa.ForeignKey('stock_movements.id', ondelete='SET NULL'), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('order_return_items')
    op.drop_table('order_returns')
    op.drop_table('rider_settlements')
    op.drop_table('rider_balance_logs')
    op.drop_table('manifest_items')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('dispatch_manifests')
    op.drop_table('riders')
    op.drop_table('vendor_payments')
    op.drop_table('vendor_supply_items')
    op.drop_table('vendor_supplies')
    op.drop_table('vendors')
    op.drop_table('stock_movements')
    op.drop_table('product_variants')
    op.drop_table('products')
