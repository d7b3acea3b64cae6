"""Create orderflow tables

Revision ID: create_orderflow_tables
Revises:
Create Date: 2026-06-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'create_orderflow_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _money(**kwargs) -> sa.Numeric:
    return sa.Numeric(precision=18, scale=2, **kwargs)


def upgrade() -> None:
    """Create catalog, order, payment, inventory, coupon and banking tables"""

    # 商品（库存为物化计数器）
    op.create_table('products',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('sku', sa.Text(), nullable=False, comment='商品SKU'),
        sa.Column('name', sa.Text(), nullable=False, comment='商品名称'),
        sa.Column('price', _money(), nullable=False, comment='当前售价'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否上架'),
        sa.Column('stock_quantity', sa.Integer(), nullable=False, server_default='0', comment='当前库存（由库存台账维护）'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='创建时间'),
        sa.CheckConstraint('price >= 0', name='ck_products_price_non_negative'),
        sa.CheckConstraint('stock_quantity >= 0', name='ck_products_stock_non_negative'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('sku', name='uq_products_sku')
    )
    op.create_index('ix_products_active', 'products', ['is_active'], unique=False)

    op.create_table('coupons',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('code', sa.Text(), nullable=False, comment='优惠码'),
        sa.Column('description', sa.Text(), nullable=True, comment='描述'),
        sa.Column('discount_percent', sa.Numeric(precision=5, scale=2), nullable=True, comment='折扣百分比'),
        sa.Column('discount_amount', _money(), nullable=True, comment='固定减免金额'),
        sa.Column('min_cart_value', _money(), nullable=True, comment='最低订单金额'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True, comment='生效时间'),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True, comment='失效时间'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true(), comment='是否启用'),
        sa.Column('usage_limit', sa.Integer(), nullable=True, comment='总使用次数上限'),
        sa.Column('used_count', sa.Integer(), nullable=False, server_default='0', comment='已使用次数'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='创建时间'),
        sa.CheckConstraint(
            'discount_percent IS NULL OR (discount_percent >= 0 AND discount_percent <= 100)',
            name='ck_coupons_percent_range'
        ),
        sa.CheckConstraint('discount_amount IS NULL OR discount_amount >= 0', name='ck_coupons_amount_non_negative'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_coupons_code')
    )

    # 订单
    op.create_table('orders',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_number', sa.Text(), nullable=False, comment='订单编号'),
        sa.Column('user_id', sa.BigInteger(), nullable=False, comment='下单用户ID'),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending', comment='订单状态'),
        sa.Column('payment_method', sa.Text(), nullable=False, comment='下单时选择的支付渠道'),
        sa.Column('total_amount', _money(), nullable=False, comment='应付总额'),
        sa.Column('discount_amount', _money(), nullable=False, server_default='0', comment='优惠金额'),
        sa.Column('shipping_fee', _money(), nullable=False, server_default='0', comment='运费'),
        sa.Column('tax_amount', _money(), nullable=False, server_default='0', comment='税费'),
        sa.Column('currency', sa.Text(), nullable=False, server_default='VND', comment='币种'),
        sa.Column('coupon_id', sa.BigInteger(), nullable=True, comment='优惠券ID'),
        sa.Column('coupon_code', sa.Text(), nullable=True, comment='优惠券代码快照'),
        sa.Column('shipping_address_id', sa.BigInteger(), nullable=False, comment='收货地址ID'),
        sa.Column('billing_address_id', sa.BigInteger(), nullable=True, comment='账单地址ID'),
        sa.Column('processed_by', sa.BigInteger(), nullable=True, comment='处理人ID'),
        sa.Column('notes', sa.Text(), nullable=True, comment='备注'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='记录创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='记录更新时间'),
        sa.CheckConstraint(
            "status IN ('pending', 'confirmed', 'shipping', 'delivered', 'completed', 'cancelled', 'returned')",
            name='ck_orders_status'
        ),
        sa.CheckConstraint("payment_method IN ('cod', 'momo', 'bank_transfer')", name='ck_orders_payment_method'),
        sa.CheckConstraint('total_amount >= 0', name='ck_orders_total_non_negative'),
        sa.CheckConstraint(
            'discount_amount >= 0 AND shipping_fee >= 0 AND tax_amount >= 0',
            name='ck_orders_amounts_non_negative'
        ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_number', name='uq_orders_order_number')
    )
    op.create_index('ix_orders_user_created', 'orders', ['user_id', 'created_at'], unique=False)
    op.create_index('ix_orders_status', 'orders', ['status'], unique=False)
    op.create_index('ix_orders_created_at', 'orders', ['created_at'], unique=False)

    op.create_table('order_items',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False, comment='关联订单ID'),
        sa.Column('product_id', sa.BigInteger(), nullable=False, comment='商品ID'),
        sa.Column('product_name', sa.Text(), nullable=True, comment='商品名称快照'),
        sa.Column('quantity', sa.Integer(), nullable=False, comment='数量'),
        sa.Column('unit_price', _money(), nullable=False, comment='下单时单价'),
        sa.Column('total_price', _money(), nullable=False, comment='行合计（单价 × 数量）'),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
        sa.CheckConstraint('unit_price >= 0', name='ck_order_items_unit_price_non_negative'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_order_items_order', 'order_items', ['order_id'], unique=False)
    op.create_index('ix_order_items_product', 'order_items', ['product_id'], unique=False)

    op.create_table('order_status_history',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False, comment='关联订单ID'),
        sa.Column('from_status', sa.Text(), nullable=True, comment='原状态（创建时为空）'),
        sa.Column('to_status', sa.Text(), nullable=False, comment='新状态'),
        sa.Column('actor_id', sa.BigInteger(), nullable=True, comment='操作人ID'),
        sa.Column('note', sa.Text(), nullable=True, comment='备注'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='变更时间'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_order_status_history_order', 'order_status_history', ['order_id', 'created_at'], unique=False)

    op.create_table('return_requests',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False, comment='关联订单ID'),
        sa.Column('user_id', sa.BigInteger(), nullable=False, comment='下单用户ID'),
        sa.Column('reason', sa.Text(), nullable=False, comment='退货原因'),
        sa.Column('status', sa.Text(), nullable=False, server_default='approved', comment='申请状态'),
        sa.Column('items', sa.JSON(), nullable=False, comment='退货明细'),
        sa.Column('requested_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='申请时间'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='处理时间'),
        sa.Column('processed_by', sa.BigInteger(), nullable=True, comment='处理人ID'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_return_requests_order', 'return_requests', ['order_id'], unique=False)
    op.create_index('ix_return_requests_user', 'return_requests', ['user_id'], unique=False)

    # 支付子账
    op.create_table('payments',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('order_id', sa.BigInteger(), nullable=False, comment='关联订单ID'),
        sa.Column('gateway', sa.Text(), nullable=False, comment='支付渠道'),
        sa.Column('status', sa.Text(), nullable=False, server_default='pending', comment='支付状态'),
        sa.Column('amount', _money(), nullable=False, comment='支付金额'),
        sa.Column('currency', sa.Text(), nullable=False, server_default='VND', comment='币种'),
        sa.Column('gateway_transaction_id', sa.Text(), nullable=True, comment='网关交易号'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True, comment='支付时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='更新时间'),
        sa.CheckConstraint('amount >= 0', name='ck_payments_amount_non_negative'),
        sa.CheckConstraint("gateway IN ('cod', 'momo', 'bank_transfer')", name='ck_payments_gateway'),
        sa.CheckConstraint("status IN ('pending', 'paid', 'failed', 'void')", name='ck_payments_status'),
        sa.CheckConstraint("status <> 'paid' OR paid_at IS NOT NULL", name='ck_payments_paid_at_required'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_payments_order_created', 'payments', ['order_id', 'created_at'], unique=False)
    op.create_index('ix_payments_gateway_txn', 'payments', ['gateway_transaction_id'], unique=False)

    # 库存台账
    op.create_table('inventory_transactions',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('product_id', sa.BigInteger(), nullable=False, comment='商品ID'),
        sa.Column('quantity_change', sa.Integer(), nullable=False, comment='库存变动量（正数入库，负数出库）'),
        sa.Column('change_type', sa.Text(), nullable=False, comment='变动类型'),
        sa.Column('order_id', sa.BigInteger(), nullable=True, comment='引起变动的订单ID'),
        sa.Column('note', sa.Text(), nullable=True, comment='原因'),
        sa.Column('created_by', sa.BigInteger(), nullable=True, comment='操作人ID'),
        sa.Column('stock_after', sa.Integer(), nullable=False, comment='变动后库存'),
        sa.Column('changed_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='变动时间'),
        sa.CheckConstraint('quantity_change <> 0', name='ck_inventory_transactions_non_zero'),
        sa.CheckConstraint(
            "change_type IN ('IN', 'OUT', 'SALE', 'RESTOCK', 'RETURN', 'ADJUSTMENT')",
            name='ck_inventory_transactions_change_type'
        ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_inventory_transactions_product', 'inventory_transactions', ['product_id', 'changed_at'], unique=False)
    op.create_index('ix_inventory_transactions_order', 'inventory_transactions', ['order_id'], unique=False)

    # 银行账户、流水与对账
    op.create_table('bank_accounts',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('bank_name', sa.Text(), nullable=False, comment='开户行'),
        sa.Column('account_number', sa.Text(), nullable=False, comment='账号'),
        sa.Column('account_name', sa.Text(), nullable=True, comment='户名'),
        sa.Column('currency', sa.Text(), nullable=False, server_default='VND', comment='币种'),
        sa.Column('balance', _money(), nullable=False, server_default='0', comment='当前余额'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='创建时间'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_number', name='uq_bank_accounts_number')
    )

    op.create_table('bank_transactions',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('account_id', sa.BigInteger(), nullable=False, comment='银行账户ID'),
        sa.Column('external_txn_id', sa.Text(), nullable=False, comment='银行侧流水号'),
        sa.Column('txn_type', sa.Text(), nullable=False, comment='流水方向'),
        sa.Column('amount', _money(), nullable=False, comment='金额（正数，方向由 txn_type 决定）'),
        sa.Column('currency', sa.Text(), nullable=False, server_default='VND', comment='币种'),
        sa.Column('description', sa.Text(), nullable=True, comment='银行附言'),
        sa.Column('status', sa.Text(), nullable=False, server_default='posted', comment='流水状态'),
        sa.Column('balance_before', _money(), nullable=False, comment='入账前余额'),
        sa.Column('balance_after', _money(), nullable=False, comment='入账后余额'),
        sa.Column('related_order_id', sa.BigInteger(), nullable=True, comment='关联订单ID'),
        sa.Column('related_payment_id', sa.BigInteger(), nullable=True, comment='关联支付ID'),
        sa.Column('posted_at', sa.DateTime(timezone=True), nullable=False, comment='银行记账时间'),
        sa.Column('imported_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='导入时间'),
        sa.Column('created_by', sa.BigInteger(), nullable=True, comment='导入人ID'),
        sa.CheckConstraint('amount > 0', name='ck_bank_transactions_amount_positive'),
        sa.CheckConstraint(
            "txn_type IN ('credit', 'debit', 'transfer', 'fee', 'refund')",
            name='ck_bank_transactions_type'
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'posted', 'reconciled', 'failed', 'cancelled')",
            name='ck_bank_transactions_status'
        ),
        sa.ForeignKeyConstraint(['account_id'], ['bank_accounts.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'external_txn_id', name='uq_bank_transactions_account_external')
    )
    op.create_index('ix_bank_transactions_status', 'bank_transactions', ['status'], unique=False)
    op.create_index('ix_bank_transactions_posted', 'bank_transactions', ['account_id', 'posted_at'], unique=False)
    op.create_index('ix_bank_transactions_order', 'bank_transactions', ['related_order_id'], unique=False)

    op.create_table('bank_reconciliations',
        sa.Column('id', sa.BigInteger(), nullable=False),
        sa.Column('bank_txn_id', sa.BigInteger(), nullable=False, comment='银行流水ID'),
        sa.Column('order_id', sa.BigInteger(), nullable=True, comment='订单ID'),
        sa.Column('payment_id', sa.BigInteger(), nullable=True, comment='支付ID'),
        sa.Column('outcome', sa.Text(), nullable=False, comment='对账结果'),
        sa.Column('matched_by', sa.Text(), nullable=False, comment='auto 或操作人ID'),
        sa.Column('match_score', sa.Integer(), nullable=True, comment='匹配置信度（0-100）'),
        sa.Column('notes', sa.Text(), nullable=True, comment='备注'),
        sa.Column('matched_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, comment='对账时间'),
        sa.CheckConstraint("outcome IN ('matched', 'manual', 'mismatch')", name='ck_bank_reconciliations_outcome'),
        sa.ForeignKeyConstraint(['bank_txn_id'], ['bank_transactions.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('bank_txn_id', name='uq_bank_reconciliations_txn')
    )
    op.create_index('ix_bank_reconciliations_order', 'bank_reconciliations', ['order_id'], unique=False)
    op.create_index('ix_bank_reconciliations_payment', 'bank_reconciliations', ['payment_id'], unique=False)


def downgrade() -> None:
    """Drop all orderflow tables"""
    op.drop_table('bank_reconciliations')
    op.drop_table('bank_transactions')
    op.drop_table('bank_accounts')
    op.drop_table('inventory_transactions')
    op.drop_table('payments')
    op.drop_table('return_requests')
    op.drop_table('order_status_history')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('coupons')
    op.drop_table('products')
