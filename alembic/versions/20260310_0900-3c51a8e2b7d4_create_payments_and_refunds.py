"""create_payments_and_refunds

Revision ID: 3c51a8e2b7d4
Revises:
Create Date: 2026-03-10 09:00:12.418305

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3c51a8e2b7d4'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create payments table
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='主键ID'),
        sa.Column('local_order_ref', sa.String(length=64), nullable=False, comment='本地订单号（全局唯一）'),
        sa.Column('customer_ref', sa.String(length=100), nullable=True, comment='调用方客户标识'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付提供商: stripe/yookassa'),
        sa.Column('provider_order_ref', sa.String(length=200), nullable=True, comment='渠道订单号（只写一次）'),
        sa.Column('provider_access_ref', sa.String(length=500), nullable=True, comment='渠道前端凭证（只写一次）'),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='支付金额（最小货币单位）'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='KRW', comment='货币代码 ISO-4217'),
        sa.Column('is_zero_settlement', sa.Boolean(), nullable=False, server_default='false', comment='是否零结算'),
        sa.Column('state', sa.String(length=32), nullable=False, server_default='pending', comment='支付状态'),
        sa.Column('claim_token', sa.String(length=64), nullable=True, comment='进行中操作的占用令牌'),
        sa.Column('claim_operation', sa.String(length=32), nullable=True, comment='进行中的操作'),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True, comment='占用时间'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='更新时间'),
        sa.Column('authorized_at', sa.DateTime(timezone=True), nullable=True, comment='授权时间'),
        sa.Column('captured_at', sa.DateTime(timezone=True), nullable=True, comment='扣款时间'),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True, comment='取消时间'),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True, comment='失败时间'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('local_order_ref', name='uq_payments_local_order_ref'),
        sa.CheckConstraint('amount >= 0', name='ck_payments_amount_non_negative'),
        comment='支付流水表'
    )
    op.create_index('ix_payments_state', 'payments', ['state'], unique=False)
    op.create_index('ix_payments_customer_ref', 'payments', ['customer_ref'], unique=False)
    op.create_index('ix_payments_provider_order_ref', 'payments', ['provider', 'provider_order_ref'], unique=False)
    op.create_index('ix_payments_created_at', 'payments', ['created_at'], unique=False)

    # Create refunds table (append-only)
    op.create_table(
        'refunds',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False, comment='主键ID'),
        sa.Column('payment_id', sa.Integer(), nullable=False, comment='关联的支付ID'),
        sa.Column('local_order_ref', sa.String(length=64), nullable=False, comment='本地订单号'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付提供商'),
        sa.Column('provider_refund_ref', sa.String(length=200), nullable=True, comment='渠道退款号'),
        sa.Column('amount', sa.BigInteger(), nullable=False, comment='退款金额（最小货币单位）'),
        sa.Column('source', sa.String(length=16), nullable=False, server_default='backend', comment='创建路径: backend/frontend'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='completed', comment='退款状态: completed'),
        sa.Column('reason', sa.Text(), nullable=True, comment='退款原因'),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False, comment='处理时间'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_refund_ref', name='uq_refunds_provider_refund_ref'),
        sa.CheckConstraint('amount > 0', name='ck_refunds_amount_positive'),
        comment='退款流水表（只追加）'
    )
    op.create_index('ix_refunds_payment_id', 'refunds', ['payment_id'], unique=False)
    op.create_index('ix_refunds_local_order_ref', 'refunds', ['local_order_ref'], unique=False)


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_refunds_local_order_ref', table_name='refunds')
    op.drop_index('ix_refunds_payment_id', table_name='refunds')
    op.drop_table('refunds')

    op.drop_index('ix_payments_created_at', table_name='payments')
    op.drop_index('ix_payments_provider_order_ref', table_name='payments')
    op.drop_index('ix_payments_customer_ref', table_name='payments')
    op.drop_index('ix_payments_state', table_name='payments')
    op.drop_table('payments')
