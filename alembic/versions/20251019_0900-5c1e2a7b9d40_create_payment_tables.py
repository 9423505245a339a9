"""create_payment_tables

Revision ID: 5c1e2a7b9d40
Revises:
Create Date: 2025-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '5c1e2a7b9d40'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='创建时间'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, comment='更新时间'),
    ]


def upgrade() -> None:
    op.create_table(
        'payment_methods',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False, comment='用户ID'),
        sa.Column('type', sa.String(length=50), nullable=False, comment='类型: card/bank_account/digital_wallet'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付提供商'),
        sa.Column('provider_payment_method_id', sa.String(length=255), nullable=False, comment='处理方支付方式ID'),
        sa.Column('is_default', sa.Boolean(), nullable=False, comment='是否默认'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_payment_methods'),
        sa.UniqueConstraint('user_id', 'provider_payment_method_id', name='uq_payment_methods_user_provider_pm'),
        sa.CheckConstraint("type IN ('card', 'bank_account', 'digital_wallet')", name='ck_payment_methods_type'),
    )
    op.create_index('ix_payment_methods_user_id', 'payment_methods', ['user_id'])
    op.create_index('ix_payment_methods_user_default', 'payment_methods', ['user_id', 'is_default'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False, comment='用户ID'),
        sa.Column('payment_method_id', sa.String(length=36), nullable=True, comment='支付方式ID'),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False, comment='金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码 ISO-4217'),
        sa.Column('status', sa.String(length=50), nullable=False,
                  comment='状态: pending/processing/succeeded/failed/cancelled/refunded'),
        sa.Column('type', sa.String(length=20), nullable=False, comment='类型: payment/refund/payout'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付提供商'),
        sa.Column('provider_transaction_id', sa.String(length=255), nullable=True, comment='处理方交易ID'),
        sa.Column('service_name', sa.String(length=100), nullable=False, comment='调用方服务名'),
        sa.Column('service_transaction_id', sa.String(length=255), nullable=False, comment='调用方交易ID'),
        sa.Column('description', sa.Text(), nullable=True, comment='描述'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('failure_reason', sa.Text(), nullable=True, comment='失败原因'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='完成时间'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_transactions'),
        sa.ForeignKeyConstraint(
            ['payment_method_id'], ['payment_methods.id'],
            name='fk_transactions_payment_method_id_payment_methods', ondelete='SET NULL',
        ),
        sa.UniqueConstraint('service_name', 'service_transaction_id', name='uq_transactions_owner_key'),
        sa.CheckConstraint('amount > 0', name='ck_transactions_amount_positive'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'succeeded', 'failed', 'cancelled', 'refunded')",
            name='ck_transactions_status',
        ),
        sa.CheckConstraint("type IN ('payment', 'refund', 'payout')", name='ck_transactions_type'),
    )
    op.create_index('ix_transactions_user_id', 'transactions', ['user_id'])
    op.create_index('ix_transactions_status', 'transactions', ['status'])
    op.create_index('ix_transactions_created_at', 'transactions', ['created_at'])
    op.create_index('ix_transactions_provider_ref', 'transactions', ['provider', 'provider_transaction_id'])
    op.create_index('ix_transactions_user_status', 'transactions', ['user_id', 'status'])

    op.create_table(
        'refunds',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('transaction_id', sa.String(length=36), nullable=False, comment='关联交易ID'),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False, comment='退款金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.Column('status', sa.String(length=50), nullable=False,
                  comment='退款状态: pending/processing/succeeded/failed/cancelled'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付提供商'),
        sa.Column('provider_refund_id', sa.String(length=255), nullable=True, comment='处理方退款ID'),
        sa.Column('reason', sa.String(length=255), nullable=True, comment='退款原因'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='完成时间'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_refunds'),
        sa.ForeignKeyConstraint(
            ['transaction_id'], ['transactions.id'],
            name='fk_refunds_transaction_id_transactions', ondelete='CASCADE',
        ),
        sa.CheckConstraint('amount > 0', name='ck_refunds_amount_positive'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'succeeded', 'failed', 'cancelled')",
            name='ck_refunds_status',
        ),
    )
    op.create_index('ix_refunds_transaction_id', 'refunds', ['transaction_id'])
    op.create_index('ix_refunds_status', 'refunds', ['status'])
    op.create_index('ix_refunds_transaction_status', 'refunds', ['transaction_id', 'status'])
    op.create_index('ix_refunds_provider_refund_id', 'refunds', ['provider', 'provider_refund_id'])

    op.create_table(
        'payment_intents',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False, comment='用户ID'),
        sa.Column('amount', sa.Numeric(precision=12, scale=2), nullable=False, comment='金额'),
        sa.Column('currency', sa.String(length=3), nullable=False, comment='货币代码'),
        sa.Column('status', sa.String(length=50), nullable=False, comment='意图状态'),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付提供商'),
        sa.Column('provider_intent_id', sa.String(length=255), nullable=True, comment='处理方意图ID'),
        sa.Column('service_name', sa.String(length=100), nullable=False, comment='调用方服务名'),
        sa.Column('service_transaction_id', sa.String(length=255), nullable=False, comment='调用方交易ID'),
        sa.Column('client_secret', sa.String(length=500), nullable=True, comment='客户端确认凭证'),
        sa.Column('description', sa.Text(), nullable=True, comment='描述'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='扩展元数据'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True, comment='过期时间'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name='pk_payment_intents'),
        sa.UniqueConstraint('service_name', 'service_transaction_id', name='uq_payment_intents_owner_key'),
        sa.CheckConstraint('amount > 0', name='ck_payment_intents_amount_positive'),
    )
    op.create_index('ix_payment_intents_user_id', 'payment_intents', ['user_id'])
    op.create_index('ix_payment_intents_status', 'payment_intents', ['status'])
    op.create_index('ix_payment_intents_provider_ref', 'payment_intents', ['provider', 'provider_intent_id'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False, comment='支付提供商'),
        sa.Column('provider_event_id', sa.String(length=255), nullable=False, comment='处理方事件ID'),
        sa.Column('event_type', sa.String(length=100), nullable=False, comment='事件类型（已归一化）'),
        sa.Column('processed', sa.Boolean(), nullable=False, comment='是否已处理'),
        sa.Column('payload', sa.JSON(), nullable=False, comment='原始事件内容'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='接收时间'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='处理完成时间'),
        sa.PrimaryKeyConstraint('id', name='pk_webhook_events'),
        sa.UniqueConstraint('provider', 'provider_event_id', name='uq_webhook_events_provider_event'),
    )
    op.create_index('ix_webhook_events_processed', 'webhook_events', ['processed', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_webhook_events_processed', table_name='webhook_events')
    op.drop_table('webhook_events')

    op.drop_index('ix_payment_intents_provider_ref', table_name='payment_intents')
    op.drop_index('ix_payment_intents_status', table_name='payment_intents')
    op.drop_index('ix_payment_intents_user_id', table_name='payment_intents')
    op.drop_table('payment_intents')

    op.drop_index('ix_refunds_provider_refund_id', table_name='refunds')
    op.drop_index('ix_refunds_transaction_status', table_name='refunds')
    op.drop_index('ix_refunds_status', table_name='refunds')
    op.drop_index('ix_refunds_transaction_id', table_name='refunds')
    op.drop_table('refunds')

    op.drop_index('ix_transactions_user_status', table_name='transactions')
    op.drop_index('ix_transactions_provider_ref', table_name='transactions')
    op.drop_index('ix_transactions_created_at', table_name='transactions')
    op.drop_index('ix_transactions_status', table_name='transactions')
    op.drop_index('ix_transactions_user_id', table_name='transactions')
    op.drop_table('transactions')

    op.drop_index('ix_payment_methods_user_default', table_name='payment_methods')
    op.drop_index('ix_payment_methods_user_id', table_name='payment_methods')
    op.drop_table('payment_methods')
