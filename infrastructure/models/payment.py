"""
支付数据库模型 - SQLAlchemy ORM模型
注意：这是基础设施层的实现细节，不是领域模型
"""
from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, ForeignKey, Index, JSON,
    Numeric, String, Text, UniqueConstraint,
)
from datetime import datetime, timezone
import uuid

from .base import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# 金额统一使用定点小数，禁止浮点
Money = Numeric(precision=12, scale=2)


class PaymentMethodModel(Base):
    """用户保存的支付方式"""
    __tablename__ = "payment_methods"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True, comment="用户ID")
    type = Column(String(50), nullable=False, comment="类型: card/bank_account/digital_wallet")
    provider = Column(String(50), nullable=False, comment="支付提供商")
    provider_payment_method_id = Column(String(255), nullable=False, comment="处理方支付方式ID")
    is_default = Column(Boolean, nullable=False, default=False, comment="是否默认")
    # 使用 extra_metadata 避免与 SQLAlchemy 的 metadata 冲突
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")
    updated_at = Column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "provider_payment_method_id", name="uq_payment_methods_user_provider_pm"),
        CheckConstraint("type IN ('card', 'bank_account', 'digital_wallet')", name="type"),
        Index("ix_payment_methods_user_default", "user_id", "is_default"),
    )

    def __repr__(self):
        return f"<PaymentMethodModel(id='{self.id}', user_id='{self.user_id}', type='{self.type}')>"


class TransactionModel(Base):
    """
    交易数据库模型

    这是数据库表的映射，不包含业务逻辑
    所有业务规则都在 domain.payment.entity.Transaction 中
    """
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True, comment="用户ID")
    payment_method_id = Column(
        String(36),
        ForeignKey("payment_methods.id", ondelete="SET NULL"),
        nullable=True,
        comment="支付方式ID",
    )
    amount = Column(Money, nullable=False, comment="金额")
    currency = Column(String(3), nullable=False, default="USD", comment="货币代码 ISO-4217")
    status = Column(
        String(50), nullable=False, default="pending", index=True,
        comment="状态: pending/processing/succeeded/failed/cancelled/refunded",
    )
    type = Column(String(20), nullable=False, default="payment", comment="类型: payment/refund/payout")
    provider = Column(String(50), nullable=False, comment="支付提供商")
    provider_transaction_id = Column(String(255), nullable=True, comment="处理方交易ID")
    service_name = Column(String(100), nullable=False, comment="调用方服务名")
    service_transaction_id = Column(String(255), nullable=False, comment="调用方交易ID")
    description = Column(Text, nullable=True, comment="描述")
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")
    failure_reason = Column(Text, nullable=True, comment="失败原因")
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="完成时间")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True, comment="创建时间")
    updated_at = Column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间"
    )

    __table_args__ = (
        UniqueConstraint("service_name", "service_transaction_id", name="uq_transactions_owner_key"),
        CheckConstraint("amount > 0", name="amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'succeeded', 'failed', 'cancelled', 'refunded')",
            name="status",
        ),
        CheckConstraint("type IN ('payment', 'refund', 'payout')", name="type"),
        Index("ix_transactions_provider_ref", "provider", "provider_transaction_id"),
        Index("ix_transactions_user_status", "user_id", "status"),
    )

    def __repr__(self):
        return (
            f"<TransactionModel(id='{self.id}', service='{self.service_name}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class RefundModel(Base):
    """退款数据库模型，每条退款对应一笔成功的支付交易"""
    __tablename__ = "refunds"

    id = Column(String(36), primary_key=True, default=_uuid)
    transaction_id = Column(
        String(36),
        ForeignKey("transactions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
        comment="关联交易ID",
    )
    amount = Column(Money, nullable=False, comment="退款金额")
    currency = Column(String(3), nullable=False, default="USD", comment="货币代码")
    status = Column(
        String(50), nullable=False, default="pending", index=True,
        comment="退款状态: pending/processing/succeeded/failed/cancelled",
    )
    provider = Column(String(50), nullable=False, comment="支付提供商")
    provider_refund_id = Column(String(255), nullable=True, comment="处理方退款ID")
    reason = Column(String(255), nullable=True, comment="退款原因")
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="完成时间")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")
    updated_at = Column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间"
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="amount_positive"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'succeeded', 'failed', 'cancelled')",
            name="status",
        ),
        Index("ix_refunds_transaction_status", "transaction_id", "status"),
        Index("ix_refunds_provider_refund_id", "provider", "provider_refund_id"),
    )

    def __repr__(self):
        return (
            f"<RefundModel(id='{self.id}', transaction_id='{self.transaction_id}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class PaymentIntentModel(Base):
    """支付意图数据库模型"""
    __tablename__ = "payment_intents"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True, comment="用户ID")
    amount = Column(Money, nullable=False, comment="金额")
    currency = Column(String(3), nullable=False, default="USD", comment="货币代码")
    status = Column(
        String(50), nullable=False, default="created", index=True,
        comment="状态: created/requires_payment_method/requires_confirmation/requires_action/processing/succeeded/cancelled",
    )
    provider = Column(String(50), nullable=False, comment="支付提供商")
    provider_intent_id = Column(String(255), nullable=True, comment="处理方意图ID")
    service_name = Column(String(100), nullable=False, comment="调用方服务名")
    service_transaction_id = Column(String(255), nullable=False, comment="调用方交易ID")
    client_secret = Column(String(500), nullable=True, comment="客户端确认凭证")
    description = Column(Text, nullable=True, comment="描述")
    extra_metadata = Column("metadata", JSON, nullable=True, comment="扩展元数据")
    expires_at = Column(DateTime(timezone=True), nullable=True, comment="过期时间")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="创建时间")
    updated_at = Column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False, comment="更新时间"
    )

    __table_args__ = (
        UniqueConstraint("service_name", "service_transaction_id", name="uq_payment_intents_owner_key"),
        CheckConstraint("amount > 0", name="amount_positive"),
        Index("ix_payment_intents_provider_ref", "provider", "provider_intent_id"),
    )

    def __repr__(self):
        return (
            f"<PaymentIntentModel(id='{self.id}', service='{self.service_name}', "
            f"amount={self.amount}, status='{self.status}')>"
        )


class WebhookEventModel(Base):
    """入站 Webhook 事件（幂等账本）"""
    __tablename__ = "webhook_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    provider = Column(String(50), nullable=False, comment="支付提供商")
    provider_event_id = Column(String(255), nullable=False, comment="处理方事件ID")
    event_type = Column(String(100), nullable=False, comment="事件类型（已归一化）")
    processed = Column(Boolean, nullable=False, default=False, comment="是否已处理")
    payload = Column(JSON, nullable=False, comment="原始事件内容")
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, comment="接收时间")
    processed_at = Column(DateTime(timezone=True), nullable=True, comment="处理完成时间")

    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_webhook_events_provider_event"),
        Index("ix_webhook_events_processed", "processed", "created_at"),
    )

    def __repr__(self):
        return (
            f"<WebhookEventModel(id='{self.id}', provider='{self.provider}', "
            f"type='{self.event_type}', processed={self.processed})>"
        )
