"""
支付领域实体 - 意图 / 交易 / 退款 / 支付方式 / Webhook 事件

状态只允许单调前进，由 StatusLifecycle 统一判定；实体本身不做持久化。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional
import uuid

from domain.common.exceptions import DomainValidationException
from shared.money import fits_minor_unit, quantize_amount

# 单笔金额上限（两位小数）
MAX_AMOUNT = Decimal("999999.99")

# 元数据中由服务端写入、业务逻辑依赖的键
META_USER_ID = "userId"
META_SERVICE_NAME = "serviceName"
META_SERVICE_TRANSACTION_ID = "serviceTransactionId"
META_FAILURE_REASON = "failure_reason"


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """确保时间为 UTC 时区"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _validate_amount(amount: Any, field_name: str = "amount") -> Decimal:
    """业务规则：金额 > 0 且不超过上限，统一两位小数"""
    try:
        value = quantize_amount(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise DomainValidationException(f"无效的金额: {amount!r}", field=field_name)
    if value <= 0:
        raise DomainValidationException(f"金额必须大于0: {value}", field=field_name)
    if value > MAX_AMOUNT:
        raise DomainValidationException(f"金额超过上限 {MAX_AMOUNT}: {value}", field=field_name)
    return value


def _validate_currency(currency: Optional[str]) -> str:
    """业务规则：货币代码必须是3位字母（ISO 4217）"""
    if not currency or len(currency) != 3 or not currency.isalpha():
        raise DomainValidationException(f"无效的货币代码: {currency}", field="currency")
    return currency.upper()


def _validate_minor_unit(amount: Decimal, currency: str, field_name: str = "amount") -> None:
    """业务规则：无辅币单位的货币（如 JPY）金额不能带小数"""
    if not fits_minor_unit(amount, currency):
        raise DomainValidationException(f"{currency} 金额不能包含小数: {amount}", field=field_name)


class Transition(str, Enum):
    """状态迁移判定结果"""
    APPLIED = "applied"        # 合法前进
    UNCHANGED = "unchanged"    # 重复应用同一状态
    REJECTED = "rejected"      # 回退或离开终态


class StatusLifecycle:
    """
    单调状态机

    progression: 非终态的前进顺序
    terminal: 终态集合（到达后不再变化，special_edges 除外）
    special_edges: 仅在显式允许时可走的边，例如 succeeded → refunded
    """

    def __init__(
        self,
        progression: tuple,
        terminal: frozenset,
        special_edges: frozenset = frozenset(),
    ) -> None:
        self._rank = {status: idx for idx, status in enumerate(progression)}
        self.terminal = terminal
        self.special_edges = special_edges
        self._special_targets = {target for _, target in special_edges}

    def is_terminal(self, status) -> bool:
        return status in self.terminal

    def evaluate(self, current, new, *, allow_special: bool = False) -> Transition:
        if current == new:
            return Transition.UNCHANGED
        if (current, new) in self.special_edges:
            return Transition.APPLIED if allow_special else Transition.REJECTED
        if current in self.terminal or new in self._special_targets:
            return Transition.REJECTED
        if new in self.terminal:
            return Transition.APPLIED
        if self._rank.get(new, -1) > self._rank.get(current, -1):
            return Transition.APPLIED
        return Transition.REJECTED


class IntentStatus(str, Enum):
    """支付意图状态"""
    CREATED = "created"
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"


class TransactionStatus(str, Enum):
    """交易状态"""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class TransactionType(str, Enum):
    PAYMENT = "payment"
    REFUND = "refund"
    PAYOUT = "payout"


class RefundStatus(str, Enum):
    """退款状态"""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentMethodType(str, Enum):
    CARD = "card"
    BANK_ACCOUNT = "bank_account"
    DIGITAL_WALLET = "digital_wallet"


INTENT_LIFECYCLE = StatusLifecycle(
    progression=(
        IntentStatus.CREATED,
        IntentStatus.REQUIRES_PAYMENT_METHOD,
        IntentStatus.REQUIRES_CONFIRMATION,
        IntentStatus.REQUIRES_ACTION,
        IntentStatus.PROCESSING,
    ),
    terminal=frozenset({IntentStatus.SUCCEEDED, IntentStatus.CANCELLED}),
)

TRANSACTION_LIFECYCLE = StatusLifecycle(
    progression=(TransactionStatus.PENDING, TransactionStatus.PROCESSING),
    terminal=frozenset(
        {
            TransactionStatus.SUCCEEDED,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELLED,
            TransactionStatus.REFUNDED,
        }
    ),
    special_edges=frozenset({(TransactionStatus.SUCCEEDED, TransactionStatus.REFUNDED)}),
)

REFUND_LIFECYCLE = StatusLifecycle(
    progression=(RefundStatus.PENDING, RefundStatus.PROCESSING),
    terminal=frozenset({RefundStatus.SUCCEEDED, RefundStatus.FAILED, RefundStatus.CANCELLED}),
)

# 计入已占用额度的退款状态（在途 + 成功）
REFUND_RESERVING_STATUSES = (RefundStatus.PENDING, RefundStatus.PROCESSING, RefundStatus.SUCCEEDED)


def owner_metadata(user_id: str, service_name: str, service_transaction_id: str) -> dict:
    """写入处理方的归属元数据"""
    return {
        META_USER_ID: user_id,
        META_SERVICE_NAME: service_name,
        META_SERVICE_TRANSACTION_ID: service_transaction_id,
    }


def read_owner_metadata(metadata: Optional[dict]) -> Optional[tuple[str, str, str]]:
    """从处理方回传的元数据中读取归属三元组；缺失或类型不符时返回 None"""
    if not isinstance(metadata, dict):
        return None
    values = (
        metadata.get(META_USER_ID),
        metadata.get(META_SERVICE_NAME),
        metadata.get(META_SERVICE_TRANSACTION_ID),
    )
    if all(isinstance(v, str) and v for v in values):
        return values  # type: ignore[return-value]
    return None


@dataclass
class PaymentIntent:
    """
    支付意图 - 尚未保证的扣款承诺

    业务规则：
    1. (service_name, service_transaction_id) 唯一
    2. 金额必须大于0
    3. 状态只能单调前进，cancelled 可从任意非终态进入
    """

    id: str
    user_id: str
    amount: Decimal
    currency: str
    status: IntentStatus
    provider: str
    service_name: str
    service_transaction_id: str
    provider_intent_id: Optional[str] = None
    client_secret: Optional[str] = None
    description: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = _validate_amount(self.amount)
        self.currency = _validate_currency(self.currency)
        _validate_minor_unit(self.amount, self.currency)
        self.status = IntentStatus(self.status)
        self.expires_at = _ensure_utc(self.expires_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        if self.metadata is None:
            self.metadata = {}

    @property
    def owner_key(self) -> tuple[str, str]:
        return (self.service_name, self.service_transaction_id)

    def is_owned_by(self, user_id: str) -> bool:
        return self.user_id == user_id

    def is_terminal(self) -> bool:
        return INTENT_LIFECYCLE.is_terminal(self.status)

    def transition_to(self, new_status: IntentStatus) -> Transition:
        """判定并（若合法）应用状态迁移"""
        new_status = IntentStatus(new_status)
        outcome = INTENT_LIFECYCLE.evaluate(self.status, new_status)
        if outcome is Transition.APPLIED:
            self.status = new_status
            self.updated_at = utcnow()
        return outcome


@dataclass
class Transaction:
    """
    交易 - 资金流动（或尝试）的记录

    创建后永不删除，仅 status 及随状态变化的 failure_reason / processed_at 可变。
    """

    id: str
    user_id: str
    amount: Decimal
    currency: str
    status: TransactionStatus
    type: TransactionType
    provider: str
    service_name: str
    service_transaction_id: str
    payment_method_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    description: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = _validate_amount(self.amount)
        self.currency = _validate_currency(self.currency)
        _validate_minor_unit(self.amount, self.currency)
        self.status = TransactionStatus(self.status)
        self.type = TransactionType(self.type)
        self.processed_at = _ensure_utc(self.processed_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        if self.metadata is None:
            self.metadata = {}

    @property
    def owner_key(self) -> tuple[str, str]:
        return (self.service_name, self.service_transaction_id)

    def is_owned_by(self, user_id: str) -> bool:
        return self.user_id == user_id

    def is_refundable(self) -> bool:
        return self.status == TransactionStatus.SUCCEEDED and self.type == TransactionType.PAYMENT

    def transition_to(
        self,
        new_status: TransactionStatus,
        *,
        failure_reason: Optional[str] = None,
        processed_at: Optional[datetime] = None,
        allow_refunded: bool = False,
    ) -> Transition:
        """
        判定并应用状态迁移

        业务规则：
        1. succeeded 设置 processed_at（缺省为当前时间）
        2. failed 必须带 failure_reason
        3. refunded 只能由退款流程触发
        """
        new_status = TransactionStatus(new_status)
        if new_status == TransactionStatus.FAILED and not failure_reason and self.status != new_status:
            raise DomainValidationException("失败状态必须提供 failure_reason", field="failure_reason")
        outcome = TRANSACTION_LIFECYCLE.evaluate(self.status, new_status, allow_special=allow_refunded)
        if outcome is not Transition.APPLIED:
            return outcome
        now = utcnow()
        self.status = new_status
        if new_status == TransactionStatus.SUCCEEDED:
            self.processed_at = _ensure_utc(processed_at) or now
        elif new_status in (TransactionStatus.FAILED, TransactionStatus.CANCELLED):
            self.failure_reason = failure_reason or self.failure_reason
            self.processed_at = _ensure_utc(processed_at) or now
        self.updated_at = now
        return outcome


@dataclass
class Refund:
    """
    退款 - 对一笔成功支付交易的部分或全额冲正

    业务规则：同一交易成功退款金额之和不超过交易金额
    """

    id: str
    transaction_id: str
    amount: Decimal
    currency: str
    status: RefundStatus
    provider: str
    provider_refund_id: Optional[str] = None
    reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = _validate_amount(self.amount)
        self.currency = _validate_currency(self.currency)
        _validate_minor_unit(self.amount, self.currency)
        self.status = RefundStatus(self.status)
        self.processed_at = _ensure_utc(self.processed_at)
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        if self.metadata is None:
            self.metadata = {}

    @property
    def failure_reason(self) -> Optional[str]:
        value = self.metadata.get(META_FAILURE_REASON)
        return value if isinstance(value, str) else None

    def transition_to(
        self,
        new_status: RefundStatus,
        *,
        failure_reason: Optional[str] = None,
        processed_at: Optional[datetime] = None,
    ) -> Transition:
        new_status = RefundStatus(new_status)
        outcome = REFUND_LIFECYCLE.evaluate(self.status, new_status)
        if outcome is not Transition.APPLIED:
            return outcome
        now = utcnow()
        self.status = new_status
        if REFUND_LIFECYCLE.is_terminal(new_status):
            self.processed_at = _ensure_utc(processed_at) or now
        if failure_reason and new_status in (RefundStatus.FAILED, RefundStatus.CANCELLED):
            self.metadata = {**self.metadata, META_FAILURE_REASON: failure_reason}
        self.updated_at = now
        return outcome


@dataclass
class PaymentMethod:
    """用户保存的处理方支付方式引用"""

    id: str
    user_id: str
    type: PaymentMethodType
    provider: str
    provider_payment_method_id: str
    is_default: bool = False
    metadata: dict = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.type = PaymentMethodType(self.type)
        if not self.provider_payment_method_id:
            raise DomainValidationException(
                "provider_payment_method_id 不能为空", field="provider_payment_method_id"
            )
        self.created_at = _ensure_utc(self.created_at)
        self.updated_at = _ensure_utc(self.updated_at)
        if self.metadata is None:
            self.metadata = {}


@dataclass
class WebhookEvent:
    """入站 Webhook 幂等账本记录，(provider, provider_event_id) 唯一"""

    id: str
    provider: str
    provider_event_id: str
    event_type: str
    payload: dict = field(default_factory=dict)
    processed: bool = False
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    def __post_init__(self):
        self.created_at = _ensure_utc(self.created_at)
        self.processed_at = _ensure_utc(self.processed_at)
        if self.payload is None:
            self.payload = {}

    def mark_processed(self) -> None:
        self.processed = True
        self.processed_at = utcnow()
