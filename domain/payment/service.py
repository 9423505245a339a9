"""
支付领域服务 - 与持久化无关的业务规则与领域事件构造
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Generic, List, Optional, TypeVar

from core.logging_config import get_logger
from domain.common.exceptions import PaymentError
from shared.codes.payment_codes import PaymentErrorKind

from .entity import PaymentIntent, Refund, Transaction, Transition
from .events import (
    PaymentEvent,
    PaymentIntentStatusChanged,
    RefundStatusChanged,
    TransactionStatusChanged,
)


logger = get_logger(__name__)

E = TypeVar("E")


def resolve_refund_amount(
    transaction: Transaction,
    requested: Optional[Decimal],
    reserved: Decimal,
) -> Decimal:
    """
    计算本次退款金额

    业务规则：
    1. 未指定金额时退全额
    2. 金额必须在 (0, 剩余可退] 区间，剩余可退 = 交易金额 - 在途及成功退款之和
    """
    amount = transaction.amount if requested is None else Decimal(requested)
    remaining = transaction.amount - reserved
    if amount <= 0 or amount > remaining:
        raise PaymentError(
            PaymentErrorKind.REFUND_EXCEEDS_TRANSACTION,
            f"Refund amount {amount} exceeds refundable amount {remaining}",
            details={
                "transaction_id": transaction.id,
                "requested": str(amount),
                "remaining": str(remaining),
            },
            field="amount",
        )
    return amount


def is_fully_refunded(transaction: Transaction, succeeded_total: Decimal) -> bool:
    return succeeded_total >= transaction.amount


def intent_status_changed(intent: PaymentIntent, previous_status: str) -> PaymentIntentStatusChanged:
    return PaymentIntentStatusChanged(
        provider=intent.provider,
        intent_id=intent.id,
        service_name=intent.service_name,
        service_transaction_id=intent.service_transaction_id,
        previous_status=getattr(previous_status, "value", previous_status),
        status=intent.status.value,
    )


def transaction_status_changed(
    transaction: Transaction, previous_status: Optional[str]
) -> TransactionStatusChanged:
    return TransactionStatusChanged(
        provider=transaction.provider,
        transaction_id=transaction.id,
        user_id=transaction.user_id,
        service_name=transaction.service_name,
        service_transaction_id=transaction.service_transaction_id,
        amount=str(transaction.amount),
        currency=transaction.currency,
        previous_status=getattr(previous_status, "value", previous_status),
        status=transaction.status.value,
        failure_reason=transaction.failure_reason,
    )


def refund_status_changed(refund: Refund, previous_status: Optional[str]) -> RefundStatusChanged:
    return RefundStatusChanged(
        provider=refund.provider,
        refund_id=refund.id,
        transaction_id=refund.transaction_id,
        amount=str(refund.amount),
        currency=refund.currency,
        previous_status=getattr(previous_status, "value", previous_status),
        status=refund.status.value,
    )


class EventCollector:
    """领域事件收集，应用服务在提交后统一发布"""

    def __init__(self) -> None:
        self.events: List[PaymentEvent] = []

    def record(self, event: PaymentEvent) -> None:
        self.events.append(event)

    def clear_events(self) -> List[PaymentEvent]:
        """清空并返回领域事件"""
        events = self.events.copy()
        self.events.clear()
        return events


# 乐观并发（CAS）最大重试次数
MAX_CAS_ATTEMPTS = 5


@dataclass
class StatusChange(Generic[E]):
    """一次状态迁移尝试的结果"""
    outcome: Optional[Transition]
    entity: Optional[E]
    previous_status: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.outcome is Transition.APPLIED


async def compare_and_swap(
    load: Callable[[], Awaitable[Optional[E]]],
    mutate: Callable[[E], Transition],
    save: Callable[[E, str], Awaitable[bool]],
    *,
    attempts: int = MAX_CAS_ATTEMPTS,
) -> StatusChange[E]:
    """
    读取 -> 判定 -> 条件写入

    写入只在库中状态仍为读取时的状态时生效；输掉竞争则重新读取并重新判定，
    因此并发的同步响应与 Webhook 不会交错出非法状态。
    """
    for attempt in range(1, attempts + 1):
        entity = await load()
        if entity is None:
            return StatusChange(outcome=None, entity=None)
        previous = entity.status.value
        outcome = mutate(entity)
        if outcome is not Transition.APPLIED:
            return StatusChange(outcome=outcome, entity=entity, previous_status=previous)
        if await save(entity, previous):
            return StatusChange(outcome=outcome, entity=entity, previous_status=previous)
        logger.info("status_cas_conflict", entity_id=getattr(entity, "id", None), attempt=attempt)
    raise PaymentError(
        PaymentErrorKind.INVALID_STATE,
        "Status changed concurrently, please retry",
        details={"attempts": attempts},
    )
