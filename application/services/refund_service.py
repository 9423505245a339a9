"""
Refund use-cases.

Refunds reserve their amount in the ledger before the processor is called: the
pending row is inserted while the parent transaction is locked, so concurrent
requests can never reserve more than the transaction amount. The processor call
itself runs with no ledger transaction open.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from application.dtos.payments import ExternalRefund, ProcessorEvent
from application.ports.event_publisher import DomainEventPublisher
from application.ports.payment_gateway import ProcessorGateway
from application.services.common import UowFactory, publish_collected
from application.services.transaction_service import TransactionRecorder
from core.logging_config import get_logger
from domain.common.exceptions import PaymentError
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    REFUND_RESERVING_STATUSES,
    Refund,
    RefundStatus,
    Transition,
    new_id,
    utcnow,
)
from domain.payment.service import (
    EventCollector,
    StatusChange,
    compare_and_swap,
    is_fully_refunded,
    refund_status_changed,
    resolve_refund_amount,
)
from shared.codes.payment_codes import PaymentErrorKind


logger = get_logger(__name__)

# Local refund id echoed back by the processor in refund metadata
META_REFUND_ID = "refundId"


class RefundProcessor:
    def __init__(
        self,
        uow_factory: UowFactory,
        gateway: ProcessorGateway,
        transactions: TransactionRecorder,
        publisher: Optional[DomainEventPublisher] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self._transactions = transactions
        self._publisher = publisher

    async def create_refund(
        self,
        user_id: str,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Refund:
        collector = EventCollector()

        # 1. reserve
        async with self._uow_factory() as uow:
            transaction = await uow.transactions.get_by_id(transaction_id, for_update=True)
            if transaction is None or not transaction.is_owned_by(user_id):
                raise PaymentError(
                    PaymentErrorKind.TRANSACTION_NOT_FOUND,
                    "Transaction not found",
                    details={"transaction_id": transaction_id},
                )
            if not transaction.is_refundable() or not transaction.provider_transaction_id:
                raise PaymentError(
                    PaymentErrorKind.INVALID_STATE,
                    "Only succeeded payments can be refunded",
                    details={"transaction_id": transaction.id, "status": transaction.status.value},
                )
            reserved = await uow.refunds.sum_amount(transaction.id, REFUND_RESERVING_STATUSES)
            value = resolve_refund_amount(transaction, amount, reserved)
            now = utcnow()
            refund = await uow.refunds.create(
                Refund(
                    id=new_id(),
                    transaction_id=transaction.id,
                    amount=value,
                    currency=transaction.currency,
                    status=RefundStatus.PENDING,
                    provider=transaction.provider,
                    reason=reason,
                    metadata=dict(metadata or {}),
                    created_at=now,
                    updated_at=now,
                )
            )
            collector.record(refund_status_changed(refund, None))
        await publish_collected(self._publisher, collector)

        # 2. processor
        logger.info(
            "refund_create_request",
            refund_id=refund.id,
            transaction_id=transaction.id,
            provider_transaction_id=transaction.provider_transaction_id,
            amount=str(value),
            currency=transaction.currency,
        )
        try:
            external = await self.gateway.create_refund(
                transaction.provider_transaction_id,
                value,
                transaction.currency,
                reason,
                metadata={META_REFUND_ID: refund.id},
                idempotency_key=refund.id,
            )
        except PaymentError as exc:
            if exc.kind is PaymentErrorKind.PROCESSOR_UNAVAILABLE:
                # Outcome unknown: the reservation stays until a webhook settles it
                logger.warning("refund_outcome_unknown", refund_id=refund.id, error=exc.message)
                raise
            async with self._uow_factory() as uow:
                await self._transition(
                    uow,
                    refund.id,
                    RefundStatus.FAILED,
                    collector,
                    failure_reason=exc.message,
                )
            await publish_collected(self._publisher, collector)
            raise

        # 3. mirror
        async with self._uow_factory() as uow:
            refund = await self._mirror(uow, refund.id, external, collector)
        await publish_collected(self._publisher, collector)
        return refund

    async def _mirror(
        self,
        uow: AbstractUnitOfWork,
        refund_id: str,
        external: ExternalRefund,
        collector: EventCollector,
    ) -> Refund:
        change = await self._transition(
            uow,
            refund_id,
            external.status,
            collector,
            provider_refund_id=external.id,
            failure_reason=external.failure_reason,
        )
        return change.entity

    async def apply_webhook_outcome(
        self,
        provider: str,
        provider_refund_id: str,
        new_status: RefundStatus,
        failure_reason: Optional[str] = None,
        processed_at: Optional[datetime] = None,
    ) -> Refund:
        collector = EventCollector()
        async with self._uow_factory() as uow:
            refund = await uow.refunds.get_by_provider_refund_id(provider, provider_refund_id)
            if refund is None:
                raise PaymentError(
                    PaymentErrorKind.REFUND_NOT_FOUND,
                    "Refund not found",
                    details={"provider": provider, "provider_refund_id": provider_refund_id},
                )
            change = await self._transition(
                uow,
                refund.id,
                new_status,
                collector,
                failure_reason=failure_reason,
                processed_at=processed_at,
            )
        await publish_collected(self._publisher, collector)
        return change.entity

    async def apply_processor_event(
        self,
        uow: AbstractUnitOfWork,
        event: ProcessorEvent,
        new_status: RefundStatus,
        collector: EventCollector,
    ) -> Refund:
        """Apply a refund webhook; the refund is found by our own id first, then by processor id."""
        refund: Optional[Refund] = None
        local_id = event.metadata.get(META_REFUND_ID)
        if local_id:
            refund = await uow.refunds.get_by_id(str(local_id))
        if refund is None and event.object_id:
            refund = await uow.refunds.get_by_provider_refund_id(event.provider, event.object_id)
        if refund is None:
            raise PaymentError(
                PaymentErrorKind.REFUND_NOT_FOUND,
                "Refund not found",
                details={"provider": event.provider, "provider_refund_id": event.object_id},
            )
        change = await self._transition(
            uow,
            refund.id,
            new_status,
            collector,
            provider_refund_id=event.object_id,
            failure_reason=event.failure_reason,
            processed_at=event.occurred_at,
        )
        return change.entity

    async def _transition(
        self,
        uow: AbstractUnitOfWork,
        refund_id: str,
        new_status: Optional[RefundStatus],
        collector: EventCollector,
        *,
        provider_refund_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        processed_at: Optional[datetime] = None,
    ) -> StatusChange[Refund]:
        """CAS the refund forward and attach the processor id the first time it is seen.

        A refund reaching succeeded may complete the refund of its transaction.
        """

        def mutate(refund: Refund) -> Transition:
            attached = False
            if provider_refund_id and not refund.provider_refund_id:
                refund.provider_refund_id = provider_refund_id
                refund.updated_at = utcnow()
                attached = True
            outcome = Transition.UNCHANGED
            if new_status is not None:
                outcome = refund.transition_to(
                    new_status, failure_reason=failure_reason, processed_at=processed_at
                )
            return Transition.APPLIED if attached else outcome

        change = await compare_and_swap(
            lambda: uow.refunds.get_by_id(refund_id),
            mutate,
            uow.refunds.compare_and_set_status,
        )
        refund = change.entity
        if refund is None:
            raise PaymentError(
                PaymentErrorKind.REFUND_NOT_FOUND,
                "Refund not found",
                details={"refund_id": refund_id},
            )
        status_moved = change.applied and refund.status.value != change.previous_status
        if status_moved:
            collector.record(refund_status_changed(refund, change.previous_status))
            logger.info(
                "refund_status_changed",
                refund_id=refund.id,
                previous_status=change.previous_status,
                status=refund.status.value,
            )
            if refund.status == RefundStatus.SUCCEEDED:
                await self._settle_transaction(uow, refund.transaction_id, collector)
        elif change.outcome is Transition.REJECTED:
            logger.info(
                "refund_transition_ignored",
                refund_id=refund.id,
                status=change.previous_status,
                requested=RefundStatus(new_status).value if new_status else None,
            )
        return change

    async def _settle_transaction(
        self, uow: AbstractUnitOfWork, transaction_id: str, collector: EventCollector
    ) -> None:
        transaction = await uow.transactions.get_by_id(transaction_id, for_update=True)
        if transaction is None or not transaction.is_refundable():
            return
        succeeded_total = await uow.refunds.sum_amount(transaction_id, (RefundStatus.SUCCEEDED,))
        if is_fully_refunded(transaction, succeeded_total):
            await self._transactions.mark_refunded(uow, transaction_id, collector)

    async def list_refunds(self, user_id: str, transaction_id: str) -> List[Refund]:
        async with self._uow_factory(readonly=True) as uow:
            transaction = await uow.transactions.get_by_id(transaction_id)
            if transaction is None or not transaction.is_owned_by(user_id):
                raise PaymentError(
                    PaymentErrorKind.TRANSACTION_NOT_FOUND,
                    "Transaction not found",
                    details={"transaction_id": transaction_id},
                )
            return await uow.refunds.list_by_transaction(transaction_id)
