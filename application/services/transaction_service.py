"""
Transaction use-cases: confirmation, webhook outcomes and ledger reads.

A transaction is created at most once per (service, transaction) pair; the
unique key is the arbiter between a synchronous confirmation and a webhook that
races it.
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Tuple

from application.dtos.payments import ExternalIntent, ProcessorEvent
from application.ports.event_publisher import DomainEventPublisher
from application.ports.payment_gateway import ProcessorGateway
from application.services.common import UowFactory, publish_collected
from application.services.payment_intent_service import PaymentIntentManager
from core.logging_config import get_logger
from domain.common.exceptions import PaymentError
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    IntentStatus,
    PaymentIntent,
    Transaction,
    TransactionStatus,
    TransactionType,
    Transition,
    new_id,
    read_owner_metadata,
    utcnow,
)
from domain.payment.repository import TransactionFilter, TransactionStatistics
from domain.payment.service import (
    EventCollector,
    StatusChange,
    compare_and_swap,
    transaction_status_changed,
)
from shared.codes.payment_codes import PaymentErrorKind


logger = get_logger(__name__)

DEFAULT_FAILURE_REASON = "Payment failed"


def _transaction_not_found(**details) -> PaymentError:
    return PaymentError(PaymentErrorKind.TRANSACTION_NOT_FOUND, "Transaction not found", details=details)


class TransactionRecorder:
    def __init__(
        self,
        uow_factory: UowFactory,
        gateway: ProcessorGateway,
        intents: PaymentIntentManager,
        publisher: Optional[DomainEventPublisher] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self._intents = intents
        self._publisher = publisher

    # ------------------------------------------------------------------
    # Confirmation
    # ------------------------------------------------------------------

    async def confirm(
        self,
        user_id: str,
        intent_id: str,
        payment_method_id: Optional[str] = None,
    ) -> Transaction:
        """Confirm the intent at the processor and record the transaction.

        Idempotent per owner key: once a transaction exists it is returned
        as is and the processor is not contacted again. Declines propagate as
        PAYMENT_DECLINED / INSUFFICIENT_FUNDS and leave the ledger untouched.
        """
        processor_method_ref: Optional[str] = None
        async with self._uow_factory(readonly=True) as uow:
            intent = await uow.intents.get_by_id(intent_id)
            if intent is None or not intent.is_owned_by(user_id):
                raise PaymentError(
                    PaymentErrorKind.PAYMENT_INTENT_NOT_FOUND,
                    "Payment intent not found",
                    details={"intent_id": intent_id},
                )
            existing = await uow.transactions.get_by_owner_key(*intent.owner_key)
            if existing is None and payment_method_id:
                method = await uow.payment_methods.get_for_user(user_id, payment_method_id)
                if method is None:
                    raise PaymentError(
                        PaymentErrorKind.PAYMENT_METHOD_NOT_FOUND,
                        "Payment method not found",
                        details={"payment_method_id": payment_method_id},
                        field="paymentMethodId",
                    )
                processor_method_ref = method.provider_payment_method_id

        if existing is not None:
            logger.info(
                "payment_confirmation_replayed",
                intent_id=intent.id,
                transaction_id=existing.id,
                status=existing.status.value,
            )
            return existing

        if intent.status == IntentStatus.CANCELLED or not intent.provider_intent_id:
            raise PaymentError(
                PaymentErrorKind.INVALID_STATE,
                "Payment intent cannot be confirmed",
                details={"intent_id": intent.id, "status": intent.status.value},
            )

        logger.info(
            "payment_confirm_request",
            intent_id=intent.id,
            provider_intent_id=intent.provider_intent_id,
            payment_method_id=payment_method_id,
        )
        # Unkeyed: a retry after a decline must reach the processor again
        external = await self.gateway.confirm_intent(intent.provider_intent_id, processor_method_ref)

        collector = EventCollector()
        async with self._uow_factory() as uow:
            if external.status is not None:
                await self._intents.advance(uow, external.status, collector, intent_id=intent.id)
            transaction = await self.record_confirmation(
                uow, intent, external, collector, payment_method_id=payment_method_id
            )
        await publish_collected(self._publisher, collector)
        return transaction

    async def record_confirmation(
        self,
        uow: AbstractUnitOfWork,
        intent: PaymentIntent,
        external: ExternalIntent,
        collector: EventCollector,
        *,
        payment_method_id: Optional[str] = None,
    ) -> Transaction:
        """Insert the transaction for a confirmed intent, or return the one already recorded."""
        status = external.transaction_status or TransactionStatus.PENDING
        transaction = await self._materialize(
            uow,
            collector,
            user_id=intent.user_id,
            service_name=intent.service_name,
            service_transaction_id=intent.service_transaction_id,
            amount=intent.amount,
            currency=intent.currency,
            provider=intent.provider,
            provider_transaction_id=external.id,
            status=status,
            failure_reason=external.failure_reason,
            payment_method_id=payment_method_id,
            description=intent.description,
            metadata=dict(intent.metadata),
        )
        return await self._reconcile(uow, transaction, status, collector, failure_reason=external.failure_reason)

    async def _reconcile(
        self,
        uow: AbstractUnitOfWork,
        transaction: Transaction,
        status: TransactionStatus,
        collector: EventCollector,
        *,
        failure_reason: Optional[str] = None,
        processed_at: Optional[datetime] = None,
    ) -> Transaction:
        """Lost the insert race: fold the observed status into the recorded transaction."""
        if transaction.status == status or not transaction.provider_transaction_id:
            return transaction
        change = await self.apply_outcome(
            uow,
            transaction.provider,
            transaction.provider_transaction_id,
            status,
            collector,
            failure_reason=failure_reason,
            processed_at=processed_at,
        )
        return change.entity or transaction

    async def _materialize(
        self,
        uow: AbstractUnitOfWork,
        collector: EventCollector,
        *,
        status: TransactionStatus,
        failure_reason: Optional[str] = None,
        processed_at: Optional[datetime] = None,
        **fields,
    ) -> Transaction:
        now = utcnow()
        status = TransactionStatus(status)
        if status == TransactionStatus.FAILED:
            failure_reason = failure_reason or DEFAULT_FAILURE_REASON
        elif status != TransactionStatus.CANCELLED:
            failure_reason = None
        if status in (TransactionStatus.SUCCEEDED, TransactionStatus.FAILED, TransactionStatus.CANCELLED):
            processed_at = processed_at or now
        transaction = Transaction(
            id=new_id(),
            status=status,
            type=TransactionType.PAYMENT,
            failure_reason=failure_reason,
            processed_at=processed_at,
            created_at=now,
            updated_at=now,
            **fields,
        )
        created = await uow.transactions.create(transaction)
        if created is None:
            existing = await uow.transactions.get_by_owner_key(*transaction.owner_key)
            if existing is None:
                raise PaymentError(
                    PaymentErrorKind.INVALID_STATE,
                    "Transaction insert conflicted but no transaction is recorded",
                    details={"service_name": transaction.service_name},
                )
            return existing
        collector.record(transaction_status_changed(created, None))
        return created

    # ------------------------------------------------------------------
    # Processor outcomes
    # ------------------------------------------------------------------

    async def apply_webhook_outcome(
        self,
        provider: str,
        provider_transaction_id: str,
        new_status: TransactionStatus,
        failure_reason: Optional[str] = None,
        processed_at: Optional[datetime] = None,
    ) -> Transaction:
        """Apply a processor-reported status to a recorded transaction.

        Stale updates are ignored; the current transaction is returned either way.
        """
        collector = EventCollector()
        async with self._uow_factory() as uow:
            change = await self.apply_outcome(
                uow,
                provider,
                provider_transaction_id,
                new_status,
                collector,
                failure_reason=failure_reason,
                processed_at=processed_at,
            )
            if change.entity is None:
                raise _transaction_not_found(
                    provider=provider, provider_transaction_id=provider_transaction_id
                )
        await publish_collected(self._publisher, collector)
        return change.entity

    async def apply_outcome(
        self,
        uow: AbstractUnitOfWork,
        provider: str,
        provider_transaction_id: str,
        new_status: TransactionStatus,
        collector: EventCollector,
        *,
        failure_reason: Optional[str] = None,
        processed_at: Optional[datetime] = None,
    ) -> StatusChange[Transaction]:
        new_status = TransactionStatus(new_status)
        if new_status == TransactionStatus.REFUNDED:
            # refunded is reached only through the refund flow
            raise PaymentError(
                PaymentErrorKind.INVALID_STATE,
                "refunded status is derived from refunds",
                details={"provider_transaction_id": provider_transaction_id},
            )
        if new_status == TransactionStatus.FAILED:
            failure_reason = failure_reason or DEFAULT_FAILURE_REASON

        change = await compare_and_swap(
            lambda: uow.transactions.get_by_provider_transaction_id(provider, provider_transaction_id),
            lambda txn: txn.transition_to(new_status, failure_reason=failure_reason, processed_at=processed_at),
            uow.transactions.compare_and_set_status,
        )
        self._record_change(change, collector, new_status.value)
        return change

    async def apply_processor_event(
        self,
        uow: AbstractUnitOfWork,
        event: ProcessorEvent,
        new_status: TransactionStatus,
        collector: EventCollector,
        intent: Optional[PaymentIntent] = None,
    ) -> Optional[Transaction]:
        """Apply an intent-level processor event to its transaction.

        When the webhook beats the synchronous confirmation the transaction is
        materialized from the local intent, or from the owner metadata the
        intent was created with.
        """
        provider_ref = event.object_id
        if not provider_ref:
            logger.warning("webhook_event_missing_object", event_id=event.id, event_type=event.type)
            return None
        processed_at = event.occurred_at if new_status == TransactionStatus.SUCCEEDED else None

        existing = await uow.transactions.get_by_provider_transaction_id(event.provider, provider_ref)
        if existing is not None:
            change = await self.apply_outcome(
                uow,
                event.provider,
                provider_ref,
                new_status,
                collector,
                failure_reason=event.failure_reason,
                processed_at=processed_at,
            )
            return change.entity

        if intent is not None:
            fields = dict(
                user_id=intent.user_id,
                service_name=intent.service_name,
                service_transaction_id=intent.service_transaction_id,
                amount=intent.amount,
                currency=intent.currency,
                description=intent.description,
                metadata=dict(intent.metadata),
            )
        else:
            owner = read_owner_metadata(event.metadata)
            if owner is None or event.amount is None or not event.currency:
                raise _transaction_not_found(provider=event.provider, provider_transaction_id=provider_ref)
            user_id, service_name, service_transaction_id = owner
            fields = dict(
                user_id=user_id,
                service_name=service_name,
                service_transaction_id=service_transaction_id,
                amount=event.amount,
                currency=event.currency,
                metadata=dict(event.metadata),
            )

        logger.info(
            "transaction_materialized_from_webhook",
            event_id=event.id,
            provider_transaction_id=provider_ref,
            status=TransactionStatus(new_status).value,
        )
        transaction = await self._materialize(
            uow,
            collector,
            provider=event.provider,
            provider_transaction_id=provider_ref,
            status=new_status,
            failure_reason=event.failure_reason,
            processed_at=processed_at,
            **fields,
        )
        return await self._reconcile(
            uow,
            transaction,
            TransactionStatus(new_status),
            collector,
            failure_reason=event.failure_reason,
            processed_at=processed_at,
        )

    async def mark_refunded(
        self,
        uow: AbstractUnitOfWork,
        transaction_id: str,
        collector: EventCollector,
    ) -> StatusChange[Transaction]:
        """succeeded -> refunded once refunds cover the whole amount."""
        change = await compare_and_swap(
            lambda: uow.transactions.get_by_id(transaction_id),
            lambda txn: txn.transition_to(TransactionStatus.REFUNDED, allow_refunded=True),
            uow.transactions.compare_and_set_status,
        )
        self._record_change(change, collector, TransactionStatus.REFUNDED.value)
        return change

    @staticmethod
    def _record_change(change: StatusChange[Transaction], collector: EventCollector, requested: str) -> None:
        if change.entity is None:
            return
        if change.applied:
            collector.record(transaction_status_changed(change.entity, change.previous_status))
            logger.info(
                "transaction_status_changed",
                transaction_id=change.entity.id,
                previous_status=change.previous_status,
                status=change.entity.status.value,
            )
        elif change.outcome is Transition.REJECTED:
            logger.info(
                "transaction_transition_ignored",
                transaction_id=change.entity.id,
                status=change.previous_status,
                requested=requested,
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_transaction(self, user_id: str, transaction_id: str) -> Transaction:
        async with self._uow_factory(readonly=True) as uow:
            transaction = await uow.transactions.get_by_id(transaction_id)
        if transaction is None or not transaction.is_owned_by(user_id):
            raise _transaction_not_found(transaction_id=transaction_id)
        return transaction

    async def list_transactions(
        self,
        user_id: str,
        filters: Optional[TransactionFilter] = None,
        *,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Transaction], int]:
        async with self._uow_factory(readonly=True) as uow:
            return await uow.transactions.list_by_user(user_id, filters or TransactionFilter(), skip=skip, limit=limit)

    async def statistics(self, user_id: str) -> TransactionStatistics:
        async with self._uow_factory(readonly=True) as uow:
            return await uow.transactions.statistics(user_id)
