"""
Payment intent use-cases: create, read, cancel and status advancement.

The service depends only on the ProcessorGateway port, the unit of work and the
domain event publisher; all three are injected from the composition root.
Processor calls never run inside an open ledger transaction.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Optional

from application.dtos.payments import CreatePaymentIntentRequest
from application.ports.event_publisher import DomainEventPublisher
from application.ports.payment_gateway import ProcessorGateway
from application.services.common import UowFactory, idempotency_key, publish_collected
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.exceptions import PaymentError
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    IntentStatus,
    PaymentIntent,
    Transition,
    new_id,
    owner_metadata,
    utcnow,
)
from domain.payment.service import (
    EventCollector,
    StatusChange,
    compare_and_swap,
    intent_status_changed,
)
from shared.codes.payment_codes import PaymentErrorKind, map_intent_status


logger = get_logger(__name__)


def _intent_not_found(intent_id: str) -> PaymentError:
    return PaymentError(
        PaymentErrorKind.PAYMENT_INTENT_NOT_FOUND,
        "Payment intent not found",
        details={"intent_id": intent_id},
    )


class PaymentIntentManager:
    def __init__(
        self,
        uow_factory: UowFactory,
        gateway: ProcessorGateway,
        publisher: Optional[DomainEventPublisher] = None,
        *,
        intent_ttl: Optional[timedelta] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self.gateway = gateway
        self._publisher = publisher
        self._intent_ttl = intent_ttl or timedelta(hours=payment_settings.intent_ttl_hours)

    async def create(self, user_id: str, req: CreatePaymentIntentRequest) -> PaymentIntent:
        """Create a processor intent and persist the local mirror.

        Raises DUPLICATE_TRANSACTION when the caller's (service, transaction)
        pair already owns an intent; the processor is not contacted then.
        """
        async with self._uow_factory(readonly=True) as uow:
            existing = await uow.intents.get_by_owner_key(req.owner_service_name, req.owner_transaction_id)
        if existing is not None:
            logger.info(
                "payment_intent_duplicate",
                intent_id=existing.id,
                service_name=req.owner_service_name,
                service_transaction_id=req.owner_transaction_id,
            )
            raise PaymentError(
                PaymentErrorKind.DUPLICATE_TRANSACTION,
                "Payment intent already exists for this service transaction",
                details={
                    "intent_id": existing.id,
                    "service_name": req.owner_service_name,
                    "service_transaction_id": req.owner_transaction_id,
                },
            )

        # Server-set owner keys win over caller-supplied metadata
        metadata = {
            **(req.metadata or {}),
            **owner_metadata(user_id, req.owner_service_name, req.owner_transaction_id),
        }
        logger.info(
            "payment_intent_create_request",
            user_id=user_id,
            service_name=req.owner_service_name,
            service_transaction_id=req.owner_transaction_id,
            amount=str(req.amount),
            currency=req.currency,
            provider=self.gateway.provider,
        )
        external = await self.gateway.create_intent(
            req.amount,
            req.currency,
            metadata,
            idempotency_key=idempotency_key(
                "intent", self.gateway.provider, req.owner_service_name, req.owner_transaction_id
            ),
        )

        now = utcnow()
        intent = PaymentIntent(
            id=new_id(),
            user_id=user_id,
            amount=req.amount,
            currency=req.currency,
            status=IntentStatus.CREATED,
            provider=self.gateway.provider,
            service_name=req.owner_service_name,
            service_transaction_id=req.owner_transaction_id,
            provider_intent_id=external.id,
            client_secret=external.client_secret,
            description=req.description,
            metadata=metadata,
            expires_at=now + self._intent_ttl,
            created_at=now,
            updated_at=now,
        )
        async with self._uow_factory() as uow:
            created = await uow.intents.create(intent)
        logger.info(
            "payment_intent_created",
            intent_id=created.id,
            provider_intent_id=created.provider_intent_id,
            processor_status=external.processor_status,
        )
        return created

    async def get(self, user_id: str, intent_id: str) -> PaymentIntent:
        async with self._uow_factory(readonly=True) as uow:
            intent = await uow.intents.get_by_id(intent_id)
        # Foreign intents look exactly like missing ones
        if intent is None or not intent.is_owned_by(user_id):
            raise _intent_not_found(intent_id)
        return intent

    async def cancel(self, user_id: str, intent_id: str) -> PaymentIntent:
        """Cancel at the processor, then mirror the cancellation locally."""
        intent = await self.get(user_id, intent_id)
        if intent.status == IntentStatus.CANCELLED:
            return intent
        if intent.is_terminal():
            raise PaymentError(
                PaymentErrorKind.INVALID_STATE,
                f"Payment intent is already {intent.status.value}",
                details={"intent_id": intent.id, "status": intent.status.value},
            )
        if intent.provider_intent_id:
            await self.gateway.cancel_intent(intent.provider_intent_id)
        return await self.update_status(intent.id, IntentStatus.CANCELLED)

    async def update_status(self, intent_id: str, new_status: IntentStatus) -> PaymentIntent:
        """Advance the intent; moving backwards or out of a terminal status is INVALID_STATE."""
        collector = EventCollector()
        async with self._uow_factory() as uow:
            change = await self.advance(uow, new_status, collector, intent_id=intent_id)
            if change.entity is None:
                raise _intent_not_found(intent_id)
            if change.outcome is Transition.REJECTED:
                raise PaymentError(
                    PaymentErrorKind.INVALID_STATE,
                    f"Cannot move payment intent from {change.previous_status} to {IntentStatus(new_status).value}",
                    details={
                        "intent_id": intent_id,
                        "status": change.previous_status,
                        "requested": IntentStatus(new_status).value,
                    },
                )
        await publish_collected(self._publisher, collector)
        return change.entity

    async def apply_processor_status(
        self, provider: str, provider_intent_id: str, processor_status: str
    ) -> Optional[PaymentIntent]:
        """Mirror a raw processor status; stale or unknown statuses are ignored."""
        mapped = map_intent_status(provider, processor_status)
        if mapped is None:
            logger.warning(
                "intent_status_unmapped",
                provider=provider,
                provider_intent_id=provider_intent_id,
                processor_status=processor_status,
            )
            return None
        collector = EventCollector()
        async with self._uow_factory() as uow:
            change = await self.advance(
                uow,
                IntentStatus(mapped),
                collector,
                provider=provider,
                provider_intent_id=provider_intent_id,
            )
        await publish_collected(self._publisher, collector)
        return change.entity

    async def advance(
        self,
        uow: AbstractUnitOfWork,
        new_status: IntentStatus,
        collector: EventCollector,
        *,
        intent_id: Optional[str] = None,
        provider: Optional[str] = None,
        provider_intent_id: Optional[str] = None,
    ) -> StatusChange[PaymentIntent]:
        """Forward-only transition inside the caller's unit of work.

        The intent is located by local id or by processor reference. A stale
        transition is logged and reported as REJECTED without raising.
        """

        async def load() -> Optional[PaymentIntent]:
            if intent_id is not None:
                return await uow.intents.get_by_id(intent_id)
            return await uow.intents.get_by_provider_intent_id(provider, provider_intent_id)

        change = await compare_and_swap(
            load,
            lambda intent: intent.transition_to(new_status),
            uow.intents.compare_and_set_status,
        )
        if change.entity is None:
            return change
        if change.applied:
            collector.record(intent_status_changed(change.entity, change.previous_status))
            logger.info(
                "payment_intent_status_changed",
                intent_id=change.entity.id,
                previous_status=change.previous_status,
                status=change.entity.status.value,
            )
        elif change.outcome is Transition.REJECTED:
            logger.info(
                "payment_intent_transition_ignored",
                intent_id=change.entity.id,
                status=change.previous_status,
                requested=IntentStatus(new_status).value,
            )
        return change
