"""
Inbound processor webhooks: verify, claim, dispatch, acknowledge.

Every verified event is claimed by inserting its (provider, event id) pair; a
second delivery of the same event finds the claim and is acknowledged without
touching the ledger. Handler effects and the processed flag commit together,
so an event whose handling failed stays unprocessed and can be re-driven.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Union

from application.dtos.payments import ProcessorEvent
from application.ports.event_publisher import DomainEventPublisher
from application.ports.payment_gateway import ProcessorGateway
from application.services.common import UowFactory, publish_collected
from application.services.payment_intent_service import PaymentIntentManager
from application.services.refund_service import RefundProcessor
from application.services.transaction_service import TransactionRecorder
from core.logging_config import get_logger
from domain.common.exceptions import PaymentError
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.entity import (
    IntentStatus,
    RefundStatus,
    TransactionStatus,
    WebhookEvent,
    new_id,
    utcnow,
)
from domain.payment.events import PaymentDisputed
from domain.payment.service import EventCollector
from shared.codes.payment_codes import PaymentErrorKind


logger = get_logger(__name__)

GatewayResolver = Callable[[str], ProcessorGateway]

# normalized event type -> (intent status, transaction status)
INTENT_EVENT_OUTCOMES = {
    "paymentIntent.succeeded": (IntentStatus.SUCCEEDED, TransactionStatus.SUCCEEDED),
    "paymentIntent.failed": (None, TransactionStatus.FAILED),
    "paymentIntent.cancelled": (IntentStatus.CANCELLED, TransactionStatus.CANCELLED),
    "paymentIntent.processing": (IntentStatus.PROCESSING, TransactionStatus.PROCESSING),
    "paymentIntent.requiresAction": (IntentStatus.REQUIRES_ACTION, TransactionStatus.PENDING),
}

REFUND_EVENT_PREFIX = "refund."
DISPUTE_EVENT_PREFIX = "charge.dispute."


@dataclass
class WebhookResult:
    event: ProcessorEvent
    duplicate: bool = False
    processed: bool = False


class WebhookIngester:
    def __init__(
        self,
        uow_factory: UowFactory,
        gateways: Union[Mapping[str, ProcessorGateway], GatewayResolver],
        intents: PaymentIntentManager,
        transactions: TransactionRecorder,
        refunds: RefundProcessor,
        publisher: Optional[DomainEventPublisher] = None,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateways
        self._intents = intents
        self._transactions = transactions
        self._refunds = refunds
        self._publisher = publisher

    def _gateway(self, provider: str) -> ProcessorGateway:
        name = (provider or "").lower()
        if callable(self._gateways):
            return self._gateways(name)
        gateway = self._gateways.get(name)
        if gateway is None:
            raise PaymentError(
                PaymentErrorKind.VALIDATION_ERROR,
                f"Unsupported payment processor: {provider}",
                details={"provider": provider},
            )
        return gateway

    async def ingest(self, provider: str, raw_payload: bytes, signature: Optional[str]) -> WebhookResult:
        """Verify and process one delivery.

        Raises INVALID_SIGNATURE for unauthenticated payloads; handler failures
        are logged and reported as processed=False, never raised.
        """
        gateway = self._gateway(provider)
        try:
            event = gateway.verify_event(raw_payload, signature)
        except PaymentError as exc:
            logger.warning(
                "webhook_rejected",
                provider=gateway.provider,
                kind=exc.kind.value,
                reason=exc.message,
            )
            raise

        record = WebhookEvent(
            id=new_id(),
            provider=event.provider,
            provider_event_id=event.id,
            event_type=event.type,
            payload=event.payload,
            processed=False,
            created_at=utcnow(),
        )
        async with self._uow_factory() as uow:
            claimed = await uow.webhook_events.claim(record)
        if claimed is None:
            logger.info(
                "webhook_duplicate_ignored",
                provider=event.provider,
                event_id=event.id,
                event_type=event.type,
            )
            return WebhookResult(event=event, duplicate=True, processed=False)

        logger.info(
            "webhook_received",
            provider=event.provider,
            event_id=event.id,
            event_type=event.type,
            webhook_event_id=claimed.id,
        )
        processed = await self._process(claimed, event)
        return WebhookResult(event=event, duplicate=False, processed=processed)

    async def redrive(self, webhook_event_id: str) -> bool:
        """Re-run the handler for a stored event that is not yet processed."""
        async with self._uow_factory(readonly=True) as uow:
            record = await uow.webhook_events.get_by_id(webhook_event_id)
        if record is None:
            logger.warning("webhook_redrive_missing", webhook_event_id=webhook_event_id)
            return False
        if record.processed:
            return True
        event = self._gateway(record.provider).parse_event(record.payload)
        logger.info(
            "webhook_redrive",
            provider=record.provider,
            event_id=record.provider_event_id,
            webhook_event_id=record.id,
        )
        return await self._process(record, event)

    async def redrive_pending(self, limit: int = 100) -> dict[str, int]:
        async with self._uow_factory(readonly=True) as uow:
            pending = await uow.webhook_events.list_unprocessed(limit)
        summary = {"total": len(pending), "processed": 0, "failed": 0}
        for record in pending:
            if await self.redrive(record.id):
                summary["processed"] += 1
            else:
                summary["failed"] += 1
        if pending:
            logger.info("webhook_redrive_batch", **summary)
        return summary

    async def _process(self, record: WebhookEvent, event: ProcessorEvent) -> bool:
        collector = EventCollector()
        try:
            async with self._uow_factory() as uow:
                await self._dispatch(uow, event, collector)
                await uow.webhook_events.mark_processed(record.id, utcnow())
        except Exception:
            # The claim row stays unprocessed for re-drive
            logger.exception(
                "webhook_processing_failed",
                provider=event.provider,
                event_id=event.id,
                event_type=event.type,
                webhook_event_id=record.id,
            )
            return False
        await publish_collected(self._publisher, collector)
        return True

    async def _dispatch(self, uow: AbstractUnitOfWork, event: ProcessorEvent, collector: EventCollector) -> None:
        if event.type in INTENT_EVENT_OUTCOMES:
            await self._on_intent_event(uow, event, collector)
        elif event.type.startswith(REFUND_EVENT_PREFIX) and event.type[len(REFUND_EVENT_PREFIX):] in _REFUND_STATUSES:
            status = RefundStatus(event.type[len(REFUND_EVENT_PREFIX):])
            await self._refunds.apply_processor_event(uow, event, status, collector)
        elif event.raw_type.startswith(DISPUTE_EVENT_PREFIX):
            self._on_dispute(event, collector)
        else:
            logger.info("webhook_event_unhandled", provider=event.provider, event_type=event.type)

    async def _on_intent_event(self, uow: AbstractUnitOfWork, event: ProcessorEvent, collector: EventCollector) -> None:
        intent_status, transaction_status = INTENT_EVENT_OUTCOMES[event.type]
        intent = None
        if event.object_id:
            intent = await uow.intents.get_by_provider_intent_id(event.provider, event.object_id)
        if intent is not None and intent_status is not None:
            change = await self._intents.advance(uow, intent_status, collector, intent_id=intent.id)
            intent = change.entity or intent
        await self._transactions.apply_processor_event(uow, event, transaction_status, collector, intent=intent)

    @staticmethod
    def _on_dispute(event: ProcessorEvent, collector: EventCollector) -> None:
        logger.warning(
            "payment_disputed",
            provider=event.provider,
            dispute_id=event.object_id,
            provider_transaction_id=event.related_id,
            reason=event.failure_reason,
        )
        collector.record(
            PaymentDisputed(
                provider=event.provider,
                dispute_id=event.object_id or "",
                provider_transaction_id=event.related_id,
                amount=str(event.amount) if event.amount is not None else None,
                currency=event.currency,
                reason=event.failure_reason,
            )
        )


_REFUND_STATUSES = frozenset(s.value for s in RefundStatus)
