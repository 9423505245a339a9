"""Payment maintenance tasks: re-drive of unprocessed webhook events."""
from __future__ import annotations

import asyncio
from functools import partial

from celery import shared_task

from application.services.payment_intent_service import PaymentIntentManager
from application.services.refund_service import RefundProcessor
from application.services.transaction_service import TransactionRecorder
from application.services.webhook_service import WebhookIngester
from core.config import settings
from core.logging_config import get_logger
from core.settings import payment_settings
from infrastructure.database import build_engine, build_session_factory
from infrastructure.events.inmemory import InMemoryEventPublisher
from infrastructure.external.payments import build_payment_gateways, close_payment_gateways
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork

from ..utils.base_task import BaseTask

logger = get_logger(__name__)


async def _redrive_pending(limit: int) -> dict:
    engine = build_engine()
    gateways = build_payment_gateways()
    try:
        uow_factory = partial(SQLAlchemyUnitOfWork, build_session_factory(engine))
        publisher = InMemoryEventPublisher(keep_history=False)
        gateway = gateways.get(payment_settings.default_provider)
        if gateway is None:
            logger.warning("webhook_redrive_skipped", reason="processor not configured")
            return {"total": 0, "processed": 0, "failed": 0}
        intents = PaymentIntentManager(uow_factory, gateway, publisher)
        transactions = TransactionRecorder(uow_factory, gateway, intents, publisher)
        refunds = RefundProcessor(uow_factory, gateway, transactions, publisher)
        ingester = WebhookIngester(uow_factory, gateways, intents, transactions, refunds, publisher)
        return await ingester.redrive_pending(limit)
    finally:
        await close_payment_gateways(gateways)
        await engine.dispose()


@shared_task(
    name="payments.redrive_webhooks",
    bind=True,
    base=BaseTask,
    ignore_result=False,
)
def redrive_webhooks(self, limit: int = settings.celery.redrive_batch_size) -> dict:
    """Re-dispatch webhook events that were claimed but not processed."""
    # One event loop per task run; no loop is shared between tasks
    summary = asyncio.run(_redrive_pending(limit))
    logger.info("webhook_redrive_completed", **summary)
    return summary
