"""
Shared plumbing for the payment application services.
"""
from __future__ import annotations

import hashlib
from typing import Callable, Optional

from application.ports.event_publisher import DomainEventPublisher
from core.logging_config import get_logger
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.service import EventCollector


logger = get_logger(__name__)

# uow_factory(readonly=...) -> AbstractUnitOfWork
UowFactory = Callable[..., AbstractUnitOfWork]


def idempotency_key(operation: str, *parts: str) -> str:
    """Stable processor idempotency key derived from business identifiers (no timestamp)."""
    base = "|".join((operation, *parts))
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


async def publish_collected(publisher: Optional[DomainEventPublisher], collector: EventCollector) -> None:
    """Publish whatever the collector holds; called only after the ledger commit."""
    events = collector.clear_events()
    if not events:
        return
    if publisher is None:
        logger.debug("domain_events_dropped", count=len(events))
        return
    await publisher.publish(events)
