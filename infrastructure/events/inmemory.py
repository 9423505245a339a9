"""
In-process domain event publisher.

Events are fanned out to registered async subscribers and kept in `published`
for inspection. A subscriber failure is logged and does not affect the ledger
or other subscribers.
"""
from __future__ import annotations

from typing import Awaitable, Callable, List, Sequence

from core.logging_config import get_logger
from domain.payment.events import PaymentEvent


logger = get_logger(__name__)

Subscriber = Callable[[PaymentEvent], Awaitable[None]]


class InMemoryEventPublisher:
    def __init__(self, *, keep_history: bool = True) -> None:
        self._subscribers: List[Subscriber] = []
        self._keep_history = keep_history
        self.published: List[PaymentEvent] = []

    def subscribe(self, handler: Subscriber) -> None:
        self._subscribers.append(handler)

    async def publish(self, events: Sequence[PaymentEvent]) -> None:
        for event in events:
            if self._keep_history:
                self.published.append(event)
            logger.info("domain_event_published", event_name=event.name, event_id=event.event_id)
            for handler in self._subscribers:
                try:
                    await handler(event)
                except Exception:
                    logger.exception(
                        "domain_event_subscriber_failed",
                        event_name=event.name,
                        event_id=event.event_id,
                    )
