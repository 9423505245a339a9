"""
Domain event publisher port.
"""
from __future__ import annotations

from typing import Protocol, Sequence, runtime_checkable

from domain.payment.events import PaymentEvent


@runtime_checkable
class DomainEventPublisher(Protocol):
    """Delivers payment domain events to downstream consumers (notification, accounting)."""

    async def publish(self, events: Sequence[PaymentEvent]) -> None: ...
