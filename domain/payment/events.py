"""
Payment domain events.

Dataclass events record payment lifecycle facts for downstream consumers
(notification, accounting). One event per newly materialized status change;
the domain stays free of infrastructure imports.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Optional
import uuid


@dataclass
class PaymentEvent:
    provider: str
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        data = asdict(self)
        data["occurred_at"] = self.occurred_at.isoformat()
        data["name"] = self.name
        return data


@dataclass
class PaymentIntentStatusChanged(PaymentEvent):
    intent_id: str = ""
    service_name: str = ""
    service_transaction_id: str = ""
    previous_status: str = ""
    status: str = ""


@dataclass
class TransactionStatusChanged(PaymentEvent):
    transaction_id: str = ""
    user_id: str = ""
    service_name: str = ""
    service_transaction_id: str = ""
    amount: str = ""
    currency: str = ""
    previous_status: Optional[str] = None
    status: str = ""
    failure_reason: Optional[str] = None


@dataclass
class RefundStatusChanged(PaymentEvent):
    refund_id: str = ""
    transaction_id: str = ""
    amount: str = ""
    currency: str = ""
    previous_status: Optional[str] = None
    status: str = ""


@dataclass
class PaymentDisputed(PaymentEvent):
    dispute_id: str = ""
    provider_transaction_id: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    reason: Optional[str] = None
