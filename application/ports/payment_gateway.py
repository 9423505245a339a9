"""
Processor gateway port (application/ports) exposing a replaceable protocol.

Application depends on this Protocol; infrastructure implements adapters.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional, Protocol, runtime_checkable

from application.dtos.payments import ExternalIntent, ExternalRefund, ProcessorEvent


@runtime_checkable
class ProcessorGateway(Protocol):
    """Gateway protocol for the external payment processor.

    Mutating calls must surface declines as PaymentError(PAYMENT_DECLINED or
    INSUFFICIENT_FUNDS) and timeouts/transport failures as
    PaymentError(PROCESSOR_UNAVAILABLE).
    """

    provider: str

    async def create_intent(
        self,
        amount: Decimal,
        currency: str,
        metadata: dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> ExternalIntent: ...

    async def confirm_intent(
        self,
        external_id: str,
        payment_method_ref: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ExternalIntent: ...

    async def cancel_intent(self, external_id: str) -> ExternalIntent: ...

    async def create_refund(
        self,
        external_transaction_id: str,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        reason: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> ExternalRefund: ...

    async def detach_payment_method(self, provider_payment_method_id: str) -> None: ...

    def verify_event(self, raw_payload: bytes, signature: Optional[str]) -> ProcessorEvent: ...

    def parse_event(self, payload: dict[str, Any]) -> ProcessorEvent: ...

    async def aclose(self) -> None: ...
