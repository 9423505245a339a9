"""
Base processor client implementing shared concerns: timeouts, retry, logging, mapping.

Concrete processors subclass and implement processor-specific logic. Processor
SDK calls are blocking, so they run in a worker thread bounded by
`asyncio.wait_for`.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from core.logging_config import get_logger
from domain.common.exceptions import PaymentError
from domain.payment.entity import IntentStatus, RefundStatus, TransactionStatus
from infrastructure.external.payments.exceptions import processor_unavailable
from shared.codes.payment_codes import (
    PaymentErrorKind,
    map_intent_status,
    map_refund_status,
    map_transaction_status,
)


logger = get_logger(__name__)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, PaymentError) and exc.kind is PaymentErrorKind.PROCESSOR_UNAVAILABLE


class BaseProcessorClient:
    provider: str = "base"

    def __init__(
        self,
        *,
        timeouts: Optional[dict[str, float]] = None,
        retry: Optional[dict[str, Any]] = None,
    ) -> None:
        self._timeouts_cfg = timeouts or {"intent": 30.0, "read": 10.0}
        self._retry_cfg = retry or {"max": 2, "base": 0.2}

    @property
    def intent_timeout(self) -> float:
        return float(self._timeouts_cfg["intent"])

    @property
    def read_timeout(self) -> float:
        return float(self._timeouts_cfg["read"])

    async def aclose(self) -> None:
        """Release processor resources (no-op for SDK-backed clients)."""

    async def _call(self, operation: str, fn: Callable[..., Any], *args, timeout: float, **kwargs) -> Any:
        """Run a blocking SDK call in a thread with a bounded timeout.

        Processor exceptions are translated by `_translate_error`; a timeout
        becomes PROCESSOR_UNAVAILABLE.
        """
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._log("processor_call_timeout", operation=operation, timeout=timeout)
            raise processor_unavailable(
                f"{self.provider} {operation} timed out after {timeout:g}s",
                provider=self.provider,
                details={"operation": operation},
            ) from exc
        except PaymentError:
            raise
        except Exception as exc:
            translated = self._translate_error(exc, operation)
            if translated is None:
                raise
            raise translated from exc

    async def _retry(self, operation: str, fn: Callable[[], Any]) -> Any:
        """Retry transient failures; only for calls that are safe to repeat."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(int(self._retry_cfg["max"]) + 1),
            wait=wait_exponential(multiplier=self._retry_cfg["base"], min=0.1, max=2.0),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    self._log("processor_call_retry", operation=operation, attempt=attempt.retry_state.attempt_number)
                return await fn()

    def _translate_error(self, exc: Exception, operation: str) -> Optional[PaymentError]:
        """Map a processor SDK exception onto a PaymentError; None re-raises as is."""
        return None

    # Status mapping helpers
    def _intent_status(self, processor_status: Optional[str]) -> Optional[IntentStatus]:
        mapped = map_intent_status(self.provider, processor_status)
        if mapped is None:
            self._log_unknown_status("intent", processor_status)
            return None
        return IntentStatus(mapped)

    def _transaction_status(self, processor_status: Optional[str]) -> Optional[TransactionStatus]:
        mapped = map_transaction_status(self.provider, processor_status)
        if mapped is None:
            self._log_unknown_status("transaction", processor_status)
            return None
        return TransactionStatus(mapped)

    def _refund_status(self, processor_status: Optional[str]) -> Optional[RefundStatus]:
        mapped = map_refund_status(self.provider, processor_status)
        if mapped is None:
            self._log_unknown_status("refund", processor_status)
            return None
        return RefundStatus(mapped)

    def _log_unknown_status(self, entity: str, processor_status: Optional[str]) -> None:
        logger.warning(
            "processor_status_unmapped",
            provider=self.provider,
            entity=entity,
            processor_status=processor_status,
        )

    def _log(self, event: str, **kwargs) -> None:
        logger.info(
            event,
            provider=self.provider,
            **kwargs,
        )
