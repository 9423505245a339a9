"""
Factory for processor gateway clients.
"""
from __future__ import annotations

from typing import Dict, Optional

from application.ports.payment_gateway import ProcessorGateway
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.exceptions import PaymentError
from shared.codes.payment_codes import PaymentErrorKind


logger = get_logger(__name__)


def get_payment_gateway(provider: Optional[str] = None) -> ProcessorGateway:
    name = (provider or payment_settings.default_provider).lower()
    if name == "stripe":
        from .stripe_client import StripeClient
        return StripeClient()
    raise PaymentError(
        PaymentErrorKind.VALIDATION_ERROR,
        f"Unsupported payment processor: {name}",
        details={"provider": name},
        field="provider",
    )


def build_payment_gateways() -> Dict[str, ProcessorGateway]:
    """Instantiate every processor that has credentials configured."""
    gateways: Dict[str, ProcessorGateway] = {}
    if payment_settings.stripe.secret_key:
        gateways["stripe"] = get_payment_gateway("stripe")
    else:
        logger.warning("payment_processor_not_configured", provider="stripe")
    return gateways


async def close_payment_gateways(gateways: Dict[str, ProcessorGateway]) -> None:
    for gateway in gateways.values():
        await gateway.aclose()
