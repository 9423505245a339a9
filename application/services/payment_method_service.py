"""
Saved payment-method references per user.
"""
from __future__ import annotations

from typing import List, Mapping

from application.dtos.payments import AddPaymentMethodRequest
from application.ports.payment_gateway import ProcessorGateway
from application.services.common import UowFactory
from core.logging_config import get_logger
from domain.common.exceptions import PaymentError
from domain.payment.entity import PaymentMethod, new_id, utcnow
from shared.codes.payment_codes import PaymentErrorKind


logger = get_logger(__name__)


class PaymentMethodRegistry:
    def __init__(self, uow_factory: UowFactory, gateways: Mapping[str, ProcessorGateway]) -> None:
        self._uow_factory = uow_factory
        self._gateways = gateways

    async def add(self, user_id: str, req: AddPaymentMethodRequest) -> PaymentMethod:
        """Save a processor payment-method reference; a new default replaces the old one."""
        now = utcnow()
        method = PaymentMethod(
            id=new_id(),
            user_id=user_id,
            type=req.type,
            provider=req.provider,
            provider_payment_method_id=req.provider_payment_method_id,
            is_default=req.is_default,
            metadata=dict(req.metadata or {}),
            created_at=now,
            updated_at=now,
        )
        async with self._uow_factory() as uow:
            if method.is_default:
                await uow.payment_methods.clear_default(user_id)
            created = await uow.payment_methods.create(method)
        logger.info(
            "payment_method_added",
            user_id=user_id,
            payment_method_id=created.id,
            provider=created.provider,
            is_default=created.is_default,
        )
        return created

    async def list(self, user_id: str) -> List[PaymentMethod]:
        async with self._uow_factory(readonly=True) as uow:
            return await uow.payment_methods.list_by_user(user_id)

    async def remove(self, user_id: str, method_id: str) -> None:
        """Detach the method at its processor, then forget it locally.

        A processor failure leaves the saved reference in place so the call
        can be repeated. Foreign methods look exactly like missing ones.
        """
        async with self._uow_factory(readonly=True) as uow:
            method = await uow.payment_methods.get_for_user(user_id, method_id)
        if method is None:
            raise PaymentError(
                PaymentErrorKind.PAYMENT_METHOD_NOT_FOUND,
                "Payment method not found",
                details={"payment_method_id": method_id},
            )

        gateway = self._gateways.get(method.provider)
        if gateway is None:
            raise PaymentError(
                PaymentErrorKind.PROCESSOR_UNAVAILABLE,
                "Payment processor is not configured",
                details={"provider": method.provider},
            )
        await gateway.detach_payment_method(method.provider_payment_method_id)

        async with self._uow_factory() as uow:
            deleted = await uow.payment_methods.delete(user_id, method_id)
        logger.info(
            "payment_method_removed",
            user_id=user_id,
            payment_method_id=method_id,
            provider=method.provider,
            deleted=deleted,
        )
