"""
Saved payment method routes.
"""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status

from api.dependencies import get_current_user_id, get_payment_method_registry
from application.dtos.payments import AddPaymentMethodRequest, PaymentMethodDTO
from application.services.payment_method_service import PaymentMethodRegistry
from application.utils.completion import run_to_completion
from core.response import Response as ApiResponse, success_response


router = APIRouter(prefix="/payment-methods", tags=["Payment Methods"])


@router.post(
    "",
    summary="Save payment method",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[PaymentMethodDTO],
)
async def add_payment_method(
    payload: AddPaymentMethodRequest,
    user_id: str = Depends(get_current_user_id),
    registry: PaymentMethodRegistry = Depends(get_payment_method_registry),
):
    method = await registry.add(user_id, payload)
    return success_response(data=PaymentMethodDTO.model_validate(method), message="Payment method saved")


@router.get("", summary="List payment methods", response_model=ApiResponse[list[PaymentMethodDTO]])
async def list_payment_methods(
    user_id: str = Depends(get_current_user_id),
    registry: PaymentMethodRegistry = Depends(get_payment_method_registry),
):
    methods = await registry.list(user_id)
    return success_response(data=[PaymentMethodDTO.model_validate(m) for m in methods])


@router.delete("/{method_id}", summary="Remove payment method", response_model=ApiResponse[Any])
async def remove_payment_method(
    method_id: str,
    user_id: str = Depends(get_current_user_id),
    registry: PaymentMethodRegistry = Depends(get_payment_method_registry),
):
    """Detach the method at the processor and delete the saved reference."""
    await run_to_completion(registry.remove(user_id, method_id))
    return success_response(data=None, message="Payment method removed")
