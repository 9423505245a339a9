"""
Payment intent routes.

Thin layer: validation by DTOs, orchestration in PaymentIntentManager.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, status

from api.dependencies import get_current_user_id, get_intent_manager
from application.dtos.payments import CreatePaymentIntentRequest, PaymentIntentDTO
from application.services.payment_intent_service import PaymentIntentManager
from application.utils.completion import run_to_completion
from core.response import Response as ApiResponse, success_response


router = APIRouter(prefix="/payment-intents", tags=["Payment Intents"])


@router.post(
    "",
    summary="Create payment intent",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[PaymentIntentDTO],
)
async def create_payment_intent(
    payload: CreatePaymentIntentRequest,
    user_id: str = Depends(get_current_user_id),
    service: PaymentIntentManager = Depends(get_intent_manager),
):
    """
    Create a processor payment intent for a caller-owned transaction.

    - **ownerServiceName / ownerTransactionId**: idempotency key; a second
      request with the same pair answers 409 DUPLICATE_TRANSACTION
    - **amount**: positive, two decimals, at most 999999.99
    """
    intent = await run_to_completion(service.create(user_id, payload))
    return success_response(data=PaymentIntentDTO.model_validate(intent), message="Payment intent created")


@router.get("/{intent_id}", summary="Get payment intent", response_model=ApiResponse[PaymentIntentDTO])
async def get_payment_intent(
    intent_id: str,
    user_id: str = Depends(get_current_user_id),
    service: PaymentIntentManager = Depends(get_intent_manager),
):
    intent = await service.get(user_id, intent_id)
    return success_response(data=PaymentIntentDTO.model_validate(intent))


@router.post(
    "/{intent_id}/cancel",
    summary="Cancel payment intent",
    response_model=ApiResponse[PaymentIntentDTO],
)
async def cancel_payment_intent(
    intent_id: str,
    user_id: str = Depends(get_current_user_id),
    service: PaymentIntentManager = Depends(get_intent_manager),
):
    intent = await run_to_completion(service.cancel(user_id, intent_id))
    return success_response(data=PaymentIntentDTO.model_validate(intent), message="Payment intent cancelled")
