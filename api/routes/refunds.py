"""
Refund routes.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from api.dependencies import get_current_user_id, get_refund_processor
from application.dtos.payments import CreateRefundRequest, RefundDTO
from application.services.refund_service import RefundProcessor
from application.utils.completion import run_to_completion
from core.response import Response as ApiResponse, success_response


router = APIRouter(prefix="/refunds", tags=["Refunds"])


@router.post("", summary="Create refund", status_code=status.HTTP_201_CREATED, response_model=ApiResponse[RefundDTO])
async def create_refund(
    payload: CreateRefundRequest,
    user_id: str = Depends(get_current_user_id),
    service: RefundProcessor = Depends(get_refund_processor),
):
    """
    Refund all or part of a succeeded payment.

    - **amount**: omitted means the full transaction amount; more than the
      remaining refundable amount answers 400 REFUND_EXCEEDS_TRANSACTION
    """
    refund = await run_to_completion(
        service.create_refund(
            user_id,
            payload.transaction_id,
            amount=payload.amount,
            reason=payload.reason,
            metadata=payload.metadata,
        )
    )
    return success_response(data=RefundDTO.model_validate(refund), message="Refund created")


@router.get("", summary="List refunds of a transaction", response_model=ApiResponse[list[RefundDTO]])
async def list_refunds(
    transaction_id: str = Query(alias="transactionId"),
    user_id: str = Depends(get_current_user_id),
    service: RefundProcessor = Depends(get_refund_processor),
):
    refunds = await service.list_refunds(user_id, transaction_id)
    return success_response(data=[RefundDTO.model_validate(r) for r in refunds])
