"""
Payment (transaction) routes: confirmation, ledger listing and statistics.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_current_user_id, get_transaction_recorder
from application.dtos.payments import ConfirmPaymentRequest, TransactionDTO, TransactionStatisticsDTO
from application.services.transaction_service import TransactionRecorder
from application.utils.completion import run_to_completion
from core.config import settings
from core.response import PaginatedData, Response as ApiResponse, paginated_response, success_response
from domain.payment.entity import TransactionStatus, TransactionType
from domain.payment.repository import TransactionFilter


router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("", summary="Confirm payment", response_model=ApiResponse[TransactionDTO])
async def confirm_payment(
    payload: ConfirmPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    service: TransactionRecorder = Depends(get_transaction_recorder),
):
    """
    Confirm a payment intent and record the transaction.

    Repeating the call for an already confirmed intent returns the recorded
    transaction. Declines answer 402, an unknown intent or payment method 404.
    """
    transaction = await run_to_completion(
        service.confirm(user_id, payload.payment_intent_id, payload.payment_method_id)
    )
    return success_response(data=TransactionDTO.model_validate(transaction), message="Payment processed")


@router.get("", summary="List transactions", response_model=ApiResponse[PaginatedData[TransactionDTO]])
async def list_transactions(
    status: Optional[TransactionStatus] = Query(default=None),
    type: Optional[TransactionType] = Query(default=None),
    provider: Optional[str] = Query(default=None),
    service_name: Optional[str] = Query(default=None, alias="serviceName"),
    start_date: Optional[datetime] = Query(default=None, alias="startDate"),
    end_date: Optional[datetime] = Query(default=None, alias="endDate"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=settings.DEFAULT_PAGE_SIZE, ge=1, le=settings.MAX_PAGE_SIZE),
    user_id: str = Depends(get_current_user_id),
    service: TransactionRecorder = Depends(get_transaction_recorder),
):
    filters = TransactionFilter(
        status=status.value if status else None,
        type=type.value if type else None,
        provider=provider,
        service_name=service_name,
        start_date=start_date,
        end_date=end_date,
    )
    items, total = await service.list_transactions(user_id, filters, skip=(page - 1) * limit, limit=limit)
    return paginated_response(
        items=[TransactionDTO.model_validate(t) for t in items],
        total=total,
        page=page,
        size=limit,
    )


@router.get("/statistics", summary="Transaction statistics", response_model=ApiResponse[TransactionStatisticsDTO])
async def transaction_statistics(
    user_id: str = Depends(get_current_user_id),
    service: TransactionRecorder = Depends(get_transaction_recorder),
):
    stats = await service.statistics(user_id)
    return success_response(data=TransactionStatisticsDTO.model_validate(stats))


@router.get("/{transaction_id}", summary="Get transaction", response_model=ApiResponse[TransactionDTO])
async def get_transaction(
    transaction_id: str,
    user_id: str = Depends(get_current_user_id),
    service: TransactionRecorder = Depends(get_transaction_recorder),
):
    transaction = await service.get_transaction(user_id, transaction_id)
    return success_response(data=TransactionDTO.model_validate(transaction))
