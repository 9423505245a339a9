"""
Processor webhook endpoint.

The raw body is passed through untouched: signatures are computed over the
exact bytes the processor sent.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_webhook_ingester
from application.dtos.payments import WebhookAckDTO
from application.services.webhook_service import WebhookIngester
from application.utils.completion import run_to_completion
from core.logging_config import get_logger
from core.response import Response as ApiResponse, success_response


router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
logger = get_logger(__name__)

SIGNATURE_HEADERS = {
    "stripe": "Stripe-Signature",
}


@router.post("/{processor}", summary="Receive processor webhook", response_model=ApiResponse[WebhookAckDTO])
async def receive_webhook(
    processor: str,
    request: Request,
    ingester: WebhookIngester = Depends(get_webhook_ingester),
):
    """
    Acknowledge with 200 once the event is claimed, including duplicates and
    events whose handling failed (those are re-driven later). An invalid
    signature answers 401.
    """
    raw_body = await request.body()
    header = SIGNATURE_HEADERS.get(processor.lower(), "X-Webhook-Signature")
    result = await run_to_completion(ingester.ingest(processor, raw_body, request.headers.get(header)))
    ack = WebhookAckDTO(
        event_id=result.event.id,
        event_type=result.event.type,
        duplicate=result.duplicate,
        processed=result.processed,
    )
    message = "Duplicate event ignored" if result.duplicate else "Webhook received"
    return success_response(data=ack, message=message)
