"""Webhook endpoints for payment provider notifications.

No JWT: Toss notifications are confirmed by reconciling against the
status API, NicePay notifications carry a signature that is verified.
Duplicate deliveries return 200 with processing_result "duplicate".
"""

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from coop_api.dependencies import get_webhook_handler
from coop_booking.models.enums import PaymentProvider
from coop_booking.services.webhook_handler import WebhookHandler

router = APIRouter(tags=["webhooks"])


class WebhookResponse(BaseModel):
    received: bool
    event_id: str | None = None
    event_type: str | None = None
    processing_result: str  # "success", "duplicate", "skipped", "error"
    message: str | None = None


async def _handle(
    provider: PaymentProvider, request: Request, handler: WebhookHandler
) -> WebhookResponse:
    result = await handler.handle(provider, await request.body())
    return WebhookResponse(
        received=True,
        event_id=result.event_id,
        event_type=result.event_type,
        processing_result=result.processing_result,
        message=result.message,
    )


@router.post(
    "/webhooks/toss",
    summary="Receive Toss webhook",
    response_model=WebhookResponse,
    responses={503: {"description": "Transient failure; Toss will redeliver"}},
)
async def toss_webhook(
    request: Request, handler: WebhookHandler = Depends(get_webhook_handler)
) -> WebhookResponse:
    return await _handle(PaymentProvider.TOSS, request, handler)


@router.post(
    "/webhooks/nicepay",
    summary="Receive NicePay webhook",
    response_model=WebhookResponse,
    responses={401: {"description": "Invalid signature"}},
)
async def nicepay_webhook(
    request: Request, handler: WebhookHandler = Depends(get_webhook_handler)
) -> WebhookResponse:
    return await _handle(PaymentProvider.NICEPAY, request, handler)
