"""Payment endpoints: step 3 of the booking flow.

The provider widget returns the user to one of:
- GET /payments/toss/success (Toss successUrl, query parameters)
- POST /payments/nicepay/return (NicePay returnUrl, form post)

Both verify the callback and approve the payment server-side, then
redirect the browser to the result page. Single-page clients may instead
call POST /payments/confirm with the same data.

A callback is never trusted by itself: the approved amount is checked
against the locked price before anything is committed, and a callback
that fails verification never rolls a booking back.
"""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from starlette.status import HTTP_303_SEE_OTHER

from coop_api.dependencies import get_orchestrator, get_reservation_repository
from coop_api.models.bookings import (
    BookingStatusResponse,
    PaymentConfirmRequest,
    PaymentFailRequest,
    PaymentResponse,
)
from coop_api.models.reservations import ReservationResponse
from coop_api.security import CurrentUser, get_current_user
from coop_booking.config import get_settings
from coop_booking.gateways import get_payment_gateway
from coop_booking.models.booking import PaymentCallback
from coop_booking.models.enums import PaymentProvider
from coop_booking.models.errors import (
    AccessError,
    BookingError,
    ErrorCode,
    NotFoundError,
    PaymentError,
)
from coop_booking.services.orchestrator import ReservationOrchestrator
from coop_booking.services.reservation_repository import ReservationRepository

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


def _result_redirect(path: str, **params: str) -> RedirectResponse:
    site = get_settings().site_url.rstrip("/")
    query = urlencode({k: v for k, v in params.items() if v})
    return RedirectResponse(f"{site}{path}?{query}", status_code=HTTP_303_SEE_OTHER)


async def _confirm_and_redirect(
    orchestrator: ReservationOrchestrator,
    provider: PaymentProvider,
    data: dict[str, str],
) -> RedirectResponse:
    order_id = data.get("orderId", "")
    try:
        callback = await get_payment_gateway(provider).verify_callback(data)
    except PaymentError as e:
        # Anyone can call this URL: a rejected callback changes no state.
        # The owner's POST /payments/fail or the sweep settles the order.
        logger.warning(
            "%s callback rejected for %s: %s", provider.value, order_id, e.code.value
        )
        return _result_redirect(
            "/payments/failure", orderId=order_id, code=e.code.value
        )

    try:
        reservation = await orchestrator.confirm_payment(callback)
    except BookingError as e:
        return _result_redirect(
            "/payments/failure", orderId=callback.order_id, code=e.code.value
        )
    return _result_redirect(
        "/payments/complete",
        orderId=callback.order_id,
        reservationId=reservation.reservation_id,
    )


@router.get(
    "/payments/toss/success",
    summary="Toss success redirect",
    description="Toss sends the user here with paymentKey, orderId and amount.",
    response_class=RedirectResponse,
    status_code=HTTP_303_SEE_OTHER,
)
async def toss_success(
    request: Request,
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> RedirectResponse:
    return await _confirm_and_redirect(
        orchestrator, PaymentProvider.TOSS, dict(request.query_params)
    )


@router.post(
    "/payments/nicepay/return",
    summary="NicePay return post",
    description="NicePay posts the card authentication result here as a form.",
    response_class=RedirectResponse,
    status_code=HTTP_303_SEE_OTHER,
)
async def nicepay_return(
    request: Request,
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> RedirectResponse:
    form = await request.form()
    data = {key: str(value) for key, value in form.items()}
    return await _confirm_and_redirect(orchestrator, PaymentProvider.NICEPAY, data)


@router.post(
    "/payments/confirm",
    summary="Confirm payment",
    description="""
Approve a payment after the widget's success step.

**Requires JWT authentication. Only the order owner can confirm.**

Idempotent: confirming a committed order returns the same reservation.
""",
    response_model=ReservationResponse,
    responses={
        400: {"description": "Booking expired or not awaiting payment"},
        402: {"description": "Payment declined or amount mismatch"},
        409: {"description": "Approval already in progress, or program full"},
        503: {"description": "Provider or store unavailable; retry"},
    },
)
async def confirm_payment(
    body: PaymentConfirmRequest,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> ReservationResponse:
    callback = PaymentCallback(
        order_id=body.order_id, transaction_id=body.transaction_id, amount=body.amount
    )
    reservation = await orchestrator.confirm_payment(callback, user.user_id)
    return ReservationResponse.from_reservation(reservation)


@router.post(
    "/payments/fail",
    summary="Report a failed payment",
    description="Called from the failure page; releases the held slot.",
    response_model=BookingStatusResponse,
)
async def fail_payment(
    body: PaymentFailRequest,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> BookingStatusResponse:
    session = await orchestrator.fail_payment(
        body.order_id, body.code, body.message, user.user_id
    )
    return BookingStatusResponse.from_session(session)


@router.get(
    "/payments/{order_id}",
    summary="Get payment",
    response_model=PaymentResponse,
    responses={
        403: {"description": "Payment belongs to another user"},
        404: {"description": "No payment for this order"},
    },
)
async def get_payment(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    repository: ReservationRepository = Depends(get_reservation_repository),
) -> PaymentResponse:
    payment = await repository.get_payment(order_id)
    if payment is None:
        raise NotFoundError(ErrorCode.ORDER_NOT_FOUND, details={"order_id": order_id})
    if payment.user_id != user.user_id and not user.is_admin:
        raise AccessError(details={"order_id": order_id})
    return PaymentResponse.from_payment(payment)
