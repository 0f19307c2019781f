"""Booking endpoints: the first two steps of the booking flow.

- POST /bookings: submit participant info, lock the price, hold a slot
  and get the provider widget parameters. Sending an existing order_id
  resumes that order (page reload).
- GET /bookings/{order_id}: current state of an order.

Requires JWT authentication; API Gateway passes the subject in x-user-sub.
"""

from fastapi import APIRouter, Depends
from starlette.status import HTTP_201_CREATED

from coop_api.dependencies import get_orchestrator
from coop_api.models.bookings import (
    BookingCreateRequest,
    BookingStartResponse,
    BookingStatusResponse,
)
from coop_api.security import CurrentUser, get_current_user
from coop_booking.services.orchestrator import ReservationOrchestrator

router = APIRouter(tags=["bookings"])


@router.post(
    "/bookings",
    summary="Start or resume a booking",
    description="""
Lock the program price and hold one participant slot, then return what the
front end needs to open the payment widget.

**Requires JWT authentication.**

**Notes:**
- `expected_amount` is the price shown to the user; a different current
  price fails with ERR_VAL_003 instead of charging the new price
- A full program fails with ERR_CAP_001 and nothing is charged
- The slot is held until the payment window (30 minutes) expires
""",
    response_model=BookingStartResponse,
    status_code=HTTP_201_CREATED,
    responses={
        400: {"description": "Program not open, price changed or booking expired"},
        401: {"description": "JWT token required"},
        404: {"description": "Program or order not found"},
        409: {"description": "Program full or reservation already exists"},
    },
)
async def start_booking(
    body: BookingCreateRequest,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> BookingStartResponse:
    started = await orchestrator.start_booking(body.to_domain(user.user_id))
    return BookingStartResponse.from_started(started)


@router.get(
    "/bookings/{order_id}",
    summary="Get booking state",
    response_model=BookingStatusResponse,
    responses={
        403: {"description": "Order belongs to another user"},
        404: {"description": "Order not found"},
    },
)
async def get_booking(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> BookingStatusResponse:
    session = await orchestrator.get_session(
        order_id, None if user.is_admin else user.user_id
    )
    return BookingStatusResponse.from_session(session)
