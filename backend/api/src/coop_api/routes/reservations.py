"""Reservation endpoints.

- GET /reservations: the caller's reservations
- GET /reservations/{reservation_id}: one reservation (owner or admin)
- POST /reservations/{reservation_id}/cancel: cancel with policy refund
- GET /admin/programs/{program_id}/reservations: participants (admin)

Protected endpoints read the caller from the x-user-sub header.
"""

from fastapi import APIRouter, Depends

from coop_api.dependencies import get_orchestrator, get_reservation_repository
from coop_api.models.reservations import (
    CancellationRequest,
    CancellationResponse,
    RefundResponse,
    ReservationListResponse,
    ReservationResponse,
)
from coop_api.security import CurrentUser, get_current_user, require_admin
from coop_booking.models.errors import AccessError, ErrorCode, NotFoundError
from coop_booking.services.orchestrator import ReservationOrchestrator
from coop_booking.services.reservation_repository import ReservationRepository

router = APIRouter(tags=["reservations"])


@router.get(
    "/reservations",
    summary="List my reservations",
    response_model=ReservationListResponse,
)
async def list_my_reservations(
    user: CurrentUser = Depends(get_current_user),
    repository: ReservationRepository = Depends(get_reservation_repository),
) -> ReservationListResponse:
    reservations = await repository.list_reservations_for_user(user.user_id)
    reservations.sort(key=lambda r: r.created_at, reverse=True)
    return ReservationListResponse(
        reservations=[ReservationResponse.from_reservation(r) for r in reservations],
        total_count=len(reservations),
    )


@router.get(
    "/reservations/{reservation_id}",
    summary="Get reservation",
    response_model=ReservationResponse,
    responses={
        403: {"description": "Reservation belongs to another user"},
        404: {"description": "Reservation not found"},
    },
)
async def get_reservation(
    reservation_id: str,
    user: CurrentUser = Depends(get_current_user),
    repository: ReservationRepository = Depends(get_reservation_repository),
) -> ReservationResponse:
    reservation = await repository.get_reservation(reservation_id)
    if reservation is None:
        raise NotFoundError(
            ErrorCode.RESERVATION_NOT_FOUND, details={"reservation_id": reservation_id}
        )
    if reservation.user_id != user.user_id and not user.is_admin:
        raise AccessError(details={"reservation_id": reservation_id})
    return ReservationResponse.from_reservation(reservation)


@router.post(
    "/reservations/{reservation_id}/cancel",
    summary="Cancel reservation",
    description="""
Cancel a confirmed reservation, free its slot and refund per policy.

**Requires JWT authentication. Owner or admin only.**

Refund policy (days before the program starts, Korean time):
- 14 or more: 100%
- 7 to 13: 80%
- 3 to 6: 50%
- 1 to 2: 20%
- same day or later: no refund

Admins may override the refund amount up to the refundable balance.
""",
    response_model=CancellationResponse,
    responses={
        400: {"description": "Reservation not cancellable"},
        403: {"description": "Not the owner, or non-admin refund override"},
        404: {"description": "Reservation not found"},
    },
)
async def cancel_reservation(
    reservation_id: str,
    body: CancellationRequest,
    user: CurrentUser = Depends(get_current_user),
    orchestrator: ReservationOrchestrator = Depends(get_orchestrator),
) -> CancellationResponse:
    result = await orchestrator.cancel_reservation(
        reservation_id,
        user.user_id,
        body.reason,
        is_admin=user.is_admin,
        refund_amount=body.refund_amount,
    )
    return CancellationResponse(
        reservation=ReservationResponse.from_reservation(result.reservation),
        refund=RefundResponse.from_refund(result.refund) if result.refund else None,
        refund_policy=result.policy,
    )


@router.get(
    "/admin/programs/{program_id}/reservations",
    summary="List program participants (admin)",
    response_model=ReservationListResponse,
)
async def list_program_reservations(
    program_id: str,
    _: CurrentUser = Depends(require_admin),
    repository: ReservationRepository = Depends(get_reservation_repository),
) -> ReservationListResponse:
    reservations = await repository.list_reservations_for_program(program_id)
    return ReservationListResponse(
        reservations=[ReservationResponse.from_reservation(r) for r in reservations],
        total_count=len(reservations),
    )
