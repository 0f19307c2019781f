"""Refund request endpoints.

Members request partial or full refunds of a completed payment; an admin
approves (money goes back through the provider) or rejects them.
"""

from fastapi import APIRouter, Depends
from starlette.status import HTTP_201_CREATED

from coop_api.dependencies import get_refund_service, get_reservation_repository
from coop_api.models.reservations import (
    RefundCreateRequest,
    RefundRejectRequest,
    RefundResponse,
)
from coop_api.security import CurrentUser, get_current_user, require_admin
from coop_booking.models.errors import AccessError, ErrorCode, NotFoundError
from coop_booking.services.refund_policy_service import RefundPolicyService
from coop_booking.services.refund_service import RefundService
from coop_booking.services.reservation_repository import ReservationRepository

router = APIRouter(tags=["refunds"])


@router.get("/refunds/policy", summary="Refund policy tiers")
async def get_refund_policy() -> dict[str, str]:
    return {"policy": RefundPolicyService().get_policy_description()}


@router.post(
    "/refunds",
    summary="Request a refund",
    response_model=RefundResponse,
    status_code=HTTP_201_CREATED,
    responses={
        400: {"description": "Payment not completed or amount exceeds balance"},
        403: {"description": "Not the payer"},
        404: {"description": "Payment not found"},
    },
)
async def request_refund(
    body: RefundCreateRequest,
    user: CurrentUser = Depends(get_current_user),
    service: RefundService = Depends(get_refund_service),
) -> RefundResponse:
    refund = await service.request_refund(
        body.payment_id, body.amount, body.reason, user.user_id, is_admin=user.is_admin
    )
    return RefundResponse.from_refund(refund)


@router.get(
    "/refunds/{refund_id}",
    summary="Get refund request",
    response_model=RefundResponse,
)
async def get_refund(
    refund_id: str,
    user: CurrentUser = Depends(get_current_user),
    repository: ReservationRepository = Depends(get_reservation_repository),
) -> RefundResponse:
    refund = await repository.get_refund(refund_id)
    if refund is None:
        raise NotFoundError(ErrorCode.REFUND_NOT_FOUND, details={"refund_id": refund_id})
    if refund.user_id != user.user_id and not user.is_admin:
        raise AccessError(details={"refund_id": refund_id})
    return RefundResponse.from_refund(refund)


@router.post(
    "/admin/refunds/{refund_id}/approve",
    summary="Approve refund (admin)",
    response_model=RefundResponse,
    responses={
        400: {"description": "Refund is not pending"},
        503: {"description": "Provider cancel failed; refund stays pending"},
    },
)
async def approve_refund(
    refund_id: str,
    admin: CurrentUser = Depends(require_admin),
    service: RefundService = Depends(get_refund_service),
) -> RefundResponse:
    refund = await service.approve_refund(refund_id, admin.user_id)
    return RefundResponse.from_refund(refund)


@router.post(
    "/admin/refunds/{refund_id}/reject",
    summary="Reject refund (admin)",
    response_model=RefundResponse,
)
async def reject_refund(
    refund_id: str,
    body: RefundRejectRequest,
    admin: CurrentUser = Depends(require_admin),
    service: RefundService = Depends(get_refund_service),
) -> RefundResponse:
    refund = await service.reject_refund(refund_id, admin.user_id, body.reason)
    return RefundResponse.from_refund(refund)
