"""Refund requests against completed payments.

A refund request is created ``pending`` by the payer (or an admin) and
is approved or rejected by an admin. Approval cancels the refund amount
at the provider before the refund row is completed.
"""

import json
import logging
import uuid
from collections.abc import Callable

from ..gateways import PaymentGateway, get_payment_gateway
from ..models.enums import PaymentProvider, RefundStatus, TransactionStatus
from ..models.errors import (
    AccessError,
    BookingValidationError,
    ErrorCode,
    NotFoundError,
    PersistenceError,
)
from ..models.payment import Payment, Refund
from ..utils.clock import Clock, utc_now
from ..utils.logging import log_payment_operation
from .reservation_repository import ReservationRepository

logger = logging.getLogger(__name__)

# Refunds that count against the refundable balance
OUTSTANDING_REFUND_STATUSES = (
    RefundStatus.PENDING,
    RefundStatus.APPROVED,
    RefundStatus.COMPLETED,
)


class RefundService:
    """Request, approve and reject refunds."""

    def __init__(
        self,
        repository: ReservationRepository,
        gateway_factory: Callable[[PaymentProvider], PaymentGateway] = get_payment_gateway,
        clock: Clock = utc_now,
    ) -> None:
        self._repo = repository
        self._gateway_factory = gateway_factory
        self._clock = clock

    async def refundable_balance(self, payment: Payment) -> int:
        """Paid amount minus every pending, approved or completed refund."""
        refunds = await self._repo.list_refunds_for_payment(payment.payment_id)
        reserved = sum(r.amount for r in refunds if r.status in OUTSTANDING_REFUND_STATUSES)
        return payment.amount - reserved

    async def request_refund(
        self,
        payment_id: str,
        amount: int,
        reason: str,
        requested_by: str,
        is_admin: bool = False,
    ) -> Refund:
        """Create a pending refund request.

        Args:
            payment_id: Payment to refund
            amount: Requested amount in KRW
            reason: Free-text reason
            requested_by: User ID of the requester
            is_admin: Admins may request refunds for any payment

        Returns:
            The pending Refund

        Raises:
            NotFoundError: unknown payment
            AccessError: requester is not the payer
            BookingValidationError: payment not completed or amount out of range
        """
        payment = await self._repo.get_payment_by_id(payment_id)
        if payment is None:
            raise NotFoundError(ErrorCode.ORDER_NOT_FOUND, details={"payment_id": payment_id})
        if payment.user_id != requested_by and not is_admin:
            raise AccessError(details={"payment_id": payment_id})
        if payment.status != TransactionStatus.COMPLETED:
            raise BookingValidationError(
                ErrorCode.INVALID_STATE,
                details={"payment_id": payment_id, "status": payment.status.value},
            )
        if not reason.strip():
            raise BookingValidationError(details={"reason": "A refund reason is required"})

        balance = await self.refundable_balance(payment)
        if amount <= 0 or amount > balance:
            raise BookingValidationError(
                ErrorCode.REFUND_EXCEEDS_BALANCE,
                details={"amount": str(amount), "refundable": str(balance)},
            )

        refund = Refund(
            refund_id=str(uuid.uuid4()),
            payment_id=payment.payment_id,
            order_id=payment.order_id,
            user_id=payment.user_id,
            amount=amount,
            reason=reason.strip(),
            status=RefundStatus.PENDING,
            requested_by=requested_by,
            created_at=self._clock(),
        )
        await self._repo.save_refund(refund)
        logger.info(
            "Refund %s requested: payment=%s amount=%d", refund.refund_id, payment_id, amount
        )
        return refund

    async def approve_refund(self, refund_id: str, admin_id: str) -> Refund:
        """Approve a pending refund and return the money through the provider.

        The refund is first moved to ``approved`` so that two admins cannot
        both trigger the provider cancel. If the provider call fails the
        refund goes back to ``pending``.

        Raises:
            NotFoundError: unknown refund or payment
            BookingValidationError: INVALID_STATE if not pending
            PaymentError: provider cancel failed
        """
        refund = await self._get_refund(refund_id)
        payment = await self._repo.get_payment_by_id(refund.payment_id)
        if payment is None:
            raise NotFoundError(
                ErrorCode.ORDER_NOT_FOUND, details={"payment_id": refund.payment_id}
            )
        if refund.amount > payment.refundable_amount:
            raise BookingValidationError(
                ErrorCode.REFUND_EXCEEDS_BALANCE,
                details={
                    "amount": str(refund.amount),
                    "refundable": str(payment.refundable_amount),
                },
            )

        now = self._clock()
        claimed = await self._repo.update_refund_status(
            refund_id,
            RefundStatus.PENDING,
            RefundStatus.APPROVED,
            now,
            {"processed_by": admin_id},
        )
        if claimed is None:
            raise BookingValidationError(
                ErrorCode.INVALID_STATE,
                details={"refund_id": refund_id, "status": refund.status.value},
            )

        gateway = self._gateway_factory(payment.provider)
        try:
            cancelled = await gateway.cancel(
                payment.transaction_id or "",
                payment.order_id,
                refund.amount,
                refund.reason,
            )
        except Exception:
            logger.exception("Provider cancel failed for refund %s", refund_id)
            await self._repo.update_refund_status(
                refund_id, RefundStatus.APPROVED, RefundStatus.PENDING, self._clock()
            )
            raise

        applied = await self._repo.apply_refund(
            claimed,
            payment,
            payment.participant_id,
            self._clock(),
            admin_id,
            json.dumps(cancelled.payload.raw, ensure_ascii=False),
        )
        if not applied:
            # Money already went back; the rows need manual repair
            logger.error(
                "Refund %s cancelled at provider but could not be recorded", refund_id
            )
            raise PersistenceError(
                ErrorCode.STORE_CONFLICT, details={"refund_id": refund_id}, transient=False
            )

        log_payment_operation(
            logger,
            "refund",
            order_id=payment.order_id,
            payment_id=payment.payment_id,
            reservation_id=payment.participant_id,
            amount=refund.amount,
            status=RefundStatus.COMPLETED.value,
        )
        return await self._get_refund(refund_id)

    async def reject_refund(self, refund_id: str, admin_id: str, reason: str) -> Refund:
        """Reject a pending refund request.

        Raises:
            NotFoundError: unknown refund
            BookingValidationError: INVALID_STATE if not pending
        """
        refund = await self._get_refund(refund_id)
        updated = await self._repo.update_refund_status(
            refund_id,
            RefundStatus.PENDING,
            RefundStatus.REJECTED,
            self._clock(),
            {"processed_by": admin_id, "rejection_reason": reason},
        )
        if updated is None:
            raise BookingValidationError(
                ErrorCode.INVALID_STATE,
                details={"refund_id": refund_id, "status": refund.status.value},
            )
        logger.info("Refund %s rejected by %s", refund_id, admin_id)
        return updated

    async def _get_refund(self, refund_id: str) -> Refund:
        refund = await self._repo.get_refund(refund_id)
        if refund is None:
            raise NotFoundError(ErrorCode.REFUND_NOT_FOUND, details={"refund_id": refund_id})
        return refund
