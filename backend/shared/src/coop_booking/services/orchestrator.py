"""Reservation orchestrator: the booking state machine.

A booking moves through

    draft -> price_locked -> slot_reserved -> payment_initiated
          -> payment_approved -> committed -> cancelled

with a ``rolled_back`` edge from every state between price_locked and
payment_approved. Every transition is a conditional write on the
booking-sessions row keyed by order_id, so a page reload, a duplicate
provider callback or a crashed worker resumes from the persisted state
instead of starting over.

Compensation rule: a booking is only reported as failed after its slot
has been released and its payment row finalized.
"""

import datetime as dt
import json
import logging
import re
import secrets
import uuid
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel

from ..config import Settings, get_settings
from ..gateways import (
    AmountMismatchError,
    OrderMismatchError,
    PaymentGateway,
    get_payment_gateway,
)
from ..models.booking import (
    SWEEPABLE_STATES,
    BookingRequest,
    BookingSession,
    BookingStarted,
    PaymentCallback,
    can_transition,
)
from ..models.enums import (
    BookingState,
    PaymentProvider,
    PaymentStatus,
    ProgramStatus,
    RefundStatus,
    ReservationStatus,
    TransactionStatus,
)
from ..models.errors import (
    AccessError,
    BookingError,
    BookingValidationError,
    CapacityError,
    ErrorCode,
    NotFoundError,
    PaymentError,
    PaymentErrorReason,
    PersistenceError,
)
from ..models.notification import (
    payment_completed,
    reservation_cancelled,
    reservation_confirmed,
)
from ..models.payment import ApprovedPayment, OrderMeta, Payment, Refund
from ..models.program import Program
from ..models.reservation import Reservation
from ..utils.clock import Clock, utc_now
from ..utils.logging import log_payment_operation
from .capacity import CapacityGuard
from .catalog import CatalogStore
from .notification_service import NotificationDispatcher, Recipient
from .pricing import PricingEngine
from .refund_policy_service import RefundCalculation, RefundPolicyService
from .reservation_repository import ReservationRepository

logger = logging.getLogger(__name__)

# Program dates and refund tiers are counted in Korean local time
KST = dt.timezone(dt.timedelta(hours=9), name="KST")

_ORDER_ID_UNSAFE = re.compile(r"[^A-Za-z0-9]")

CANCELLABLE_STATUSES = (ReservationStatus.CONFIRMED, ReservationStatus.REGISTERED)


def generate_order_id(user_id: str, program_id: str, now: dt.datetime) -> str:
    """Build a provider-safe order ID: ``ORDER_{ms}_{user}_{program}_{random}``.

    Only ``[A-Za-z0-9_]`` is used and the result stays within the 64
    characters both providers accept.
    """
    user_part = _ORDER_ID_UNSAFE.sub("", user_id)[:8] or "user"
    program_part = _ORDER_ID_UNSAFE.sub("", program_id)[:8] or "program"
    millis = int(now.timestamp() * 1000)
    return f"ORDER_{millis}_{user_part}_{program_part}_{secrets.token_hex(4)}"


class CancellationResult(BaseModel):
    """Outcome of cancelling a committed reservation."""

    reservation: Reservation
    refund: Refund | None = None
    policy: dict[str, Any]


class ReservationOrchestrator:
    """Coordinates pricing, capacity, payment and persistence for bookings."""

    def __init__(
        self,
        catalog: CatalogStore,
        capacity: CapacityGuard,
        pricing: PricingEngine,
        repository: ReservationRepository,
        notifier: NotificationDispatcher,
        settings: Settings | None = None,
        gateway_factory: Callable[[PaymentProvider], PaymentGateway] = get_payment_gateway,
        refund_policy: RefundPolicyService | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._catalog = catalog
        self._capacity = capacity
        self._pricing = pricing
        self._repo = repository
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._gateway_factory = gateway_factory
        self._refund_policy = refund_policy or RefundPolicyService()
        self._clock = clock

    # Queries

    async def get_session(self, order_id: str, user_id: str | None = None) -> BookingSession:
        """Load a booking session, optionally checking its owner.

        Raises:
            NotFoundError: ORDER_NOT_FOUND
            AccessError: the session belongs to another user
        """
        session = await self._repo.get_session(order_id)
        if session is None:
            raise NotFoundError(ErrorCode.ORDER_NOT_FOUND, details={"order_id": order_id})
        if user_id is not None and session.user_id != user_id:
            raise AccessError(details={"order_id": order_id})
        return session

    # Step 1 + 2: participant info, price lock, slot, payment handoff

    async def start_booking(self, request: BookingRequest) -> BookingStarted:
        """Start (or resume) a booking up to the provider widget handoff.

        Args:
            request: Participant info, program and optional order to resume

        Returns:
            BookingStarted with the persisted session and the widget handoff

        Raises:
            BookingValidationError: program not open, price changed, expired
            CapacityError: program full (session rolled back, no payment row)
            PersistenceError: RESERVATION_EXISTS if the user already holds
                an active reservation for the program
            PaymentError: provider credentials unavailable
        """
        if request.order_id:
            session = await self.get_session(request.order_id, request.user_id)
            if session.program_id != request.program_id:
                raise BookingValidationError(
                    ErrorCode.VALIDATION_FAILED,
                    details={"order_id": request.order_id, "program_id": request.program_id},
                )
            program = await self._catalog.get_program(session.program_id)
            return await self._advance(session, program, resumed=True)

        now = self._clock()
        program = await self._catalog.get_program(request.program_id)
        self._check_bookable(program, now)

        quote = self._pricing.quote(program, now)
        if request.expected_amount is not None and request.expected_amount != quote.amount:
            logger.info(
                "Price changed for program %s: shown=%d quoted=%d",
                program.program_id,
                request.expected_amount,
                quote.amount,
            )
            raise BookingValidationError(
                ErrorCode.PRICE_CHANGED,
                details={
                    "expected_amount": str(request.expected_amount),
                    "amount": str(quote.amount),
                },
            )

        if await self._repo.get_claim(program.program_id, request.user_id):
            raise PersistenceError(
                ErrorCode.RESERVATION_EXISTS,
                details={"program_id": program.program_id},
                transient=False,
            )

        # Draft -> PriceLocked: the quote is captured here and never recomputed
        session = BookingSession(
            order_id=generate_order_id(request.user_id, program.program_id, now),
            user_id=request.user_id,
            program_id=program.program_id,
            provider=request.provider or self._settings.default_payment_provider,
            state=BookingState.PRICE_LOCKED,
            participant=request.participant,
            amount=quote.amount,
            is_early_bird=quote.is_early_bird,
            quoted_at=quote.quoted_at,
            created_at=now,
            updated_at=now,
            expires_at=now + dt.timedelta(minutes=self._settings.payment_timeout_minutes),
        )
        if not await self._repo.create_session(session):
            raise PersistenceError(
                ErrorCode.STORE_CONFLICT, details={"order_id": session.order_id}
            )
        log_payment_operation(
            logger,
            "price_locked",
            order_id=session.order_id,
            amount=session.amount,
            early_bird=session.is_early_bird,
        )
        return await self._advance(session, program, resumed=False)

    async def _advance(
        self, session: BookingSession, program: Program, resumed: bool
    ) -> BookingStarted:
        """Drive a session forward to PAYMENT_INITIATED."""
        if session.state == BookingState.PRICE_LOCKED:
            session = await self._reserve_slot(session)

        if session.state == BookingState.SLOT_RESERVED:
            return await self._initiate_payment(session, program, resumed)

        if session.state == BookingState.PAYMENT_INITIATED:
            if session.is_expired(self._clock()):
                await self._rollback(session, ErrorCode.BOOKING_EXPIRED, "payment window expired")
                raise BookingValidationError(
                    ErrorCode.BOOKING_EXPIRED, details={"order_id": session.order_id}
                )
            # Same order, same pending payment: only the handoff is rebuilt
            handoff = await self._gateway(session).initiate(
                session.order_id, session.amount, self._order_meta(session, program)
            )
            logger.info("Resumed booking %s at payment step", session.order_id)
            return BookingStarted(session=session, handoff=handoff, resumed=True)

        raise self._state_error(session)

    async def _reserve_slot(self, session: BookingSession) -> BookingSession:
        try:
            await self._capacity.reserve_slot(
                session.program_id, session.order_id, session.user_id
            )
        except BookingError as e:
            await self._rollback(session, e.code, e.message)
            raise
        except Exception as e:
            logger.exception("Slot reservation failed for %s", session.order_id)
            await self._rollback(session, ErrorCode.STORE_UNAVAILABLE, str(e))
            raise PersistenceError(details={"order_id": session.order_id}) from e

        moved = await self._move(
            session, BookingState.SLOT_RESERVED, {"slot_reserved": True}
        )
        logger.info("Slot reserved for %s", session.order_id)
        return moved

    async def _initiate_payment(
        self, session: BookingSession, program: Program, resumed: bool
    ) -> BookingStarted:
        now = self._clock()
        try:
            handoff = await self._gateway(session).initiate(
                session.order_id, session.amount, self._order_meta(session, program)
            )
            payment = await self._repo.get_payment(session.order_id)
            if payment is None:
                payment = await self._repo.save_payment(
                    Payment(
                        payment_id=str(uuid.uuid4()),
                        order_id=session.order_id,
                        user_id=session.user_id,
                        program_id=session.program_id,
                        amount=session.amount,
                        currency=self._settings.currency,
                        status=TransactionStatus.PENDING,
                        provider=session.provider,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except BookingError as e:
            await self._rollback(session, e.code, e.message)
            raise
        except Exception as e:
            logger.exception("Payment initiation failed for %s", session.order_id)
            await self._rollback(session, ErrorCode.PAYMENT_PROVIDER_ERROR, str(e))
            raise PaymentError(
                PaymentErrorReason.PROVIDER_ERROR, details={"order_id": session.order_id}
            ) from e

        moved = await self._move(
            session, BookingState.PAYMENT_INITIATED, {"payment_id": payment.payment_id}
        )
        log_payment_operation(
            logger,
            "initiate",
            order_id=session.order_id,
            payment_id=payment.payment_id,
            amount=session.amount,
            status=TransactionStatus.PENDING.value,
            provider=session.provider.value,
        )
        return BookingStarted(session=moved, handoff=handoff, resumed=resumed)

    # Provider callback -> approval -> commit

    async def confirm_payment(
        self, callback: PaymentCallback, user_id: str | None = None
    ) -> Reservation:
        """Approve a payment server-side and commit the reservation.

        The callback is untrusted: the approved amount is checked against
        the locked quote, never against the callback's amount alone.
        Calling this again for a committed order returns the same
        reservation.

        Raises:
            NotFoundError: unknown order
            BookingValidationError: BOOKING_EXPIRED or INVALID_STATE
            PaymentError: declined or provider amount mismatch (rolled back);
                transaction of another order (session unchanged); timeout
                or in progress (retryable, session left in payment_initiated)
            CapacityError: the slot was lost and the program filled up
            PersistenceError: store failure after approval; the order is
                left for reconciliation
        """
        session = await self.get_session(callback.order_id, user_id)

        if session.state == BookingState.COMMITTED:
            return await self._existing_reservation(session)
        if session.state == BookingState.PAYMENT_APPROVED:
            session = await self.reconcile_order(session.order_id)
            if session.state == BookingState.COMMITTED:
                return await self._existing_reservation(session)
            raise self._state_error(session)
        if session.state != BookingState.PAYMENT_INITIATED:
            raise self._state_error(session)

        now = self._clock()
        if session.is_expired(now):
            await self._rollback(session, ErrorCode.BOOKING_EXPIRED, "payment window expired")
            raise BookingValidationError(
                ErrorCode.BOOKING_EXPIRED, details={"order_id": session.order_id}
            )

        if callback.amount != session.amount:
            # Only the provider can confirm what was charged; approve asks
            # for the locked amount
            logger.error(
                "SECURITY: callback amount %d differs from locked amount %d for %s",
                callback.amount,
                session.amount,
                session.order_id,
            )

        token = uuid.uuid4().hex
        if not await self._repo.claim_approval(
            session.order_id, token, callback.transaction_id, now
        ):
            current = await self.get_session(session.order_id)
            if current.state == BookingState.COMMITTED:
                return await self._existing_reservation(current)
            raise PaymentError(
                PaymentErrorReason.IN_PROGRESS, details={"order_id": session.order_id}
            )

        gateway = self._gateway(session)
        try:
            approved = await gateway.approve(
                callback.transaction_id, session.order_id, session.amount
            )
        except OrderMismatchError as e:
            logger.error(
                "SECURITY: transaction %s belongs to order %s, not %s",
                callback.transaction_id,
                e.provider_order_id,
                session.order_id,
            )
            await self._repo.release_approval(session.order_id, token, forget_transaction=True)
            raise
        except AmountMismatchError as e:
            logger.error(
                "SECURITY: provider approved %s for %s, locked amount is %d",
                e.reported_amount,
                session.order_id,
                session.amount,
            )
            if e.approved is not None:
                refunded = await self._cancel_captured(
                    session, e.approved.transaction_id, e.approved.amount, "amount mismatch"
                )
                if not refunded:
                    await self._repo.release_approval(session.order_id, token)
                    raise
            await self._rollback(
                session,
                ErrorCode.PAYMENT_AMOUNT_MISMATCH,
                f"approved amount {e.reported_amount}",
                payment_status=(
                    TransactionStatus.CANCELLED
                    if e.approved is not None
                    else TransactionStatus.FAILED
                ),
            )
            raise
        except PaymentError as e:
            if e.retryable:
                await self._repo.release_approval(session.order_id, token)
                log_payment_operation(
                    logger, "approve", order_id=session.order_id, error=e.reason.value
                )
                raise
            await self._rollback(
                session, e.code, f"{e.reason.value}: {e.provider_code or e.message}"
            )
            raise
        except Exception as e:
            # Outcome unknown; reconciliation decides from the provider's view
            logger.exception("Approval failed unexpectedly for %s", session.order_id)
            await self._repo.release_approval(session.order_id, token)
            raise PaymentError(
                PaymentErrorReason.PROVIDER_ERROR, details={"order_id": session.order_id}
            ) from e

        log_payment_operation(
            logger,
            "approve",
            order_id=session.order_id,
            payment_id=session.payment_id,
            amount=approved.amount,
            status=TransactionStatus.COMPLETED.value,
        )
        moved = await self._repo.transition_session(
            session.order_id,
            [BookingState.PAYMENT_INITIATED],
            BookingState.PAYMENT_APPROVED,
            self._clock(),
            {"transaction_id": approved.transaction_id},
            ("approval_token",),
        )
        if moved is None:
            # Rolled back (e.g. by the sweep) while the provider was approving
            await self._cancel_captured(
                session, approved.transaction_id, approved.amount, "booking expired"
            )
            raise BookingValidationError(
                ErrorCode.BOOKING_EXPIRED, details={"order_id": session.order_id}
            )
        return await self._commit(moved, approved)

    async def _commit(self, session: BookingSession, approved: ApprovedPayment) -> Reservation:
        """PAYMENT_APPROVED -> COMMITTED in one store transaction."""
        reservation = Reservation(
            reservation_id=str(uuid.uuid4()),
            program_id=session.program_id,
            user_id=session.user_id,
            order_id=session.order_id,
            participant=session.participant,
            amount_paid=session.amount,
            is_early_bird=session.is_early_bird,
            status=ReservationStatus.CONFIRMED,
            payment_status=PaymentStatus.PAID,
            created_at=self._clock(),
        )
        if await self._write_commit(session, reservation, approved):
            return await self._after_commit(session, reservation)

        current = await self.get_session(session.order_id)
        if current.state == BookingState.COMMITTED:
            return await self._existing_reservation(current)
        if current.state != BookingState.PAYMENT_APPROVED:
            await self._cancel_captured(
                session, approved.transaction_id, approved.amount, "booking expired"
            )
            raise self._state_error(current)

        claim = await self._repo.get_claim(session.program_id, session.user_id)
        if claim and claim.get("order_id") != session.order_id:
            logger.warning(
                "User %s already holds program %s through %s",
                session.user_id,
                session.program_id,
                claim.get("order_id"),
            )
            await self._refund_and_rollback(session, approved, ErrorCode.RESERVATION_EXISTS)
            raise PersistenceError(
                ErrorCode.RESERVATION_EXISTS,
                details={"program_id": session.program_id},
                transient=False,
            )

        hold = await self._capacity.get_hold(session.order_id)
        if hold is None or hold.get("released", False):
            # The hold was lost; capacity is checked again before committing
            logger.warning("Hold for %s was released, reserving again", session.order_id)
            try:
                await self._capacity.reserve_slot(
                    session.program_id, session.order_id, session.user_id
                )
            except CapacityError:
                await self._refund_and_rollback(session, approved, ErrorCode.PROGRAM_FULL)
                raise
            if await self._write_commit(session, reservation, approved):
                return await self._after_commit(session, reservation)
            # Still not committable, e.g. the payment row was finalized by a
            # concurrent rollback: give the slot back and return the charge
            logger.error("Commit of %s failed after reserving again", session.order_id)
            await self._capacity.release_slot(
                session.program_id, session.order_id, reason=ErrorCode.STORE_CONFLICT.value
            )
            await self._refund_and_rollback(session, approved, ErrorCode.STORE_CONFLICT)
            raise PersistenceError(
                ErrorCode.STORE_CONFLICT, details={"order_id": session.order_id}, transient=False
            )

        raise PersistenceError(
            ErrorCode.STORE_CONFLICT, details={"order_id": session.order_id}
        )

    async def _write_commit(
        self, session: BookingSession, reservation: Reservation, approved: ApprovedPayment
    ) -> bool:
        now = self._clock()
        payment_updates: dict[str, Any] = {
            "transaction_id": approved.transaction_id,
            "approved_at": approved.approved_at.isoformat(),
            "raw_data": json.dumps(approved.payload.raw, ensure_ascii=False),
        }
        if approved.method is not None:
            payment_updates["payment_method"] = approved.method.value
        return await self._repo.commit_booking(
            session,
            reservation,
            payment_updates,
            self._capacity.commit_hold_entry(session.order_id, now),
            now,
        )

    async def _after_commit(
        self, session: BookingSession, reservation: Reservation
    ) -> Reservation:
        log_payment_operation(
            logger,
            "commit",
            order_id=session.order_id,
            payment_id=session.payment_id,
            reservation_id=reservation.reservation_id,
            amount=reservation.amount_paid,
            status=ReservationStatus.CONFIRMED.value,
        )
        try:
            program = await self._catalog.get_program(session.program_id)
            recipient = Recipient(
                email=session.participant.email, phone=session.participant.phone
            )
            self._notifier.dispatch(
                session.user_id,
                reservation_confirmed(program.title, program.start_date.astimezone(KST)),
                recipient,
            )
            self._notifier.dispatch(
                session.user_id, payment_completed(program.title, session.amount), recipient
            )
        except Exception as e:
            logger.error("Could not schedule notifications for %s: %s", session.order_id, e)
        return reservation

    async def fail_payment(
        self,
        order_id: str,
        code: str | None = None,
        message: str | None = None,
        user_id: str | None = None,
    ) -> BookingSession:
        """Handle the provider's fail redirect (declined or abandoned widget).

        Idempotent for sessions that already reached a terminal state.

        Raises:
            PaymentError: IN_PROGRESS while an approval is running
        """
        session = await self.get_session(order_id, user_id)
        if session.is_terminal:
            return session
        if session.state == BookingState.PAYMENT_APPROVED:
            # Money may be captured; only the provider's view decides
            return await self.reconcile_order(order_id)
        if session.approval_token:
            raise PaymentError(PaymentErrorReason.IN_PROGRESS, details={"order_id": order_id})

        reason = ": ".join(part for part in (code, message) if part) or "payment failed"
        rolled = await self._rollback(session, ErrorCode.PAYMENT_DECLINED, reason)
        return rolled or await self.get_session(order_id)

    # Cancellation

    async def cancel_reservation(
        self,
        reservation_id: str,
        actor_id: str,
        reason: str,
        is_admin: bool = False,
        refund_amount: int | None = None,
    ) -> CancellationResult:
        """Cancel a committed reservation, refund per policy and free the slot.

        Args:
            reservation_id: Reservation to cancel
            actor_id: User requesting the cancellation
            reason: Cancellation reason
            is_admin: Admins may cancel any reservation
            refund_amount: Admin override of the policy refund

        Raises:
            NotFoundError: unknown reservation
            AccessError: not the owner, or a non-admin overriding the refund
            BookingValidationError: not cancellable, or override out of range
            PaymentError: provider cancel failed (nothing was changed)
        """
        reservation = await self._repo.get_reservation(reservation_id)
        if reservation is None:
            raise NotFoundError(
                ErrorCode.RESERVATION_NOT_FOUND, details={"reservation_id": reservation_id}
            )
        if reservation.user_id != actor_id and not is_admin:
            raise AccessError(details={"reservation_id": reservation_id})
        if reservation.status not in CANCELLABLE_STATUSES:
            raise BookingValidationError(
                ErrorCode.RESERVATION_NOT_CANCELLABLE,
                details={"reservation_id": reservation_id, "status": reservation.status.value},
            )

        program = await self._catalog.get_program(reservation.program_id)
        payment = await self._repo.get_payment(reservation.order_id)
        now = self._clock()

        policy: RefundCalculation = self._refund_policy.calculate_refund_amount(
            reservation.amount_paid,
            program.start_date.astimezone(KST).date(),
            now.astimezone(KST).date(),
        )
        refundable = (
            payment.refundable_amount
            if payment is not None and payment.status == TransactionStatus.COMPLETED
            else 0
        )
        amount = min(policy["refund_amount"], refundable)
        if refund_amount is not None:
            if not is_admin:
                raise AccessError(details={"reservation_id": reservation_id})
            if refund_amount < 0 or refund_amount > refundable:
                raise BookingValidationError(
                    ErrorCode.REFUND_EXCEEDS_BALANCE,
                    details={"amount": str(refund_amount), "refundable": str(refundable)},
                )
            amount = refund_amount

        refund = None
        if amount > 0 and payment is not None:
            cancelled = await self._gateway_factory(payment.provider).cancel(
                payment.transaction_id or "", payment.order_id, amount, reason
            )
            refund = Refund(
                refund_id=str(uuid.uuid4()),
                payment_id=payment.payment_id,
                order_id=payment.order_id,
                user_id=reservation.user_id,
                amount=amount,
                reason=reason,
                status=RefundStatus.COMPLETED,
                requested_by=actor_id,
                processed_by=actor_id,
                raw_data=cancelled.payload.raw,
                created_at=now,
                processed_at=now,
            )

        release = self._capacity.release_entries(
            reservation.program_id, reservation.order_id, now, "cancelled", committed=True
        )
        if not await self._repo.cancel_booking(reservation, refund, release, now, reason):
            current = await self._repo.get_reservation(reservation_id)
            if refund is not None:
                logger.error(
                    "Refund of %d issued for %s but cancellation was not recorded",
                    amount,
                    reservation_id,
                )
            if current is not None and current.status == ReservationStatus.CANCELLED:
                raise BookingValidationError(
                    ErrorCode.RESERVATION_NOT_CANCELLABLE,
                    details={"reservation_id": reservation_id, "status": current.status.value},
                )
            raise PersistenceError(
                ErrorCode.STORE_CONFLICT, details={"reservation_id": reservation_id}
            )

        await self._capacity.sync_status(reservation.program_id)
        log_payment_operation(
            logger,
            "cancel",
            order_id=reservation.order_id,
            payment_id=payment.payment_id if payment else None,
            reservation_id=reservation_id,
            amount=amount,
            status=ReservationStatus.CANCELLED.value,
        )
        self._notifier.dispatch(
            reservation.user_id,
            reservation_cancelled(program.title, reason, amount),
            Recipient(email=reservation.participant.email, phone=reservation.participant.phone),
        )
        updated = await self._repo.get_reservation(reservation_id)
        return CancellationResult(
            reservation=updated or reservation, refund=refund, policy=dict(policy)
        )

    # Reconciliation

    async def reconcile_order(self, order_id: str) -> BookingSession:
        """Settle an order from the provider's view of its payment.

        Used by the stale-session sweep and by webhooks. A session left in
        payment_initiated/payment_approved is committed if the provider
        holds an approved charge for the locked amount, and rolled back if
        the provider never approved it (once the payment window has passed).

        Returns:
            The session after reconciliation.
        """
        session = await self.get_session(order_id)
        now = self._clock()

        if session.state == BookingState.COMMITTED:
            await self._check_committed(session)
            return session
        if session.is_terminal:
            return session

        if session.state in (BookingState.PRICE_LOCKED, BookingState.SLOT_RESERVED):
            # No provider payment was ever requested
            if session.is_expired(now):
                await self._rollback(session, ErrorCode.BOOKING_EXPIRED, "abandoned before payment")
            return await self.get_session(order_id)

        gateway = self._gateway(session)
        transaction_id = session.transaction_id
        status = await gateway.get_status(order_id, transaction_id)
        if status.order_id != order_id:
            # The recorded transaction id came from a callback; ask by order
            logger.error(
                "SECURITY: transaction %s belongs to order %s, not %s",
                transaction_id,
                status.order_id,
                order_id,
            )
            transaction_id = None
            status = await gateway.get_status(order_id)
            if status.order_id != order_id:
                return session
        log_payment_operation(
            logger,
            "reconcile",
            order_id=order_id,
            amount=status.amount,
            status=status.status.value,
            state=session.state.value,
        )

        if status.status == TransactionStatus.COMPLETED:
            if status.amount is None:
                logger.warning("Provider reported no amount for %s, retrying later", order_id)
                return session
            approved = ApprovedPayment(
                transaction_id=status.transaction_id or transaction_id or "",
                order_id=order_id,
                amount=status.amount,
                method=status.method,
                approved_at=status.approved_at or now,
                payload=status.payload,
            )
            if approved.amount != session.amount:
                logger.error(
                    "SECURITY: provider holds %s for %s, locked amount is %d",
                    status.amount,
                    order_id,
                    session.amount,
                )
                await self._refund_and_rollback(
                    session, approved, ErrorCode.PAYMENT_AMOUNT_MISMATCH
                )
                return await self.get_session(order_id)

            if session.state == BookingState.PAYMENT_INITIATED:
                moved = await self._repo.transition_session(
                    order_id,
                    [BookingState.PAYMENT_INITIATED],
                    BookingState.PAYMENT_APPROVED,
                    now,
                    {"transaction_id": approved.transaction_id},
                    ("approval_token",),
                )
                if moved is None:
                    return await self.get_session(order_id)
                session = moved
            try:
                await self._commit(session, approved)
            except (CapacityError, PersistenceError) as e:
                logger.warning("Reconciliation of %s did not commit: %s", order_id, e.code.value)
            return await self.get_session(order_id)

        if status.status in (TransactionStatus.FAILED, TransactionStatus.CANCELLED):
            await self._rollback(
                session,
                ErrorCode.PAYMENT_DECLINED,
                f"provider status {status.status.value}",
                payment_status=status.status,
            )
        elif session.is_expired(now):
            await self._rollback(session, ErrorCode.BOOKING_EXPIRED, "never approved")
        return await self.get_session(order_id)

    async def sweep_stale_sessions(self, now: dt.datetime | None = None) -> dict[str, int]:
        """Reconcile every non-terminal session past its payment window.

        Returns:
            Counts of checked sessions and their outcome.
        """
        now = now or self._clock()
        counts = {"checked": 0, "committed": 0, "rolled_back": 0, "pending": 0, "errors": 0}
        for state in SWEEPABLE_STATES:
            for session in await self._repo.list_expired_sessions(state, now):
                counts["checked"] += 1
                try:
                    result = await self.reconcile_order(session.order_id)
                except BookingError as e:
                    logger.warning("Sweep of %s failed: %s", session.order_id, e.code.value)
                    counts["errors"] += 1
                    continue
                except Exception:
                    logger.exception("Sweep of %s failed", session.order_id)
                    counts["errors"] += 1
                    continue
                if result.state == BookingState.COMMITTED:
                    counts["committed"] += 1
                elif result.state == BookingState.ROLLED_BACK:
                    counts["rolled_back"] += 1
                else:
                    counts["pending"] += 1
        logger.info("Stale session sweep: %s", counts)
        return counts

    # Compensation

    async def _rollback(
        self,
        session: BookingSession,
        code: ErrorCode,
        reason: str,
        payment_status: TransactionStatus = TransactionStatus.FAILED,
    ) -> BookingSession | None:
        """Release the slot, finalize the payment row, then mark the session.

        Each step is idempotent, so a rollback interrupted by a store error
        is completed by the next sweep.
        """
        now = self._clock()
        await self._capacity.release_slot(
            session.program_id, session.order_id, reason=code.value
        )
        await self._repo.finalize_payment(session.order_id, payment_status, now, reason)
        rolled = await self._repo.transition_session(
            session.order_id,
            SWEEPABLE_STATES,
            BookingState.ROLLED_BACK,
            now,
            {"failure_code": code.value, "failure_reason": reason[:500]},
            ("approval_token",),
        )
        log_payment_operation(
            logger,
            "rollback",
            order_id=session.order_id,
            payment_id=session.payment_id,
            amount=session.amount,
            status=payment_status.value,
            failure_code=code.value,
        )
        return rolled

    async def _cancel_captured(
        self, session: BookingSession, transaction_id: str, amount: int, reason: str
    ) -> bool:
        """Return a captured charge that will not become a reservation."""
        try:
            await self._gateway(session).cancel(transaction_id, session.order_id, amount, reason)
        except PaymentError as e:
            log_payment_operation(
                logger,
                "cancel_captured",
                order_id=session.order_id,
                amount=amount,
                error=f"{e.reason.value} {e.provider_code or ''}".strip(),
            )
            return False
        log_payment_operation(
            logger, "cancel_captured", order_id=session.order_id, amount=amount, reason=reason
        )
        return True

    async def _refund_and_rollback(
        self, session: BookingSession, approved: ApprovedPayment, code: ErrorCode
    ) -> None:
        if not await self._cancel_captured(
            session, approved.transaction_id, approved.amount, code.value
        ):
            # Keep the session for the next reconciliation rather than
            # rolling back while the provider still holds the money
            raise PaymentError(
                PaymentErrorReason.PROVIDER_ERROR, details={"order_id": session.order_id}
            )
        await self._rollback(
            session, code, "captured charge returned", payment_status=TransactionStatus.CANCELLED
        )

    # Helpers

    async def _check_committed(self, session: BookingSession) -> None:
        try:
            status = await self._gateway(session).get_status(
                session.order_id, session.transaction_id
            )
        except PaymentError as e:
            logger.warning("Status check of %s failed: %s", session.order_id, e.reason.value)
            return
        if status.status == TransactionStatus.CANCELLED:
            logger.error(
                "ANOMALY: order %s is committed but cancelled at %s",
                session.order_id,
                session.provider.value,
            )

    async def _existing_reservation(self, session: BookingSession) -> Reservation:
        reservation = (
            await self._repo.get_reservation(session.reservation_id)
            if session.reservation_id
            else None
        )
        if reservation is None:
            raise NotFoundError(
                ErrorCode.RESERVATION_NOT_FOUND, details={"order_id": session.order_id}
            )
        return reservation

    async def _move(
        self,
        session: BookingSession,
        target: BookingState,
        set_fields: dict[str, Any] | None = None,
    ) -> BookingSession:
        if not can_transition(session.state, target):
            raise self._state_error(session)
        moved = await self._repo.transition_session(
            session.order_id, [session.state], target, self._clock(), set_fields
        )
        if moved is None:
            current = await self.get_session(session.order_id)
            raise self._state_error(current)
        return moved

    def _check_bookable(self, program: Program, now: dt.datetime) -> None:
        if program.status == ProgramStatus.FULL:
            raise CapacityError(program.program_id)
        if program.status != ProgramStatus.OPEN or now >= program.start_date:
            raise BookingValidationError(
                ErrorCode.PROGRAM_NOT_OPEN,
                details={"program_id": program.program_id, "status": program.status.value},
            )

    def _gateway(self, session: BookingSession) -> PaymentGateway:
        return self._gateway_factory(session.provider)

    def _order_meta(self, session: BookingSession, program: Program) -> OrderMeta:
        site = self._settings.site_url.rstrip("/")
        success_path = (
            "/api/payments/toss/success"
            if session.provider == PaymentProvider.TOSS
            else "/api/payments/nicepay/return"
        )
        return OrderMeta(
            order_name=program.title[:100],
            customer_name=session.participant.name,
            customer_email=session.participant.email,
            customer_phone=session.participant.phone,
            success_url=f"{site}{success_path}",
            fail_url=f"{site}/payments/failure?orderId={session.order_id}",
        )

    @staticmethod
    def _state_error(session: BookingSession) -> BookingValidationError:
        code = (
            ErrorCode.BOOKING_EXPIRED
            if session.state == BookingState.ROLLED_BACK
            else ErrorCode.INVALID_STATE
        )
        return BookingValidationError(
            code, details={"order_id": session.order_id, "state": session.state.value}
        )
