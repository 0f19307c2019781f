"""Reservation repository: booking sessions, payments, reservations, refunds.

Owns the row lifecycle of Reservation and Payment records. State changes
are conditional writes so a stale caller cannot move a row backwards; a
failed condition is reported as ``None``/``False`` and the caller decides
whether that means "already done" or "conflict".
"""

import datetime as dt
import logging
from collections.abc import Iterable
from typing import Any

from boto3.dynamodb.conditions import Key

from ..models.booking import BookingSession
from ..models.enums import (
    BookingState,
    PaymentStatus,
    RefundStatus,
    ReservationStatus,
    TransactionStatus,
)
from ..models.errors import ErrorCode, PersistenceError
from ..models.payment import Payment, Refund
from ..models.reservation import Reservation
from ..utils.clock import to_epoch
from .dynamodb import DynamoDBService

logger = logging.getLogger(__name__)


def claim_id(program_id: str, user_id: str) -> str:
    return f"{program_id}#{user_id}"


class ReservationRepository:
    """Data access for everything keyed by order_id or reservation_id."""

    SESSIONS_TABLE = "booking-sessions"
    PAYMENTS_TABLE = "payments"
    RESERVATIONS_TABLE = "reservations"
    CLAIMS_TABLE = "participant-claims"
    REFUNDS_TABLE = "refunds"

    def __init__(self, db: DynamoDBService) -> None:
        self.db = db

    # Booking sessions

    async def get_session(self, order_id: str) -> BookingSession | None:
        item = await self.db.run(self.db.get_item, self.SESSIONS_TABLE, {"order_id": order_id})
        return BookingSession.from_item(item) if item else None

    async def create_session(self, session: BookingSession) -> bool:
        """Persist a new session. False if the order_id is taken."""
        return await self.db.run(
            self.db.put_item,
            self.SESSIONS_TABLE,
            session.to_item(),
            "attribute_not_exists(order_id)",
        )

    async def transition_session(
        self,
        order_id: str,
        from_states: Iterable[BookingState],
        to_state: BookingState,
        now: dt.datetime,
        set_fields: dict[str, Any] | None = None,
        remove_fields: Iterable[str] = (),
    ) -> BookingSession | None:
        """Move a session to ``to_state`` if it is currently in one of ``from_states``.

        Args:
            order_id: Session key
            from_states: Accepted current states
            to_state: Target state
            now: Update timestamp
            set_fields: Extra attributes to set (JSON-compatible values)
            remove_fields: Attributes to remove

        Returns:
            The updated session, or None if the state condition failed.
        """
        names: dict[str, str] = {"#state": "state"}
        values: dict[str, Any] = {":to": to_state.value, ":now": now.isoformat()}
        sets = ["#state = :to", "updated_at = :now"]
        for i, (field, value) in enumerate((set_fields or {}).items()):
            names[f"#f{i}"] = field
            values[f":v{i}"] = value
            sets.append(f"#f{i} = :v{i}")

        from_placeholders = []
        for i, state in enumerate(from_states):
            values[f":from{i}"] = state.value
            from_placeholders.append(f":from{i}")

        expression = "SET " + ", ".join(sets)
        removes = list(remove_fields)
        if removes:
            for i, field in enumerate(removes):
                names[f"#r{i}"] = field
            expression += " REMOVE " + ", ".join(f"#r{i}" for i in range(len(removes)))

        attrs = await self.db.run(
            self.db.update_item,
            self.SESSIONS_TABLE,
            {"order_id": order_id},
            expression,
            values,
            names,
            f"#state IN ({', '.join(from_placeholders)})",
        )
        return BookingSession.from_item(attrs) if attrs else None

    async def claim_approval(
        self, order_id: str, token: str, transaction_id: str, now: dt.datetime
    ) -> bool:
        """Take the exclusive right to call the provider's approve for an order."""
        attrs = await self.db.run(
            self.db.update_item,
            self.SESSIONS_TABLE,
            {"order_id": order_id},
            "SET approval_token = :token, transaction_id = :tid, updated_at = :now",
            {
                ":token": token,
                ":tid": transaction_id,
                ":now": now.isoformat(),
                ":initiated": BookingState.PAYMENT_INITIATED.value,
            },
            {"#state": "state"},
            "#state = :initiated AND attribute_not_exists(approval_token)",
        )
        return attrs is not None

    async def release_approval(
        self, order_id: str, token: str, forget_transaction: bool = False
    ) -> bool:
        """Give up an approval claim.

        ``forget_transaction`` also drops the transaction id the claim
        recorded, for callbacks that named a payment of another order.
        """
        attrs = await self.db.run(
            self.db.update_item,
            self.SESSIONS_TABLE,
            {"order_id": order_id},
            (
                "REMOVE approval_token, transaction_id"
                if forget_transaction
                else "REMOVE approval_token"
            ),
            {":token": token},
            None,
            "approval_token = :token",
        )
        return attrs is not None

    async def list_expired_sessions(
        self, state: BookingState, now: dt.datetime
    ) -> list[BookingSession]:
        items = await self.db.run(
            self.db.query_by_gsi,
            self.SESSIONS_TABLE,
            "state-index",
            "state",
            state.value,
            Key("expires_at").lte(to_epoch(now)),
        )
        return [BookingSession.from_item(item) for item in items]

    # Payments

    async def get_payment(self, order_id: str) -> Payment | None:
        item = await self.db.run(self.db.get_item, self.PAYMENTS_TABLE, {"order_id": order_id})
        return Payment.from_item(item) if item else None

    async def get_payment_by_id(self, payment_id: str) -> Payment | None:
        items = await self.db.run(
            self.db.query_by_gsi,
            self.PAYMENTS_TABLE,
            "payment_id-index",
            "payment_id",
            payment_id,
        )
        return Payment.from_item(items[0]) if items else None

    async def save_payment(self, payment: Payment) -> Payment:
        """Create the payment row for an order.

        Raises:
            PersistenceError: STORE_CONFLICT (permanent) if the order
                already has a payment row.
        """
        created = await self.db.run(
            self.db.put_item,
            self.PAYMENTS_TABLE,
            payment.to_item(),
            "attribute_not_exists(order_id)",
        )
        if not created:
            raise PersistenceError(
                ErrorCode.STORE_CONFLICT,
                details={"order_id": payment.order_id},
                transient=False,
            )
        return payment

    async def finalize_payment(
        self,
        order_id: str,
        status: TransactionStatus,
        now: dt.datetime,
        failure_reason: str | None = None,
    ) -> Payment | None:
        """Move a pending payment to a terminal failed/cancelled status.

        Returns:
            Updated payment, or None if it was not pending (or missing).
        """
        sets = "SET #status = :status, updated_at = :now"
        values: dict[str, Any] = {
            ":status": status.value,
            ":now": now.isoformat(),
            ":pending": TransactionStatus.PENDING.value,
        }
        if status == TransactionStatus.CANCELLED:
            sets += ", cancelled_at = :now"
        if failure_reason:
            sets += ", failure_reason = :reason"
            values[":reason"] = failure_reason
        attrs = await self.db.run(
            self.db.update_item,
            self.PAYMENTS_TABLE,
            {"order_id": order_id},
            sets,
            values,
            {"#status": "status"},
            "#status = :pending",
        )
        return Payment.from_item(attrs) if attrs else None

    async def list_payments_for_user(self, user_id: str) -> list[Payment]:
        items = await self.db.run(
            self.db.query_by_gsi, self.PAYMENTS_TABLE, "user_id-index", "user_id", user_id
        )
        return [Payment.from_item(item) for item in items]

    # Reservations

    async def get_reservation(self, reservation_id: str) -> Reservation | None:
        item = await self.db.run(
            self.db.get_item, self.RESERVATIONS_TABLE, {"reservation_id": reservation_id}
        )
        return Reservation.from_item(item) if item else None

    async def save_reservation(self, reservation: Reservation) -> Reservation:
        """Insert a reservation row outside the commit transaction.

        Raises:
            PersistenceError: RESERVATION_EXISTS (permanent) on duplicate ID.
        """
        created = await self.db.run(
            self.db.put_item,
            self.RESERVATIONS_TABLE,
            reservation.to_item(),
            "attribute_not_exists(reservation_id)",
        )
        if not created:
            raise PersistenceError(
                ErrorCode.RESERVATION_EXISTS,
                details={"reservation_id": reservation.reservation_id},
                transient=False,
            )
        return reservation

    async def list_reservations_for_user(self, user_id: str) -> list[Reservation]:
        items = await self.db.run(
            self.db.query_by_gsi,
            self.RESERVATIONS_TABLE,
            "user_id-index",
            "user_id",
            user_id,
        )
        reservations = [Reservation.from_item(item) for item in items]
        return sorted(reservations, key=lambda r: r.created_at, reverse=True)

    async def list_reservations_for_program(self, program_id: str) -> list[Reservation]:
        items = await self.db.run(
            self.db.query_by_gsi,
            self.RESERVATIONS_TABLE,
            "program_id-index",
            "program_id",
            program_id,
        )
        return [Reservation.from_item(item) for item in items]

    async def get_claim(self, program_id: str, user_id: str) -> dict[str, Any] | None:
        """Active (user, program) claim, if any."""
        return await self.db.run(
            self.db.get_item,
            self.CLAIMS_TABLE,
            {"claim_id": claim_id(program_id, user_id)},
        )

    # Atomic commit / cancel

    async def commit_booking(
        self,
        session: BookingSession,
        reservation: Reservation,
        payment_updates: dict[str, Any],
        hold_entry: dict[str, Any],
        now: dt.datetime,
    ) -> bool:
        """Write the reservation and finalize payment, claim and session at once.

        Args:
            session: Session in PAYMENT_APPROVED
            reservation: New confirmed reservation row
            payment_updates: Attributes set on the pending payment row
            hold_entry: Capacity guard entry marking the hold committed
            now: Commit timestamp

        Returns:
            True if committed, False if any precondition failed.
        """
        db = self.db
        payment_names = {"#status": "status"}
        payment_values: dict[str, Any] = {
            ":completed": TransactionStatus.COMPLETED.value,
            ":pending": TransactionStatus.PENDING.value,
            ":participant": reservation.reservation_id,
            ":now": now.isoformat(),
        }
        payment_sets = [
            "#status = :completed",
            "participant_id = :participant",
            "updated_at = :now",
        ]
        for i, (field, value) in enumerate(payment_updates.items()):
            payment_names[f"#p{i}"] = field
            payment_values[f":p{i}"] = value
            payment_sets.append(f"#p{i} = :p{i}")

        items = [
            db.tx_put(
                self.RESERVATIONS_TABLE,
                reservation.to_item(),
                "attribute_not_exists(reservation_id)",
            ),
            db.tx_put(
                self.CLAIMS_TABLE,
                {
                    "claim_id": claim_id(reservation.program_id, reservation.user_id),
                    "program_id": reservation.program_id,
                    "user_id": reservation.user_id,
                    "reservation_id": reservation.reservation_id,
                    "order_id": reservation.order_id,
                    "created_at": now.isoformat(),
                },
                "attribute_not_exists(claim_id)",
            ),
            db.tx_update(
                self.PAYMENTS_TABLE,
                {"order_id": session.order_id},
                "SET " + ", ".join(payment_sets),
                payment_values,
                payment_names,
                "#status = :pending",
            ),
            db.tx_update(
                self.SESSIONS_TABLE,
                {"order_id": session.order_id},
                "SET #state = :committed, reservation_id = :rid, updated_at = :now",
                {
                    ":committed": BookingState.COMMITTED.value,
                    ":approved": BookingState.PAYMENT_APPROVED.value,
                    ":rid": reservation.reservation_id,
                    ":now": now.isoformat(),
                },
                {"#state": "state"},
                "#state = :approved",
            ),
            hold_entry,
        ]
        return await db.run(db.transact_write, items)

    async def cancel_booking(
        self,
        reservation: Reservation,
        refund: Refund | None,
        release_entries: list[dict[str, Any]],
        now: dt.datetime,
        reason: str,
    ) -> bool:
        """Cancel a committed booking in one transaction.

        Updates reservation, payment (when money was returned), session and
        claim, writes the completed refund row and releases the slot.

        Returns:
            True if committed, False if the reservation was no longer active.
        """
        db = self.db
        refunded = refund is not None and refund.amount > 0
        reservation_values: dict[str, Any] = {
            ":cancelled": ReservationStatus.CANCELLED.value,
            ":now": now.isoformat(),
            ":reason": reason,
            ":confirmed": ReservationStatus.CONFIRMED.value,
            ":registered": ReservationStatus.REGISTERED.value,
        }
        reservation_sets = (
            "SET #status = :cancelled, cancelled_at = :now, "
            "updated_at = :now, cancel_reason = :reason"
        )
        if refunded:
            reservation_sets += ", payment_status = :refunded"
            reservation_values[":refunded"] = PaymentStatus.REFUNDED.value

        items = [
            db.tx_update(
                self.RESERVATIONS_TABLE,
                {"reservation_id": reservation.reservation_id},
                reservation_sets,
                reservation_values,
                {"#status": "status"},
                "#status IN (:confirmed, :registered)",
            ),
            db.tx_update(
                self.SESSIONS_TABLE,
                {"order_id": reservation.order_id},
                "SET #state = :cancelled, updated_at = :now",
                {
                    ":cancelled": BookingState.CANCELLED.value,
                    ":committed": BookingState.COMMITTED.value,
                    ":now": now.isoformat(),
                },
                {"#state": "state"},
                "#state = :committed",
            ),
            {
                "Delete": {
                    "TableName": db.table_name(self.CLAIMS_TABLE),
                    "Key": {
                        "claim_id": {
                            "S": claim_id(reservation.program_id, reservation.user_id)
                        }
                    },
                }
            },
            *release_entries,
        ]
        if refunded:
            items.append(
                db.tx_update(
                    self.PAYMENTS_TABLE,
                    {"order_id": reservation.order_id},
                    "SET #status = :cancelled, cancelled_at = :now, updated_at = :now, "
                    "refunded_amount = refunded_amount + :amount",
                    {
                        ":cancelled": TransactionStatus.CANCELLED.value,
                        ":completed": TransactionStatus.COMPLETED.value,
                        ":now": now.isoformat(),
                        ":amount": refund.amount,
                    },
                    {"#status": "status"},
                    "#status IN (:completed, :cancelled)",
                )
            )
            items.append(
                db.tx_put(
                    self.REFUNDS_TABLE,
                    refund.to_item(),
                    "attribute_not_exists(refund_id)",
                )
            )
        return await db.run(db.transact_write, items)

    # Refunds

    async def save_refund(self, refund: Refund) -> Refund:
        await self.db.run(
            self.db.put_item,
            self.REFUNDS_TABLE,
            refund.to_item(),
            "attribute_not_exists(refund_id)",
        )
        return refund

    async def get_refund(self, refund_id: str) -> Refund | None:
        item = await self.db.run(self.db.get_item, self.REFUNDS_TABLE, {"refund_id": refund_id})
        return Refund.from_item(item) if item else None

    async def list_refunds_for_payment(self, payment_id: str) -> list[Refund]:
        items = await self.db.run(
            self.db.query_by_gsi,
            self.REFUNDS_TABLE,
            "payment_id-index",
            "payment_id",
            payment_id,
        )
        return [Refund.from_item(item) for item in items]

    async def update_refund_status(
        self,
        refund_id: str,
        from_status: RefundStatus,
        to_status: RefundStatus,
        now: dt.datetime,
        set_fields: dict[str, Any] | None = None,
    ) -> Refund | None:
        names = {"#status": "status"}
        values: dict[str, Any] = {
            ":to": to_status.value,
            ":from": from_status.value,
            ":now": now.isoformat(),
        }
        sets = ["#status = :to", "processed_at = :now"]
        for i, (field, value) in enumerate((set_fields or {}).items()):
            names[f"#f{i}"] = field
            values[f":v{i}"] = value
            sets.append(f"#f{i} = :v{i}")
        attrs = await self.db.run(
            self.db.update_item,
            self.REFUNDS_TABLE,
            {"refund_id": refund_id},
            "SET " + ", ".join(sets),
            values,
            names,
            "#status = :from",
        )
        return Refund.from_item(attrs) if attrs else None

    async def apply_refund(
        self,
        refund: Refund,
        payment: Payment,
        reservation_id: str | None,
        now: dt.datetime,
        processed_by: str,
        raw_data: str | None,
    ) -> bool:
        """Complete an approved refund and roll its amount into the payment.

        A refund that brings the refunded total to the paid amount cancels
        the payment and flips the reservation's payment_status to refunded.
        """
        db = self.db
        fully_refunded = payment.refunded_amount + refund.amount >= payment.amount
        refund_sets = "SET #status = :completed, processed_at = :now, processed_by = :by"
        refund_values: dict[str, Any] = {
            ":completed": RefundStatus.COMPLETED.value,
            ":approved": RefundStatus.APPROVED.value,
            ":now": now.isoformat(),
            ":by": processed_by,
        }
        if raw_data is not None:
            refund_sets += ", raw_data = :raw"
            refund_values[":raw"] = raw_data

        payment_sets = "SET refunded_amount = refunded_amount + :amount, updated_at = :now"
        payment_values: dict[str, Any] = {
            ":amount": refund.amount,
            ":now": now.isoformat(),
            ":limit": payment.amount - refund.amount,
        }
        if fully_refunded:
            payment_sets += ", #status = :cancelled, cancelled_at = :now"
            payment_values[":cancelled"] = TransactionStatus.CANCELLED.value

        items = [
            db.tx_update(
                self.REFUNDS_TABLE,
                {"refund_id": refund.refund_id},
                refund_sets,
                refund_values,
                {"#status": "status"},
                "#status = :approved",
            ),
            db.tx_update(
                self.PAYMENTS_TABLE,
                {"order_id": payment.order_id},
                payment_sets,
                payment_values,
                {"#status": "status"} if fully_refunded else None,
                "refunded_amount <= :limit",
            ),
        ]
        if fully_refunded and reservation_id:
            items.append(
                db.tx_update(
                    self.RESERVATIONS_TABLE,
                    {"reservation_id": reservation_id},
                    "SET payment_status = :refunded, updated_at = :now",
                    {":refunded": PaymentStatus.REFUNDED.value, ":now": now.isoformat()},
                    None,
                    "attribute_exists(reservation_id)",
                )
            )
        return await db.run(db.transact_write, items)
