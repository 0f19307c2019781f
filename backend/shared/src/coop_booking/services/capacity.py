"""Capacity guard: atomic participant-slot reservation.

The program's ``current_participants`` counter is only ever changed here,
and only inside a DynamoDB transaction that also writes the matching
capacity-hold row. A hold row is keyed by the order_id it was taken for,
which makes both reserve and release idempotent per order.
"""

import datetime as dt
import logging
from typing import Any

from pydantic import BaseModel, ConfigDict

from ..models.enums import ProgramStatus
from ..models.errors import BookingValidationError, CapacityError, ErrorCode, NotFoundError
from ..utils.clock import Clock, utc_now
from .dynamodb import DynamoDBService

logger = logging.getLogger(__name__)


class SlotToken(BaseModel):
    """Proof that one slot of a program is held for an order."""

    model_config = ConfigDict(strict=True, frozen=True)

    hold_id: str
    program_id: str
    user_id: str
    reserved_at: str
    reused: bool = False


class CapacityGuard:
    """Reserves and releases program slots with conditional transactions."""

    PROGRAMS_TABLE = "programs"
    HOLDS_TABLE = "capacity-holds"

    def __init__(self, db: DynamoDBService, clock: Clock = utc_now) -> None:
        self._db = db
        self._clock = clock

    async def reserve_slot(self, program_id: str, hold_id: str, user_id: str) -> SlotToken:
        """Atomically take one slot of a program for an order.

        Check and increment happen in one conditional transaction; there is
        no separate read of the counter. Re-reserving an order that still
        holds a slot returns the existing token.

        Args:
            program_id: Program to reserve
            hold_id: Order ID the slot is held for
            user_id: Booking user

        Returns:
            SlotToken for the held slot

        Raises:
            CapacityError: program is full
            NotFoundError: program does not exist
            BookingValidationError: program is not open for booking
        """
        now = self._clock().isoformat()
        committed = await self._db.run(
            self._db.transact_write, self._reserve_entries(program_id, hold_id, user_id, now)
        )
        if committed:
            logger.info("Slot reserved: program=%s hold=%s", program_id, hold_id)
            await self._sync_status(program_id)
            return SlotToken(
                hold_id=hold_id, program_id=program_id, user_id=user_id, reserved_at=now
            )

        hold = await self._db.run(self._db.get_item, self.HOLDS_TABLE, {"hold_id": hold_id})
        if hold is not None and not hold.get("released", False):
            logger.info("Slot already held: program=%s hold=%s", program_id, hold_id)
            return SlotToken(
                hold_id=hold_id,
                program_id=hold["program_id"],
                user_id=hold["user_id"],
                reserved_at=hold["created_at"],
                reused=True,
            )

        program = await self._db.run(
            self._db.get_item, self.PROGRAMS_TABLE, {"program_id": program_id}
        )
        if program is None:
            raise NotFoundError(ErrorCode.PROGRAM_NOT_FOUND, details={"program_id": program_id})
        if program.get("status") not in (ProgramStatus.OPEN.value, ProgramStatus.FULL.value):
            raise BookingValidationError(
                ErrorCode.PROGRAM_NOT_OPEN,
                details={"program_id": program_id, "status": str(program.get("status"))},
            )
        logger.info(
            "Program full: program=%s current=%s max=%s",
            program_id,
            program.get("current_participants"),
            program.get("max_participants"),
        )
        raise CapacityError(program_id)

    async def release_slot(
        self,
        program_id: str,
        hold_id: str,
        reason: str = "released",
        committed: bool = False,
    ) -> bool:
        """Give back the slot held for an order.

        Idempotent: releasing a hold that is already released, or that was
        never taken, is a no-op.

        Args:
            program_id: Program the slot belongs to
            hold_id: Order ID the slot is held for
            reason: Recorded on the hold row
            committed: Whether the hold belongs to a committed reservation.
                A rollback (False) never releases a committed hold.

        Returns:
            True if a slot was released by this call, False for a no-op.
        """
        released = await self._db.run(
            self._db.transact_write,
            self.release_entries(program_id, hold_id, self._clock(), reason, committed),
        )
        if released:
            logger.info("Slot released: program=%s hold=%s reason=%s", program_id, hold_id, reason)
            await self._sync_status(program_id)
            return True

        hold = await self._db.run(self._db.get_item, self.HOLDS_TABLE, {"hold_id": hold_id})
        if hold is None or hold.get("released", False):
            logger.debug("Release of %s is a no-op", hold_id)
            return False
        if bool(hold.get("committed", False)) != committed:
            logger.warning(
                "Hold %s is %s, not releasing it",
                hold_id,
                "committed" if hold.get("committed") else "not committed",
            )
            return False

        # Active hold but the counter is already zero: drop the hold only
        logger.error(
            "Counter underflow releasing hold %s on program %s; releasing hold only",
            hold_id,
            program_id,
        )
        await self._db.run(
            self._db.update_item,
            self.HOLDS_TABLE,
            {"hold_id": hold_id},
            "SET released = :true, released_at = :now, release_reason = :reason",
            {
                ":true": True,
                ":false": False,
                ":committed": committed,
                ":now": self._clock().isoformat(),
                ":reason": reason,
            },
            {"#committed": "committed"},
            "released = :false AND #committed = :committed",
        )
        return False

    async def get_hold(self, hold_id: str) -> dict[str, Any] | None:
        return await self._db.run(self._db.get_item, self.HOLDS_TABLE, {"hold_id": hold_id})

    async def sync_status(self, program_id: str) -> None:
        """Re-derive ``full``/``open`` from the counter."""
        await self._sync_status(program_id)

    # Transaction entries, shared with the orchestrator's commit/cancel writes

    def commit_hold_entry(self, hold_id: str, now: dt.datetime) -> dict[str, Any]:
        """Mark a hold as committed, only if it is still held."""
        return self._db.tx_update(
            self.HOLDS_TABLE,
            {"hold_id": hold_id},
            "SET #committed = :true, committed_at = :now",
            {":true": True, ":false": False, ":now": now.isoformat()},
            {"#committed": "committed"},
            "attribute_exists(hold_id) AND released = :false",
        )

    def release_entries(
        self,
        program_id: str,
        hold_id: str,
        now: dt.datetime,
        reason: str,
        committed: bool = False,
    ) -> list[dict[str, Any]]:
        """Release a hold and give its slot back to the program counter."""
        return [
            self._db.tx_update(
                self.HOLDS_TABLE,
                {"hold_id": hold_id},
                "SET released = :true, released_at = :now, release_reason = :reason",
                {
                    ":true": True,
                    ":false": False,
                    ":committed": committed,
                    ":now": now.isoformat(),
                    ":reason": reason,
                },
                {"#committed": "committed"},
                "attribute_exists(hold_id) AND released = :false AND #committed = :committed",
            ),
            self._db.tx_update(
                self.PROGRAMS_TABLE,
                {"program_id": program_id},
                "SET current_participants = current_participants - :one, updated_at = :now",
                {":one": 1, ":zero": 0, ":now": now.isoformat()},
                None,
                "current_participants > :zero",
            ),
        ]

    def _reserve_entries(
        self, program_id: str, hold_id: str, user_id: str, now: str
    ) -> list[dict[str, Any]]:
        return [
            self._db.tx_update(
                self.PROGRAMS_TABLE,
                {"program_id": program_id},
                "SET current_participants = current_participants + :one, updated_at = :now",
                {
                    ":one": 1,
                    ":now": now,
                    ":open": ProgramStatus.OPEN.value,
                    ":full": ProgramStatus.FULL.value,
                },
                {"#status": "status"},
                "attribute_exists(program_id) "
                "AND current_participants < max_participants "
                "AND #status IN (:open, :full)",
            ),
            self._db.tx_put(
                self.HOLDS_TABLE,
                {
                    "hold_id": hold_id,
                    "program_id": program_id,
                    "user_id": user_id,
                    "released": False,
                    "committed": False,
                    "created_at": now,
                },
                "attribute_not_exists(hold_id) OR released = :true",
                None,
                {":true": True},
            ),
        ]

    async def _sync_status(self, program_id: str) -> None:
        # Eventually consistent: a lost update here is fixed by the next call
        await self._db.run(
            self._db.update_item,
            self.PROGRAMS_TABLE,
            {"program_id": program_id},
            "SET #status = :full",
            {":full": ProgramStatus.FULL.value, ":open": ProgramStatus.OPEN.value},
            {"#status": "status"},
            "#status = :open AND current_participants >= max_participants",
        )
        await self._db.run(
            self._db.update_item,
            self.PROGRAMS_TABLE,
            {"program_id": program_id},
            "SET #status = :open",
            {":full": ProgramStatus.FULL.value, ":open": ProgramStatus.OPEN.value},
            {"#status": "status"},
            "#status = :full AND current_participants < max_participants",
        )
