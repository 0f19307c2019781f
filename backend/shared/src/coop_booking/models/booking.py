"""Persisted booking session: the orchestrator's state, keyed by order_id."""

import datetime as dt

from pydantic import BaseModel, ConfigDict, Field

from ..utils.clock import parse_datetime, to_epoch
from .enums import BookingState, PaymentProvider
from .payment import ClientHandoff
from .provider_payloads import ProviderPayload
from .reservation import ParticipantInfo

# Edges of the booking state machine. Draft is never persisted.
ALLOWED_TRANSITIONS: dict[BookingState, frozenset[BookingState]] = {
    BookingState.DRAFT: frozenset({BookingState.PRICE_LOCKED}),
    BookingState.PRICE_LOCKED: frozenset(
        {BookingState.SLOT_RESERVED, BookingState.ROLLED_BACK}
    ),
    BookingState.SLOT_RESERVED: frozenset(
        {BookingState.PAYMENT_INITIATED, BookingState.ROLLED_BACK}
    ),
    BookingState.PAYMENT_INITIATED: frozenset(
        {BookingState.PAYMENT_APPROVED, BookingState.ROLLED_BACK}
    ),
    BookingState.PAYMENT_APPROVED: frozenset(
        {BookingState.COMMITTED, BookingState.ROLLED_BACK}
    ),
    BookingState.COMMITTED: frozenset({BookingState.CANCELLED}),
    BookingState.ROLLED_BACK: frozenset(),
    BookingState.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset(
    {BookingState.COMMITTED, BookingState.ROLLED_BACK, BookingState.CANCELLED}
)

# States the stale-session sweep inspects once expires_at has passed
SWEEPABLE_STATES = (
    BookingState.PRICE_LOCKED,
    BookingState.SLOT_RESERVED,
    BookingState.PAYMENT_INITIATED,
    BookingState.PAYMENT_APPROVED,
)


def can_transition(current: BookingState, target: BookingState) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class BookingSession(BaseModel):
    """In-flight booking context persisted in the booking-sessions table."""

    model_config = ConfigDict(strict=True)

    order_id: str
    user_id: str
    program_id: str
    provider: PaymentProvider
    state: BookingState
    participant: ParticipantInfo
    amount: int = Field(..., ge=0, description="Locked quote in KRW")
    is_early_bird: bool
    quoted_at: dt.datetime
    slot_reserved: bool = False
    payment_id: str | None = None
    transaction_id: str | None = None
    approval_token: str | None = None
    reservation_id: str | None = None
    failure_code: str | None = None
    failure_reason: str | None = None
    created_at: dt.datetime
    updated_at: dt.datetime
    expires_at: dt.datetime

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def is_expired(self, now: dt.datetime) -> bool:
        return now >= self.expires_at

    def to_item(self) -> dict:
        item = self.model_dump(mode="json", exclude_none=True)
        # Numeric sort key for the state-index GSI
        item["expires_at"] = to_epoch(self.expires_at)
        return item

    @classmethod
    def from_item(cls, item: dict) -> "BookingSession":
        participant = item["participant"]
        return cls(
            order_id=item["order_id"],
            user_id=item["user_id"],
            program_id=item["program_id"],
            provider=PaymentProvider(item["provider"]),
            state=BookingState(item["state"]),
            participant=ParticipantInfo(
                name=participant["name"],
                phone=participant["phone"],
                email=participant["email"],
                notes=participant.get("notes"),
            ),
            amount=int(item["amount"]),
            is_early_bird=bool(item["is_early_bird"]),
            quoted_at=parse_datetime(item["quoted_at"]),
            slot_reserved=bool(item.get("slot_reserved", False)),
            payment_id=item.get("payment_id"),
            transaction_id=item.get("transaction_id"),
            approval_token=item.get("approval_token"),
            reservation_id=item.get("reservation_id"),
            failure_code=item.get("failure_code"),
            failure_reason=item.get("failure_reason"),
            created_at=parse_datetime(item["created_at"]),
            updated_at=parse_datetime(item["updated_at"]),
            expires_at=dt.datetime.fromtimestamp(int(item["expires_at"]), tz=dt.UTC),
        )


class BookingRequest(BaseModel):
    """Input of the first booking step (participant info submission)."""

    model_config = ConfigDict(strict=True)

    program_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    participant: ParticipantInfo
    provider: PaymentProvider | None = None
    expected_amount: int | None = Field(
        default=None, ge=0, description="Price the user was shown"
    )
    order_id: str | None = Field(
        default=None, description="Existing order to resume (page reload)"
    )


class BookingStarted(BaseModel):
    """Result of start_booking: session state plus the widget handoff."""

    model_config = ConfigDict(strict=True)

    session: BookingSession
    handoff: ClientHandoff
    resumed: bool = False


class PaymentCallback(BaseModel):
    """Provider success callback/redirect. Untrusted until approved."""

    model_config = ConfigDict(strict=True)

    order_id: str = Field(..., min_length=1)
    transaction_id: str = Field(..., min_length=1)
    amount: int = Field(..., ge=0, description="Amount the client reported")
    payload: ProviderPayload | None = None
