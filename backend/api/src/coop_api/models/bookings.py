"""Request/response models for the booking and payment endpoints.

Request models are lenient (JSON strings become enums) and are converted
into the strict domain models before reaching the services.
"""

import datetime as dt
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from coop_booking.models.booking import BookingRequest, BookingSession, BookingStarted
from coop_booking.models.enums import (
    BookingState,
    PaymentMethod,
    PaymentProvider,
    TransactionStatus,
)
from coop_booking.models.errors import BookingValidationError
from coop_booking.models.payment import Payment
from coop_booking.models.reservation import ParticipantInfo


class ParticipantIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=50, examples=["홍길동"])
    phone: str = Field(..., examples=["010-1234-5678"])
    email: str = Field(..., examples=["member@example.org"])
    notes: str | None = Field(default=None, max_length=500)


class BookingCreateRequest(BaseModel):
    """Step 1 of the booking flow: participant info for a program."""

    program_id: str = Field(..., min_length=1)
    participant: ParticipantIn
    provider: PaymentProvider | None = Field(
        default=None, description="Payment provider; defaults to the configured one"
    )
    expected_amount: int | None = Field(
        default=None, ge=0, description="Price shown to the user, in KRW"
    )
    order_id: str | None = Field(
        default=None, description="Resume this order instead of starting a new one"
    )

    def to_domain(self, user_id: str) -> BookingRequest:
        try:
            participant = ParticipantInfo(**self.participant.model_dump())
        except ValidationError as e:
            fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
            raise BookingValidationError(details={"participant": fields}) from e
        return BookingRequest(
            program_id=self.program_id,
            user_id=user_id,
            participant=participant,
            provider=self.provider,
            expected_amount=self.expected_amount,
            order_id=self.order_id,
        )


class BookingStatusResponse(BaseModel):
    order_id: str
    program_id: str
    state: BookingState
    provider: PaymentProvider
    amount: int
    is_early_bird: bool
    expires_at: dt.datetime
    reservation_id: str | None = None
    failure_code: str | None = None
    failure_reason: str | None = None

    @classmethod
    def from_session(cls, session: BookingSession) -> "BookingStatusResponse":
        return cls(
            order_id=session.order_id,
            program_id=session.program_id,
            state=session.state,
            provider=session.provider,
            amount=session.amount,
            is_early_bird=session.is_early_bird,
            expires_at=session.expires_at,
            reservation_id=session.reservation_id,
            failure_code=session.failure_code,
            failure_reason=session.failure_reason,
        )


class BookingStartResponse(BookingStatusResponse):
    """Session state plus what the front end needs to open the widget."""

    resumed: bool = False
    handoff: dict[str, Any]

    @classmethod
    def from_started(cls, started: BookingStarted) -> "BookingStartResponse":
        base = BookingStatusResponse.from_session(started.session).model_dump()
        return cls(
            **base,
            resumed=started.resumed,
            handoff=started.handoff.model_dump(mode="json"),
        )


class PaymentConfirmRequest(BaseModel):
    """Client-side confirm after the widget's success redirect."""

    order_id: str = Field(..., min_length=1)
    transaction_id: str = Field(
        ..., min_length=1, description="Toss paymentKey or NicePay tid"
    )
    amount: int = Field(..., ge=0)


class PaymentFailRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    code: str | None = None
    message: str | None = None


class PaymentResponse(BaseModel):
    """A payment row without the provider's raw payload."""

    payment_id: str
    order_id: str
    program_id: str
    amount: int
    refunded_amount: int
    currency: str
    status: TransactionStatus
    provider: PaymentProvider
    payment_method: PaymentMethod | None = None
    reservation_id: str | None = None
    created_at: dt.datetime
    approved_at: dt.datetime | None = None
    cancelled_at: dt.datetime | None = None

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentResponse":
        return cls(
            payment_id=payment.payment_id,
            order_id=payment.order_id,
            program_id=payment.program_id,
            amount=payment.amount,
            refunded_amount=payment.refunded_amount,
            currency=payment.currency,
            status=payment.status,
            provider=payment.provider,
            payment_method=payment.payment_method,
            reservation_id=payment.participant_id,
            created_at=payment.created_at,
            approved_at=payment.approved_at,
            cancelled_at=payment.cancelled_at,
        )
