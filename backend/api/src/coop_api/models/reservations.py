"""Request/response models for reservations, refunds and programs."""

import datetime as dt
from typing import Any

from pydantic import BaseModel, Field

from coop_booking.models.enums import (
    PaymentStatus,
    ProgramStatus,
    RefundStatus,
    ReservationStatus,
)
from coop_booking.models.payment import Refund
from coop_booking.models.program import PriceQuote, Program
from coop_booking.models.reservation import Reservation


class ProgramResponse(BaseModel):
    program_id: str
    title: str
    status: ProgramStatus
    start_date: dt.datetime
    end_date: dt.datetime
    location: str | None = None
    description: str | None = None
    max_participants: int
    remaining_slots: int
    base_price: int
    early_bird_price: int | None = None
    early_bird_deadline: dt.datetime | None = None
    current_price: int = Field(..., description="Price a booking started now would lock")
    is_early_bird: bool

    @classmethod
    def from_program(cls, program: Program, quote: PriceQuote) -> "ProgramResponse":
        return cls(
            program_id=program.program_id,
            title=program.title,
            status=program.status,
            start_date=program.start_date,
            end_date=program.end_date,
            location=program.location,
            description=program.description,
            max_participants=program.max_participants,
            remaining_slots=max(program.remaining_slots, 0),
            base_price=program.base_price,
            early_bird_price=program.early_bird_price,
            early_bird_deadline=program.early_bird_deadline,
            current_price=quote.amount,
            is_early_bird=quote.is_early_bird,
        )


class ReservationResponse(BaseModel):
    reservation_id: str
    program_id: str
    order_id: str
    participant_name: str
    amount_paid: int
    is_early_bird: bool
    status: ReservationStatus
    payment_status: PaymentStatus
    created_at: dt.datetime
    cancelled_at: dt.datetime | None = None
    cancel_reason: str | None = None

    @classmethod
    def from_reservation(cls, reservation: Reservation) -> "ReservationResponse":
        return cls(
            reservation_id=reservation.reservation_id,
            program_id=reservation.program_id,
            order_id=reservation.order_id,
            participant_name=reservation.participant.name,
            amount_paid=reservation.amount_paid,
            is_early_bird=reservation.is_early_bird,
            status=reservation.status,
            payment_status=reservation.payment_status,
            created_at=reservation.created_at,
            cancelled_at=reservation.cancelled_at,
            cancel_reason=reservation.cancel_reason,
        )


class ReservationListResponse(BaseModel):
    reservations: list[ReservationResponse]
    total_count: int


class RefundResponse(BaseModel):
    refund_id: str
    payment_id: str
    order_id: str
    amount: int
    reason: str
    status: RefundStatus
    rejection_reason: str | None = None
    created_at: dt.datetime
    processed_at: dt.datetime | None = None

    @classmethod
    def from_refund(cls, refund: Refund) -> "RefundResponse":
        return cls(
            refund_id=refund.refund_id,
            payment_id=refund.payment_id,
            order_id=refund.order_id,
            amount=refund.amount,
            reason=refund.reason,
            status=refund.status,
            rejection_reason=refund.rejection_reason,
            created_at=refund.created_at,
            processed_at=refund.processed_at,
        )


class CancellationRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    refund_amount: int | None = Field(
        default=None, ge=0, description="Admin override of the policy refund (KRW)"
    )


class CancellationResponse(BaseModel):
    reservation: ReservationResponse
    refund: RefundResponse | None = None
    refund_policy: dict[str, Any]


class RefundCreateRequest(BaseModel):
    payment_id: str = Field(..., min_length=1)
    amount: int = Field(..., gt=0)
    reason: str = Field(..., min_length=1, max_length=500)


class RefundRejectRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
