"""Reservation (program participant) model."""

import datetime as dt
import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..utils.clock import parse_datetime
from .enums import PaymentStatus, ReservationStatus

_PHONE_RE = re.compile(r"^0\d{1,2}-?\d{3,4}-?\d{4}$")


class ParticipantInfo(BaseModel):
    """Contact details submitted in the first booking step."""

    model_config = ConfigDict(strict=True, str_strip_whitespace=True)

    name: str = Field(..., min_length=1, max_length=50, description="Participant name")
    phone: str = Field(..., description="Korean phone number, e.g. 010-1234-5678")
    email: str = Field(..., max_length=254, description="Contact e-mail")
    notes: str | None = Field(default=None, max_length=500)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        if not _PHONE_RE.match(v):
            raise ValueError("Invalid phone number")
        return v

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        local, _, domain = v.partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email address")
        return v.lower()


class Reservation(BaseModel):
    """A participant row holding (or having held) one capacity slot.

    amount_paid is the quote captured when the booking was priced and is
    never recomputed.
    """

    model_config = ConfigDict(strict=True)

    reservation_id: str = Field(..., description="Unique reservation ID")
    program_id: str = Field(..., description="Booked program")
    user_id: str = Field(..., description="Owner (auth subject)")
    order_id: str = Field(..., description="Order that paid for this reservation")
    participant: ParticipantInfo
    amount_paid: int = Field(..., ge=0, description="Charged amount in KRW")
    is_early_bird: bool = False
    status: ReservationStatus
    payment_status: PaymentStatus
    created_at: dt.datetime
    updated_at: dt.datetime | None = None
    cancelled_at: dt.datetime | None = None
    cancel_reason: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status != ReservationStatus.CANCELLED

    def to_item(self) -> dict:
        """Serialize to a DynamoDB item."""
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_item(cls, item: dict) -> "Reservation":
        participant = item["participant"]
        return cls(
            reservation_id=item["reservation_id"],
            program_id=item["program_id"],
            user_id=item["user_id"],
            order_id=item["order_id"],
            participant=ParticipantInfo(
                name=participant["name"],
                phone=participant["phone"],
                email=participant["email"],
                notes=participant.get("notes"),
            ),
            amount_paid=int(item["amount_paid"]),
            is_early_bird=bool(item.get("is_early_bird", False)),
            status=ReservationStatus(item["status"]),
            payment_status=PaymentStatus(item["payment_status"]),
            created_at=parse_datetime(item["created_at"]),
            updated_at=parse_datetime(item.get("updated_at")),
            cancelled_at=parse_datetime(item.get("cancelled_at")),
            cancel_reason=item.get("cancel_reason"),
        )
