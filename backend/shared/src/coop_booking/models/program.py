"""Program catalog model and price quotes."""

import datetime as dt

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..utils.clock import parse_datetime
from .enums import ProgramStatus


class Program(BaseModel):
    """An education program that members can book.

    Amounts are whole KRW. current_participants is a denormalized counter
    owned by the capacity guard.
    """

    model_config = ConfigDict(strict=True)

    program_id: str = Field(..., description="Unique program ID")
    title: str = Field(..., min_length=1, description="Program title")
    base_price: int = Field(..., ge=0, description="Regular price in KRW")
    early_bird_price: int | None = Field(
        default=None, ge=0, description="Discounted price in KRW"
    )
    early_bird_deadline: dt.datetime | None = Field(
        default=None, description="Last instant the early-bird price applies"
    )
    max_participants: int = Field(..., ge=1, description="Seat capacity")
    current_participants: int = Field(
        default=0, ge=0, description="Seats currently held or committed"
    )
    status: ProgramStatus = Field(default=ProgramStatus.OPEN)
    start_date: dt.datetime = Field(..., description="Program start")
    end_date: dt.datetime = Field(..., description="Program end")
    location: str | None = None
    description: str | None = None

    @model_validator(mode="after")
    def check_counters(self) -> "Program":
        if self.current_participants > self.max_participants:
            raise ValueError("current_participants cannot exceed max_participants")
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

    @property
    def remaining_slots(self) -> int:
        return self.max_participants - self.current_participants

    def to_item(self) -> dict:
        """Serialize to a DynamoDB item."""
        return self.model_dump(mode="json", exclude_none=True)

    @classmethod
    def from_item(cls, item: dict) -> "Program":
        """Build a Program from a DynamoDB item (numbers arrive as Decimal)."""
        return cls.model_validate(
            {
                "program_id": item["program_id"],
                "title": item["title"],
                "base_price": int(item["base_price"]),
                "early_bird_price": (
                    int(item["early_bird_price"])
                    if item.get("early_bird_price") is not None
                    else None
                ),
                "early_bird_deadline": parse_datetime(item.get("early_bird_deadline")),
                "max_participants": int(item["max_participants"]),
                "current_participants": int(item.get("current_participants", 0)),
                "status": ProgramStatus(item.get("status", "open")),
                "start_date": parse_datetime(item["start_date"]),
                "end_date": parse_datetime(item["end_date"]),
                "location": item.get("location"),
                "description": item.get("description"),
            }
        )


class PriceQuote(BaseModel):
    """Effective charge for a program at a point in time."""

    model_config = ConfigDict(strict=True, frozen=True)

    amount: int = Field(..., ge=0, description="Amount to charge in KRW")
    is_early_bird: bool = Field(..., description="Whether the early-bird price applied")
    quoted_at: dt.datetime = Field(..., description="Instant the quote was computed")
