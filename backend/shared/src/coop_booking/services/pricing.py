"""Pricing engine: effective charge for a program at an instant."""

import datetime as dt

from ..models.errors import BookingValidationError, ErrorCode
from ..models.program import PriceQuote, Program


class PricingEngine:
    """Computes quotes. Pure: no store access, no clock of its own."""

    def __init__(self, max_amount: int = 50_000_000) -> None:
        """Initialize pricing engine.

        Args:
            max_amount: Largest chargeable amount in KRW
        """
        self.max_amount = max_amount

    def quote(self, program: Program, at_time: dt.datetime) -> PriceQuote:
        """Quote the price of a program at ``at_time``.

        The early-bird price applies while ``at_time`` is at or before the
        early-bird deadline (inclusive).

        Args:
            program: Program to price
            at_time: Timezone-aware instant of the booking attempt

        Returns:
            PriceQuote with amount and early-bird flag

        Raises:
            BookingValidationError: if the amount exceeds the chargeable maximum
        """
        if at_time.tzinfo is None:
            raise ValueError("at_time must be timezone-aware")

        is_early_bird = (
            program.early_bird_price is not None
            and program.early_bird_deadline is not None
            and at_time <= program.early_bird_deadline
        )
        amount = program.early_bird_price if is_early_bird else program.base_price

        if amount > self.max_amount:
            raise BookingValidationError(
                ErrorCode.VALIDATION_FAILED,
                details={"amount": str(amount), "max_amount": str(self.max_amount)},
            )

        return PriceQuote(amount=amount, is_early_bird=is_early_bird, quoted_at=at_time)
