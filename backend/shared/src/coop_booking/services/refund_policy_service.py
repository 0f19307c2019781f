"""Refund policy service for calculating refund amounts.

Cancellation refund tiers by days before the program start date:
- 14+ days: 100%
- 7-13 days: 80%
- 3-6 days: 50%
- 1-2 days: 20%
- Same day or later: no refund

All amounts are whole KRW, rounded down.
"""

import datetime as dt
from typing import TypedDict


class RefundCalculation(TypedDict):
    """Result of refund policy calculation."""

    refund_amount: int  # Amount in KRW
    refund_percentage: int  # 0, 20, 50, 80 or 100
    policy_tier: str  # "full", "high", "half", "low" or "none"
    days_until_start: int
    description: str


class RefundPolicyService:
    """Service for calculating refund amounts based on cancellation timing."""

    # (minimum days before start, percentage, tier), checked in order
    TIERS: tuple[tuple[int, int, str], ...] = (
        (14, 100, "full"),
        (7, 80, "high"),
        (3, 50, "half"),
        (1, 20, "low"),
    )
    NO_REFUND_PERCENT = 0

    def calculate_refund_amount(
        self,
        payment_amount: int,
        start_date: dt.date,
        cancellation_date: dt.date,
    ) -> RefundCalculation:
        """Calculate refund amount based on cancellation timing.

        Args:
            payment_amount: Paid amount in KRW
            start_date: Program start date
            cancellation_date: Date of cancellation request

        Returns:
            RefundCalculation with refund amount and policy details
        """
        # Negative once the program has started
        days_until_start = (start_date - cancellation_date).days

        for min_days, percentage, tier in self.TIERS:
            if days_until_start >= min_days:
                description = (
                    f"{percentage}% refund: cancelled {days_until_start} days before start "
                    f"(policy: {min_days}+ days = {percentage}%)"
                )
                break
        else:
            percentage = self.NO_REFUND_PERCENT
            tier = "none"
            if days_until_start < 0:
                description = "No refund: cancelled after the program started"
            else:
                description = (
                    f"No refund: cancelled {days_until_start} days before start "
                    f"(policy: less than 1 day = no refund)"
                )

        refund_amount = (payment_amount * percentage) // 100

        return RefundCalculation(
            refund_amount=refund_amount,
            refund_percentage=percentage,
            policy_tier=tier,
            days_until_start=days_until_start,
            description=description,
        )

    def get_policy_description(self) -> str:
        """Get human-readable description of the refund policy."""
        return (
            "Cancellation Policy:\n"
            "• 14+ days before start: Full refund (100%)\n"
            "• 7-13 days before start: 80% refund\n"
            "• 3-6 days before start: 50% refund\n"
            "• 1-2 days before start: 20% refund\n"
            "• Same day or after start: No refund"
        )
