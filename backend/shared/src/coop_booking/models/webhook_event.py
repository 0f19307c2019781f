"""Payment webhook event log for idempotency and auditing."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from .enums import PaymentProvider


class PaymentWebhookEvent(BaseModel):
    """Log of a received provider webhook delivery.

    Used for:
    - Idempotency: the same delivery is processed once
    - Auditing: every delivery is recorded with its outcome
    """

    model_config = ConfigDict(strict=True)

    event_id: str = Field(
        ...,
        description="SHA-256 of the delivery body, unique per delivery",
    )
    provider: PaymentProvider
    event_type: str = Field(
        ...,
        description="Provider event type or status",
        examples=["PAYMENT_STATUS_CHANGED", "paid"],
    )
    order_id: str | None = None
    transaction_id: str | None = None
    processed_at: datetime
    processing_result: str = Field(
        default="success",
        description="Result of processing: success, duplicate, skipped, error",
    )
    error_message: str | None = None

    def to_item(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)
