"""Payment and refund models, plus gateway result types."""

import datetime as dt
import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..utils.clock import parse_datetime
from .enums import PaymentMethod, PaymentProvider, RefundStatus, TransactionStatus
from .provider_payloads import ProviderPayload


class Payment(BaseModel):
    """A payment attempt, keyed by its order_id.

    Amounts are whole KRW. The row is created as ``pending`` before the
    client widget is shown and is finalized only by a server-side approval.
    """

    model_config = ConfigDict(strict=True)

    payment_id: str = Field(..., description="Unique payment ID")
    order_id: str = Field(..., description="Idempotency key shared with the provider")
    user_id: str = Field(..., description="Paying user")
    program_id: str = Field(..., description="Program being paid for")
    participant_id: str | None = Field(
        default=None, description="Reservation linked after commit"
    )
    amount: int = Field(..., ge=0, description="Locked amount in KRW")
    currency: str = Field(default="KRW")
    status: TransactionStatus
    provider: PaymentProvider
    payment_method: PaymentMethod | None = None
    transaction_id: str | None = Field(
        default=None, description="Provider transaction ID (paymentKey / tid)"
    )
    raw_data: dict[str, Any] | None = Field(
        default=None, description="Last provider payload, opaque"
    )
    refunded_amount: int = Field(default=0, ge=0)
    failure_reason: str | None = None
    created_at: dt.datetime
    approved_at: dt.datetime | None = None
    cancelled_at: dt.datetime | None = None
    updated_at: dt.datetime | None = None

    @property
    def refundable_amount(self) -> int:
        return self.amount - self.refunded_amount

    def to_item(self) -> dict:
        """Serialize to a DynamoDB item.

        raw_data is stored as a JSON string since provider payloads may
        carry floats, which DynamoDB does not accept.
        """
        item = self.model_dump(mode="json", exclude_none=True, exclude={"raw_data"})
        if self.raw_data is not None:
            item["raw_data"] = json.dumps(self.raw_data, ensure_ascii=False)
        return item

    @classmethod
    def from_item(cls, item: dict) -> "Payment":
        raw = item.get("raw_data")
        return cls(
            payment_id=item["payment_id"],
            order_id=item["order_id"],
            user_id=item["user_id"],
            program_id=item["program_id"],
            participant_id=item.get("participant_id"),
            amount=int(item["amount"]),
            currency=item.get("currency", "KRW"),
            status=TransactionStatus(item["status"]),
            provider=PaymentProvider(item["provider"]),
            payment_method=(
                PaymentMethod(item["payment_method"])
                if item.get("payment_method")
                else None
            ),
            transaction_id=item.get("transaction_id"),
            raw_data=json.loads(raw) if isinstance(raw, str) else raw,
            refunded_amount=int(item.get("refunded_amount", 0)),
            failure_reason=item.get("failure_reason"),
            created_at=parse_datetime(item["created_at"]),
            approved_at=parse_datetime(item.get("approved_at")),
            cancelled_at=parse_datetime(item.get("cancelled_at")),
            updated_at=parse_datetime(item.get("updated_at")),
        )


class Refund(BaseModel):
    """A refund request against a completed payment."""

    model_config = ConfigDict(strict=True)

    refund_id: str
    payment_id: str
    order_id: str
    user_id: str
    amount: int = Field(..., gt=0, description="Refund amount in KRW")
    reason: str = Field(..., min_length=1, max_length=500)
    status: RefundStatus
    requested_by: str
    processed_by: str | None = None
    rejection_reason: str | None = None
    raw_data: dict[str, Any] | None = None
    created_at: dt.datetime
    processed_at: dt.datetime | None = None

    def to_item(self) -> dict:
        item = self.model_dump(mode="json", exclude_none=True, exclude={"raw_data"})
        if self.raw_data is not None:
            item["raw_data"] = json.dumps(self.raw_data, ensure_ascii=False)
        return item

    @classmethod
    def from_item(cls, item: dict) -> "Refund":
        raw = item.get("raw_data")
        return cls(
            refund_id=item["refund_id"],
            payment_id=item["payment_id"],
            order_id=item["order_id"],
            user_id=item["user_id"],
            amount=int(item["amount"]),
            reason=item["reason"],
            status=RefundStatus(item["status"]),
            requested_by=item["requested_by"],
            processed_by=item.get("processed_by"),
            rejection_reason=item.get("rejection_reason"),
            raw_data=json.loads(raw) if isinstance(raw, str) else raw,
            created_at=parse_datetime(item["created_at"]),
            processed_at=parse_datetime(item.get("processed_at")),
        )


class OrderMeta(BaseModel):
    """What the provider widget shows and where it sends the user back."""

    model_config = ConfigDict(strict=True)

    order_name: str
    customer_name: str
    customer_email: str
    customer_phone: str | None = None
    success_url: str
    fail_url: str


class ClientHandoff(BaseModel):
    """Opaque data the front end needs to render the provider widget."""

    model_config = ConfigDict(strict=True)

    provider: PaymentProvider
    order_id: str
    amount: int
    currency: str = "KRW"
    order_name: str
    client_key: str = Field(..., description="Public widget key / NicePay client ID")
    success_url: str
    fail_url: str
    sdk_params: dict[str, Any] = Field(
        default_factory=dict, description="Provider-specific widget parameters"
    )


class ApprovedPayment(BaseModel):
    """Provider-authoritative confirmation of a charge."""

    model_config = ConfigDict(strict=True)

    transaction_id: str
    order_id: str
    amount: int = Field(..., description="Amount the provider reports as approved")
    method: PaymentMethod | None = None
    approved_at: dt.datetime
    payload: ProviderPayload


class CancelledPayment(BaseModel):
    model_config = ConfigDict(strict=True)

    transaction_id: str
    cancelled_amount: int
    remaining_amount: int | None = None
    cancelled_at: dt.datetime
    payload: ProviderPayload


class ProviderStatus(BaseModel):
    """Result of a provider status lookup, mapped to internal status."""

    model_config = ConfigDict(strict=True)

    order_id: str
    transaction_id: str | None = None
    status: TransactionStatus
    amount: int | None = None
    method: PaymentMethod | None = None
    approved_at: dt.datetime | None = None
    payload: ProviderPayload
