"""Typed shapes of payment provider responses and callbacks.

Provider payloads are untrusted. Each known response shape is a variant of
the ``ProviderPayload`` tagged union (discriminated by ``kind``); anything
that does not validate against the expected shape becomes an
``UnknownProviderPayload`` that only keeps the raw dict.
"""

import logging
from typing import Annotated, Any, Literal, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)


class _PayloadBase(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        frozen=True,
    )

    raw: dict[str, Any] = Field(default_factory=dict, repr=False)


class TossCancel(_PayloadBase):
    cancel_amount: int
    cancel_reason: str | None = None
    canceled_at: str | None = None
    transaction_key: str | None = None


class TossPaymentPayload(_PayloadBase):
    """Payment object returned by TossPayments confirm/lookup/cancel."""

    kind: Literal["toss_payment"] = "toss_payment"
    payment_key: str
    order_id: str
    status: str
    total_amount: int
    balance_amount: int | None = None
    method: str | None = None
    requested_at: str | None = None
    approved_at: str | None = None
    cancels: list[TossCancel] | None = None


class TossWebhookPayload(_PayloadBase):
    """PAYMENT_STATUS_CHANGED notification from TossPayments."""

    kind: Literal["toss_webhook"] = "toss_webhook"
    event_type: str
    created_at: str | None = None
    data: TossPaymentPayload


class TossErrorPayload(_PayloadBase):
    kind: Literal["toss_error"] = "toss_error"
    code: str
    message: str = ""


class NicePayApprovalPayload(_PayloadBase):
    """Payment object returned by NicePay approve/lookup/cancel."""

    kind: Literal["nicepay_approval"] = "nicepay_approval"
    result_code: str
    result_msg: str = ""
    tid: str | None = None
    order_id: str | None = None
    amount: int | None = None
    balance_amt: int | None = None
    status: str | None = None
    pay_method: str | None = None
    paid_at: str | None = None
    cancelled_at: str | None = None
    edi_date: str | None = None
    signature: str | None = None

    @property
    def is_success(self) -> bool:
        return self.result_code == "0000"


class NicePayAuthResult(_PayloadBase):
    """Form fields NicePay posts to the return URL after card authentication."""

    kind: Literal["nicepay_auth"] = "nicepay_auth"
    auth_result_code: str
    auth_result_msg: str = ""
    tid: str
    client_id: str
    order_id: str
    amount: int
    mall_reserved: str | None = None
    auth_token: str
    signature: str

    @property
    def is_authenticated(self) -> bool:
        return self.auth_result_code == "0000"


class NicePayWebhookPayload(_PayloadBase):
    """Status notification NicePay posts to the webhook URL."""

    kind: Literal["nicepay_webhook"] = "nicepay_webhook"
    result_code: str
    result_msg: str = ""
    tid: str
    order_id: str
    amount: int
    status: str
    edi_date: str
    signature: str
    pay_method: str | None = None


class UnknownProviderPayload(_PayloadBase):
    """Fallback for provider data that matched none of the known shapes."""

    kind: Literal["unknown"] = "unknown"
    provider: str | None = None
    expected: str | None = None


ProviderPayload = Annotated[
    Union[
        TossPaymentPayload,
        TossWebhookPayload,
        TossErrorPayload,
        NicePayApprovalPayload,
        NicePayAuthResult,
        NicePayWebhookPayload,
        UnknownProviderPayload,
    ],
    Field(discriminator="kind"),
]

P = TypeVar("P", bound=_PayloadBase)


def parse_payload(
    model: type[P],
    data: Any,
    provider: str | None = None,
) -> P | UnknownProviderPayload:
    """Validate provider data against an expected shape.

    Args:
        model: The payload variant the caller expects
        data: Decoded JSON body or form fields
        provider: Provider name, recorded on the fallback variant

    Returns:
        The typed payload, or UnknownProviderPayload if data does not match.
    """
    raw = data if isinstance(data, dict) else {"value": data}
    try:
        return model.model_validate({**raw, "raw": raw})
    except ValidationError as e:
        logger.warning(
            "Unrecognized %s payload for %s: %s",
            provider or "provider",
            model.__name__,
            e.errors(include_url=False, include_input=False),
        )
        return UnknownProviderPayload(
            provider=provider,
            expected=model.__name__,
            raw=raw,
        )
