"""Provider-agnostic payment gateway interface.

A gateway wraps one payment provider's client widget handoff and its
server-side approve/cancel/status API. Only ``approve`` (and a status
lookup) is authoritative about money; anything the browser reports is a
hint that must be re-verified here.
"""

import asyncio
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict

from ..config import Settings
from ..models.booking import PaymentCallback
from ..models.enums import PaymentMethod, PaymentProvider, TransactionStatus
from ..models.errors import PaymentError, PaymentErrorReason
from ..models.payment import (
    ApprovedPayment,
    CancelledPayment,
    ClientHandoff,
    OrderMeta,
    ProviderStatus,
)
from ..services.ssm_service import SSMService, SSMServiceError, get_ssm_service
from ..utils.retry import call_with_retry

logger = logging.getLogger(__name__)


class AmountMismatchError(PaymentError):
    """The provider approved a different amount than the locked quote.

    ``approved`` holds the captured charge (when the provider did capture)
    so the caller can cancel it.
    """

    def __init__(
        self,
        expected_amount: int,
        reported_amount: int | None,
        approved: ApprovedPayment | None = None,
    ):
        self.expected_amount = expected_amount
        self.reported_amount = reported_amount
        self.approved = approved
        super().__init__(
            PaymentErrorReason.AMOUNT_MISMATCH,
            details={
                "expected_amount": str(expected_amount),
                "reported_amount": str(reported_amount),
            },
        )


class OrderMismatchError(PaymentError):
    """The provider's payment belongs to a different order.

    Carries no approved charge: the payment is someone else's and must
    never be cancelled on behalf of this order.
    """

    def __init__(self, order_id: str, provider_order_id: str | None):
        self.order_id = order_id
        self.provider_order_id = provider_order_id
        super().__init__(
            PaymentErrorReason.ORDER_MISMATCH,
            details={"order_id": order_id, "provider_order_id": str(provider_order_id)},
        )


class ProviderCredentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    client_key: str
    secret_key: str


class WebhookNotice(BaseModel):
    """Verified-shape (not verified-truth) webhook content."""

    model_config = ConfigDict(frozen=True)

    provider: PaymentProvider
    event_type: str
    order_id: str
    transaction_id: str | None = None
    status: TransactionStatus
    amount: int | None = None


class _RetryableHTTPError(Exception):
    """Transport failure or provider 5xx; retried before giving up."""


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def signatures_match(expected: str, received: str | None) -> bool:
    return received is not None and hmac.compare_digest(expected.lower(), received.lower())


class PaymentGateway(ABC):
    """Common plumbing for provider adapters: credentials, HTTP, retries."""

    provider: PaymentProvider
    client_key_name: str = "client_key"
    secret_key_name: str = "secret_key"

    def __init__(
        self,
        settings: Settings,
        credentials: ProviderCredentials | None = None,
        ssm: SSMService | None = None,
    ) -> None:
        self._settings = settings
        self._credentials = credentials
        self._ssm = ssm

    @property
    @abstractmethod
    def base_url(self) -> str: ...

    # Provider contract

    @abstractmethod
    async def initiate(self, order_id: str, amount: int, meta: OrderMeta) -> ClientHandoff:
        """Build what the front end needs to open the provider widget."""

    @abstractmethod
    async def approve(
        self, transaction_id: str, order_id: str, expected_amount: int
    ) -> ApprovedPayment:
        """Server-side approval; must verify the approved amount.

        Raises:
            AmountMismatchError: provider amount differs from expected_amount
            OrderMismatchError: the transaction belongs to another order
            PaymentError: declined (terminal) or timeout (retryable)
        """

    @abstractmethod
    async def cancel(
        self, transaction_id: str, order_id: str, amount: int, reason: str
    ) -> CancelledPayment:
        """Cancel (refund) all or part of an approved payment."""

    @abstractmethod
    async def get_status(self, order_id: str, transaction_id: str | None = None) -> ProviderStatus:
        """Look up the provider's view of an order."""

    @abstractmethod
    async def verify_callback(self, data: Mapping[str, Any]) -> PaymentCallback:
        """Turn redirect/return parameters into a PaymentCallback.

        Raises:
            PaymentError: the provider reports the user's authentication failed,
                or the callback signature is invalid.
        """

    @abstractmethod
    async def parse_webhook(self, body: bytes) -> WebhookNotice:
        """Parse (and where the provider signs it, verify) a webhook body."""

    # Shared helpers

    async def credentials(self) -> ProviderCredentials:
        """Provider keys, loaded from SSM on first use."""
        if self._credentials is None:
            ssm = self._ssm or get_ssm_service()
            env = self._settings.environment
            try:
                keys = await asyncio.to_thread(
                    ssm.get_provider_secrets,
                    env,
                    self.provider.value,
                    self.client_key_name,
                    self.secret_key_name,
                )
            except SSMServiceError as e:
                logger.error("Missing %s credentials: %s", self.provider.value, e)
                raise PaymentError(
                    PaymentErrorReason.PROVIDER_ERROR,
                    details={"provider": self.provider.value},
                    provider_code="CREDENTIALS_UNAVAILABLE",
                ) from e
            self._credentials = ProviderCredentials(
                client_key=keys[self.client_key_name],
                secret_key=keys[self.secret_key_name],
            )
        return self._credentials

    @abstractmethod
    async def auth_header(self) -> str: ...

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        operation: str,
    ) -> httpx.Response:
        """Send one API call with bounded retries.

        Transport errors, timeouts and 5xx responses are retried with
        exponential backoff. 4xx responses are returned to the caller.

        Raises:
            PaymentError: TIMEOUT (retryable) once attempts are exhausted.
        """
        request_headers = {
            "Authorization": await self.auth_header(),
            "Content-Type": "application/json",
        }
        if headers:
            request_headers.update(headers)
        url = f"{self.base_url}{path}"

        async def attempt() -> httpx.Response:
            try:
                async with httpx.AsyncClient(
                    timeout=self._settings.provider_http_timeout_seconds
                ) as client:
                    response = await client.request(
                        method, url, json=json, headers=request_headers
                    )
            except httpx.TransportError as e:
                raise _RetryableHTTPError(f"{type(e).__name__}: {e}") from e
            if response.status_code >= 500:
                raise _RetryableHTTPError(f"HTTP {response.status_code}")
            return response

        try:
            return await call_with_retry(
                attempt,
                max_attempts=self._settings.provider_max_attempts,
                backoff_seconds=self._settings.provider_backoff_seconds,
                retry_on=(_RetryableHTTPError,),
                operation=f"{self.provider.value}.{operation}",
            )
        except _RetryableHTTPError as e:
            raise PaymentError(
                PaymentErrorReason.TIMEOUT,
                details={"provider": self.provider.value, "operation": operation},
                provider_code=str(e)[:100],
            ) from e

    @staticmethod
    def decode_json(response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {"_status": response.status_code, "_text": response.text[:500]}
        return body if isinstance(body, dict) else {"value": body}


# Korean method names (Toss) and NicePay payMethod codes
_METHOD_MAP: dict[str, PaymentMethod] = {
    "카드": PaymentMethod.CARD,
    "card": PaymentMethod.CARD,
    "가상계좌": PaymentMethod.VBANK,
    "vbank": PaymentMethod.VBANK,
    "계좌이체": PaymentMethod.TRANSFER,
    "bank": PaymentMethod.TRANSFER,
    "간편결제": PaymentMethod.SIMPLE,
}


def map_payment_method(value: str | None) -> PaymentMethod | None:
    if not value:
        return None
    method = _METHOD_MAP.get(value) or _METHOD_MAP.get(value.lower())
    if method is None and "pay" in value.lower():
        return PaymentMethod.SIMPLE
    return method
