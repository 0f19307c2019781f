"""TossPayments adapter (card widget + server-side confirm).

The widget redirects the browser to successUrl with ``paymentKey``,
``orderId`` and ``amount``; the charge only exists once
``POST /v1/payments/confirm`` succeeds.
"""

import base64
import json
import logging
from collections.abc import Mapping
from typing import Any

from ..models.booking import PaymentCallback
from ..models.enums import PaymentProvider, TransactionStatus
from ..models.errors import PaymentError, PaymentErrorReason, is_provider_error_retryable
from ..models.payment import (
    ApprovedPayment,
    CancelledPayment,
    ClientHandoff,
    OrderMeta,
    ProviderStatus,
)
from ..models.provider_payloads import (
    TossErrorPayload,
    TossPaymentPayload,
    TossWebhookPayload,
    UnknownProviderPayload,
    parse_payload,
)
from ..utils.clock import parse_datetime, utc_now
from .base import (
    AmountMismatchError,
    OrderMismatchError,
    PaymentGateway,
    WebhookNotice,
    map_payment_method,
)

logger = logging.getLogger(__name__)

TOSS_STATUS_MAP: dict[str, TransactionStatus] = {
    "DONE": TransactionStatus.COMPLETED,
    "CANCELED": TransactionStatus.CANCELLED,
    "PARTIAL_CANCELED": TransactionStatus.CANCELLED,
    "ABORTED": TransactionStatus.FAILED,
    "EXPIRED": TransactionStatus.FAILED,
}

ALREADY_PROCESSED = "ALREADY_PROCESSED_PAYMENT"
NOT_FOUND_CODES = {"NOT_FOUND_PAYMENT", "NOT_FOUND_PAYMENT_SESSION", "NOT_FOUND"}


def map_toss_status(status: str | None) -> TransactionStatus:
    return TOSS_STATUS_MAP.get(status or "", TransactionStatus.PENDING)


class TossPaymentsGateway(PaymentGateway):
    provider = PaymentProvider.TOSS

    @property
    def base_url(self) -> str:
        return self._settings.toss_api_base_url.rstrip("/")

    async def auth_header(self) -> str:
        creds = await self.credentials()
        token = base64.b64encode(f"{creds.secret_key}:".encode()).decode()
        return f"Basic {token}"

    async def initiate(self, order_id: str, amount: int, meta: OrderMeta) -> ClientHandoff:
        creds = await self.credentials()
        return ClientHandoff(
            provider=self.provider,
            order_id=order_id,
            amount=amount,
            currency=self._settings.currency,
            order_name=meta.order_name,
            client_key=creds.client_key,
            success_url=meta.success_url,
            fail_url=meta.fail_url,
            sdk_params={
                "orderId": order_id,
                "orderName": meta.order_name,
                "amount": amount,
                "customerName": meta.customer_name,
                "customerEmail": meta.customer_email,
                "successUrl": meta.success_url,
                "failUrl": meta.fail_url,
            },
        )

    async def approve(
        self, transaction_id: str, order_id: str, expected_amount: int
    ) -> ApprovedPayment:
        response = await self.request(
            "POST",
            "/v1/payments/confirm",
            json={"paymentKey": transaction_id, "orderId": order_id, "amount": expected_amount},
            headers={"Idempotency-Key": f"confirm-{order_id}"},
            operation="confirm",
        )
        body = self.decode_json(response)

        if response.status_code != 200:
            error = parse_payload(TossErrorPayload, body, provider="toss")
            code = error.code if isinstance(error, TossErrorPayload) else None
            if code == ALREADY_PROCESSED:
                # Confirmed by an earlier attempt: trust only the lookup
                logger.info("Toss payment %s already processed, looking it up", order_id)
                payment = await self._fetch(f"/v1/payments/{transaction_id}", "lookup")
            else:
                logger.warning("Toss confirm failed for %s: %s", order_id, code or body)
                reason = (
                    PaymentErrorReason.TIMEOUT
                    if is_provider_error_retryable(code)
                    else PaymentErrorReason.DECLINED
                )
                raise PaymentError(reason, details={"order_id": order_id}, provider_code=code)
        else:
            payment = parse_payload(TossPaymentPayload, body, provider="toss")

        if isinstance(payment, UnknownProviderPayload):
            raise PaymentError(
                PaymentErrorReason.PROVIDER_ERROR,
                details={"order_id": order_id},
                provider_code="UNPARSEABLE_RESPONSE",
            )
        return self._to_approved(payment, transaction_id, order_id, expected_amount)

    async def cancel(
        self, transaction_id: str, order_id: str, amount: int, reason: str
    ) -> CancelledPayment:
        response = await self.request(
            "POST",
            f"/v1/payments/{transaction_id}/cancel",
            json={"cancelReason": reason, "cancelAmount": amount},
            headers={"Idempotency-Key": f"cancel-{order_id}-{amount}"},
            operation="cancel",
        )
        body = self.decode_json(response)
        if response.status_code != 200:
            error = parse_payload(TossErrorPayload, body, provider="toss")
            code = error.code if isinstance(error, TossErrorPayload) else None
            logger.error("Toss cancel failed for %s: %s", order_id, code or body)
            raise PaymentError(
                PaymentErrorReason.PROVIDER_ERROR,
                details={"order_id": order_id, "operation": "cancel"},
                provider_code=code,
            )

        payment = parse_payload(TossPaymentPayload, body, provider="toss")
        cancelled_at = utc_now()
        remaining = None
        if isinstance(payment, TossPaymentPayload):
            remaining = payment.balance_amount
            if payment.cancels:
                cancelled_at = parse_datetime(payment.cancels[-1].canceled_at) or cancelled_at
        return CancelledPayment(
            transaction_id=transaction_id,
            cancelled_amount=amount,
            remaining_amount=remaining,
            cancelled_at=cancelled_at,
            payload=payment,
        )

    async def get_status(self, order_id: str, transaction_id: str | None = None) -> ProviderStatus:
        path = (
            f"/v1/payments/{transaction_id}"
            if transaction_id
            else f"/v1/payments/orders/{order_id}"
        )
        response = await self.request("GET", path, operation="status")
        body = self.decode_json(response)

        if response.status_code == 404:
            return ProviderStatus(
                order_id=order_id,
                transaction_id=transaction_id,
                status=TransactionStatus.PENDING,
                payload=parse_payload(TossErrorPayload, body, provider="toss"),
            )
        if response.status_code != 200:
            error = parse_payload(TossErrorPayload, body, provider="toss")
            raise PaymentError(
                PaymentErrorReason.PROVIDER_ERROR,
                details={"order_id": order_id, "operation": "status"},
                provider_code=error.code if isinstance(error, TossErrorPayload) else None,
            )

        payment = parse_payload(TossPaymentPayload, body, provider="toss")
        if isinstance(payment, UnknownProviderPayload):
            return ProviderStatus(
                order_id=order_id,
                transaction_id=transaction_id,
                status=TransactionStatus.PENDING,
                payload=payment,
            )
        return ProviderStatus(
            order_id=payment.order_id,
            transaction_id=payment.payment_key,
            status=map_toss_status(payment.status),
            amount=payment.total_amount,
            method=map_payment_method(payment.method),
            approved_at=parse_datetime(payment.approved_at),
            payload=payment,
        )

    async def verify_callback(self, data: Mapping[str, Any]) -> PaymentCallback:
        payment_key = data.get("paymentKey")
        order_id = data.get("orderId")
        amount = data.get("amount")
        if not payment_key or not order_id or amount is None:
            raise PaymentError(
                PaymentErrorReason.DECLINED,
                details={"order_id": str(order_id or "")},
                provider_code=str(data.get("code") or "MISSING_PARAMETERS"),
            )
        try:
            reported = int(amount)
        except (TypeError, ValueError) as e:
            raise PaymentError(
                PaymentErrorReason.AMOUNT_MISMATCH,
                details={"order_id": str(order_id), "reported_amount": str(amount)},
            ) from e
        return PaymentCallback(
            order_id=str(order_id),
            transaction_id=str(payment_key),
            amount=reported,
        )

    async def parse_webhook(self, body: bytes) -> WebhookNotice:
        try:
            data = json.loads(body)
        except ValueError as e:
            raise PaymentError(
                PaymentErrorReason.PROVIDER_ERROR, provider_code="INVALID_JSON"
            ) from e
        event = parse_payload(TossWebhookPayload, data, provider="toss")
        if isinstance(event, UnknownProviderPayload):
            raise PaymentError(
                PaymentErrorReason.PROVIDER_ERROR, provider_code="UNKNOWN_WEBHOOK_SHAPE"
            )
        return WebhookNotice(
            provider=self.provider,
            event_type=event.event_type,
            order_id=event.data.order_id,
            transaction_id=event.data.payment_key,
            status=map_toss_status(event.data.status),
            amount=event.data.total_amount,
        )

    async def _fetch(self, path: str, operation: str) -> TossPaymentPayload | UnknownProviderPayload:
        response = await self.request("GET", path, operation=operation)
        return parse_payload(TossPaymentPayload, self.decode_json(response), provider="toss")

    def _to_approved(
        self,
        payment: TossPaymentPayload,
        transaction_id: str,
        order_id: str,
        expected_amount: int,
    ) -> ApprovedPayment:
        if payment.order_id != order_id:
            logger.error(
                "Toss approved order %s while confirming %s", payment.order_id, order_id
            )
            raise OrderMismatchError(order_id, payment.order_id)
        status = map_toss_status(payment.status)
        approved = ApprovedPayment(
            transaction_id=payment.payment_key or transaction_id,
            order_id=payment.order_id,
            amount=payment.total_amount,
            method=map_payment_method(payment.method),
            approved_at=parse_datetime(payment.approved_at) or utc_now(),
            payload=payment,
        )
        if status != TransactionStatus.COMPLETED:
            raise PaymentError(
                PaymentErrorReason.DECLINED,
                details={"order_id": order_id, "status": payment.status},
            )
        if payment.total_amount != expected_amount:
            raise AmountMismatchError(expected_amount, payment.total_amount, approved)
        return approved
