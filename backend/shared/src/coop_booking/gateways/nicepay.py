"""NicePay adapter (JS SDK authentication + server approval).

After card authentication NicePay posts an auth result form to the
return URL. The signature of that form is checked, then the charge is
approved with ``POST /v1/payments/{tid}``. resultCode ``0000`` is success.
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
    NicePayApprovalPayload,
    NicePayAuthResult,
    NicePayWebhookPayload,
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
    sha256_hex,
    signatures_match,
)

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0000"

NICEPAY_STATUS_MAP: dict[str, TransactionStatus] = {
    "paid": TransactionStatus.COMPLETED,
    "cancelled": TransactionStatus.CANCELLED,
    "partialCancelled": TransactionStatus.CANCELLED,
    "failed": TransactionStatus.FAILED,
    "expired": TransactionStatus.FAILED,
}


def map_nicepay_status(status: str | None) -> TransactionStatus:
    return NICEPAY_STATUS_MAP.get(status or "", TransactionStatus.PENDING)


class NicePayGateway(PaymentGateway):
    provider = PaymentProvider.NICEPAY
    client_key_name = "client_id"

    @property
    def base_url(self) -> str:
        return self._settings.nicepay_api_base_url.rstrip("/")

    async def auth_header(self) -> str:
        creds = await self.credentials()
        token = base64.b64encode(f"{creds.client_key}:{creds.secret_key}".encode()).decode()
        return f"Basic {token}"

    async def initiate(self, order_id: str, amount: int, meta: OrderMeta) -> ClientHandoff:
        creds = await self.credentials()
        sdk_params: dict[str, Any] = {
            "clientId": creds.client_key,
            "method": "card",
            "orderId": order_id,
            "amount": amount,
            "goodsName": meta.order_name,
            "returnUrl": meta.success_url,
            "buyerName": meta.customer_name,
            "buyerEmail": meta.customer_email,
        }
        if meta.customer_phone:
            sdk_params["buyerTel"] = meta.customer_phone
        return ClientHandoff(
            provider=self.provider,
            order_id=order_id,
            amount=amount,
            currency=self._settings.currency,
            order_name=meta.order_name,
            client_key=creds.client_key,
            success_url=meta.success_url,
            fail_url=meta.fail_url,
            sdk_params=sdk_params,
        )

    async def approve(
        self, transaction_id: str, order_id: str, expected_amount: int
    ) -> ApprovedPayment:
        response = await self.request(
            "POST",
            f"/v1/payments/{transaction_id}",
            json={"amount": expected_amount},
            operation="approve",
        )
        payment = parse_payload(
            NicePayApprovalPayload, self.decode_json(response), provider="nicepay"
        )
        if isinstance(payment, UnknownProviderPayload):
            raise PaymentError(
                PaymentErrorReason.PROVIDER_ERROR,
                details={"order_id": order_id},
                provider_code="UNPARSEABLE_RESPONSE",
            )

        if not payment.is_success:
            # A repeated approve fails; the lookup tells whether it was already paid
            status = await self.get_status(order_id, transaction_id)
            if status.status == TransactionStatus.COMPLETED and isinstance(
                status.payload, NicePayApprovalPayload
            ):
                logger.info("NicePay %s already approved, using lookup", order_id)
                payment = status.payload
            else:
                logger.warning(
                    "NicePay approve failed for %s: %s %s",
                    order_id,
                    payment.result_code,
                    payment.result_msg,
                )
                reason = (
                    PaymentErrorReason.TIMEOUT
                    if is_provider_error_retryable(payment.result_code)
                    else PaymentErrorReason.DECLINED
                )
                raise PaymentError(
                    reason, details={"order_id": order_id}, provider_code=payment.result_code
                )

        await self._check_response_signature(payment)
        return self._to_approved(payment, transaction_id, order_id, expected_amount)

    async def cancel(
        self, transaction_id: str, order_id: str, amount: int, reason: str
    ) -> CancelledPayment:
        response = await self.request(
            "POST",
            f"/v1/payments/{transaction_id}/cancel",
            json={"reason": reason, "orderId": order_id, "cancelAmt": amount},
            operation="cancel",
        )
        payment = parse_payload(
            NicePayApprovalPayload, self.decode_json(response), provider="nicepay"
        )
        if isinstance(payment, UnknownProviderPayload) or not payment.is_success:
            code = None if isinstance(payment, UnknownProviderPayload) else payment.result_code
            logger.error("NicePay cancel failed for %s: %s", order_id, code)
            raise PaymentError(
                PaymentErrorReason.PROVIDER_ERROR,
                details={"order_id": order_id, "operation": "cancel"},
                provider_code=code,
            )
        return CancelledPayment(
            transaction_id=transaction_id,
            cancelled_amount=amount,
            remaining_amount=payment.balance_amt,
            cancelled_at=parse_datetime(payment.cancelled_at) or utc_now(),
            payload=payment,
        )

    async def get_status(self, order_id: str, transaction_id: str | None = None) -> ProviderStatus:
        path = (
            f"/v1/payments/{transaction_id}"
            if transaction_id
            else f"/v1/payments/find/{order_id}"
        )
        response = await self.request("GET", path, operation="status")
        payment = parse_payload(
            NicePayApprovalPayload, self.decode_json(response), provider="nicepay"
        )
        if isinstance(payment, UnknownProviderPayload) or not payment.is_success:
            # Unknown order or unreadable answer: nothing is known to be paid
            return ProviderStatus(
                order_id=order_id,
                transaction_id=transaction_id,
                status=TransactionStatus.PENDING,
                payload=payment,
            )
        return ProviderStatus(
            order_id=payment.order_id or order_id,
            transaction_id=payment.tid or transaction_id,
            status=map_nicepay_status(payment.status),
            amount=payment.amount,
            method=map_payment_method(payment.pay_method),
            approved_at=parse_datetime(payment.paid_at),
            payload=payment,
        )

    async def verify_callback(self, data: Mapping[str, Any]) -> PaymentCallback:
        auth = parse_payload(NicePayAuthResult, dict(data), provider="nicepay")
        if isinstance(auth, UnknownProviderPayload):
            raise PaymentError(
                PaymentErrorReason.DECLINED,
                details={"order_id": str(data.get("orderId", ""))},
                provider_code=str(data.get("authResultCode") or "INVALID_AUTH_RESULT"),
            )
        if not auth.is_authenticated:
            logger.info(
                "NicePay authentication failed for %s: %s %s",
                auth.order_id,
                auth.auth_result_code,
                auth.auth_result_msg,
            )
            raise PaymentError(
                PaymentErrorReason.DECLINED,
                details={"order_id": auth.order_id},
                provider_code=auth.auth_result_code,
            )

        creds = await self.credentials()
        expected = sha256_hex(f"{auth.auth_token}{auth.client_id}{auth.amount}{creds.secret_key}")
        if auth.client_id != creds.client_key or not signatures_match(expected, auth.signature):
            logger.error("NicePay auth result signature mismatch for %s", auth.order_id)
            raise PaymentError(
                PaymentErrorReason.INVALID_SIGNATURE, details={"order_id": auth.order_id}
            )
        return PaymentCallback(
            order_id=auth.order_id,
            transaction_id=auth.tid,
            amount=auth.amount,
            payload=auth,
        )

    async def parse_webhook(self, body: bytes) -> WebhookNotice:
        try:
            data = json.loads(body)
        except ValueError as e:
            raise PaymentError(
                PaymentErrorReason.PROVIDER_ERROR, provider_code="INVALID_JSON"
            ) from e
        event = parse_payload(NicePayWebhookPayload, data, provider="nicepay")
        if isinstance(event, UnknownProviderPayload):
            raise PaymentError(
                PaymentErrorReason.PROVIDER_ERROR, provider_code="UNKNOWN_WEBHOOK_SHAPE"
            )

        creds = await self.credentials()
        expected = sha256_hex(f"{event.tid}{event.amount}{event.edi_date}{creds.secret_key}")
        if not signatures_match(expected, event.signature):
            raise PaymentError(
                PaymentErrorReason.INVALID_SIGNATURE, details={"order_id": event.order_id}
            )
        return WebhookNotice(
            provider=self.provider,
            event_type=event.status,
            order_id=event.order_id,
            transaction_id=event.tid,
            status=map_nicepay_status(event.status),
            amount=event.amount,
        )

    async def _check_response_signature(self, payment: NicePayApprovalPayload) -> None:
        if not (payment.signature and payment.edi_date and payment.tid):
            return
        creds = await self.credentials()
        expected = sha256_hex(
            f"{payment.tid}{payment.amount}{payment.edi_date}{creds.secret_key}"
        )
        if not signatures_match(expected, payment.signature):
            logger.error("NicePay approval signature mismatch for tid %s", payment.tid)
            raise PaymentError(
                PaymentErrorReason.INVALID_SIGNATURE, details={"tid": payment.tid}
            )

    def _to_approved(
        self,
        payment: NicePayApprovalPayload,
        transaction_id: str,
        order_id: str,
        expected_amount: int,
    ) -> ApprovedPayment:
        if payment.order_id and payment.order_id != order_id:
            logger.error(
                "NicePay approved order %s while confirming %s", payment.order_id, order_id
            )
            raise OrderMismatchError(order_id, payment.order_id)
        approved = ApprovedPayment(
            transaction_id=payment.tid or transaction_id,
            order_id=payment.order_id or order_id,
            amount=payment.amount if payment.amount is not None else -1,
            method=map_payment_method(payment.pay_method),
            approved_at=parse_datetime(payment.paid_at) or utc_now(),
            payload=payment,
        )
        if map_nicepay_status(payment.status) != TransactionStatus.COMPLETED:
            raise PaymentError(
                PaymentErrorReason.DECLINED,
                details={"order_id": order_id, "status": str(payment.status)},
            )
        if payment.amount != expected_amount:
            raise AmountMismatchError(expected_amount, payment.amount, approved)
        return approved
