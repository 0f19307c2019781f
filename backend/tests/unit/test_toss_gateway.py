"""Unit tests for the TossPayments gateway adapter.

The Toss API is replaced by a respx router; no request leaves the process.

Test categories:
- Widget handoff parameters
- Confirm: success, decline, retryable failures, amount and order mismatch
- ALREADY_PROCESSED_PAYMENT recovery through the lookup API
- Cancel and status lookups
- Success redirect and webhook parsing
"""

import base64
import json

import httpx
import pytest

from coop_booking.gateways import AmountMismatchError, OrderMismatchError, TossPaymentsGateway
from coop_booking.models.enums import PaymentMethod, TransactionStatus
from coop_booking.models.errors import ErrorCode, PaymentError, PaymentErrorReason
from coop_booking.models.payment import OrderMeta


@pytest.fixture
def gateway(settings, provider_credentials) -> TossPaymentsGateway:
    return TossPaymentsGateway(settings, provider_credentials)


class TestInitiate:
    async def test_handoff_carries_widget_parameters(self, gateway) -> None:
        meta = OrderMeta(
            order_name="Weekend Coding Camp",
            customer_name="홍길동",
            customer_email="member@example.org",
            success_url="https://coop.example.org/api/payments/toss/success",
            fail_url="https://coop.example.org/payments/failure?orderId=ORDER_1",
        )

        handoff = await gateway.initiate("ORDER_1", 120_000, meta)

        assert handoff.client_key == "test_ck"
        assert handoff.amount == 120_000
        assert handoff.sdk_params["orderId"] == "ORDER_1"
        assert handoff.sdk_params["successUrl"] == meta.success_url
        assert "test_sk" not in json.dumps(handoff.model_dump(mode="json"))


class TestApprove:
    async def test_confirm_success(self, gateway, toss_api, toss_payment) -> None:
        route = toss_api.post("/v1/payments/confirm").respond(
            200, json=toss_payment("ORDER_1", 120_000)
        )

        approved = await gateway.approve("pk_test_0001", "ORDER_1", 120_000)

        assert approved.amount == 120_000
        assert approved.transaction_id == "pk_test_0001"
        assert approved.method == PaymentMethod.CARD
        request = route.calls.last.request
        assert json.loads(request.content) == {
            "paymentKey": "pk_test_0001",
            "orderId": "ORDER_1",
            "amount": 120_000,
        }
        assert request.headers["Idempotency-Key"] == "confirm-ORDER_1"
        expected_auth = base64.b64encode(b"test_sk:").decode()
        assert request.headers["Authorization"] == f"Basic {expected_auth}"

    async def test_decline(self, gateway, toss_api) -> None:
        toss_api.post("/v1/payments/confirm").respond(
            400, json={"code": "REJECT_CARD_COMPANY", "message": "카드사에서 거절했습니다."}
        )

        with pytest.raises(PaymentError) as exc_info:
            await gateway.approve("pk_test_0001", "ORDER_1", 120_000)

        assert exc_info.value.reason == PaymentErrorReason.DECLINED
        assert exc_info.value.provider_code == "REJECT_CARD_COMPANY"
        assert exc_info.value.retryable is False

    async def test_retryable_provider_code_is_timeout(self, gateway, toss_api) -> None:
        toss_api.post("/v1/payments/confirm").respond(
            400, json={"code": "PROVIDER_ERROR", "message": "일시적인 오류"}
        )

        with pytest.raises(PaymentError) as exc_info:
            await gateway.approve("pk_test_0001", "ORDER_1", 120_000)

        assert exc_info.value.reason == PaymentErrorReason.TIMEOUT
        assert exc_info.value.retryable is True

    async def test_server_errors_are_retried_then_timeout(self, gateway, toss_api) -> None:
        route = toss_api.post("/v1/payments/confirm").respond(502)

        with pytest.raises(PaymentError) as exc_info:
            await gateway.approve("pk_test_0001", "ORDER_1", 120_000)

        assert exc_info.value.code == ErrorCode.PAYMENT_TIMEOUT
        assert route.call_count == 2

    async def test_transport_error_then_success(
        self, gateway, toss_api, toss_payment
    ) -> None:
        route = toss_api.post("/v1/payments/confirm")
        route.side_effect = [
            httpx.ConnectTimeout("timed out"),
            httpx.Response(200, json=toss_payment("ORDER_1", 120_000)),
        ]

        approved = await gateway.approve("pk_test_0001", "ORDER_1", 120_000)

        assert approved.amount == 120_000
        assert route.call_count == 2

    async def test_amount_mismatch_keeps_the_approved_charge(
        self, gateway, toss_api, toss_payment
    ) -> None:
        toss_api.post("/v1/payments/confirm").respond(
            200, json=toss_payment("ORDER_1", 1_000)
        )

        with pytest.raises(AmountMismatchError) as exc_info:
            await gateway.approve("pk_test_0001", "ORDER_1", 120_000)

        error = exc_info.value
        assert error.code == ErrorCode.PAYMENT_AMOUNT_MISMATCH
        assert error.expected_amount == 120_000
        assert error.reported_amount == 1_000
        assert error.approved is not None
        assert error.approved.transaction_id == "pk_test_0001"

    async def test_other_order_carries_no_charge(self, gateway, toss_api, toss_payment) -> None:
        toss_api.post("/v1/payments/confirm").respond(
            200, json=toss_payment("ORDER_OTHER", 1_000)
        )

        with pytest.raises(OrderMismatchError) as exc_info:
            await gateway.approve("pk_test_0001", "ORDER_1", 120_000)

        error = exc_info.value
        assert error.code == ErrorCode.PAYMENT_ORDER_MISMATCH
        assert error.provider_order_id == "ORDER_OTHER"
        assert not hasattr(error, "approved")

    async def test_already_processed_payment_of_another_order(
        self, gateway, toss_api, toss_payment
    ) -> None:
        toss_api.post("/v1/payments/confirm").respond(
            400, json={"code": "ALREADY_PROCESSED_PAYMENT", "message": "이미 처리된 결제"}
        )
        toss_api.get("/v1/payments/pk_other_0099").respond(
            200, json=toss_payment("ORDER_OTHER", 120_000, payment_key="pk_other_0099")
        )

        with pytest.raises(OrderMismatchError):
            await gateway.approve("pk_other_0099", "ORDER_1", 120_000)

    async def test_not_done_status_is_declined(self, gateway, toss_api, toss_payment) -> None:
        toss_api.post("/v1/payments/confirm").respond(
            200, json=toss_payment("ORDER_1", 120_000, status="ABORTED")
        )

        with pytest.raises(PaymentError) as exc_info:
            await gateway.approve("pk_test_0001", "ORDER_1", 120_000)

        assert exc_info.value.reason == PaymentErrorReason.DECLINED

    async def test_already_processed_uses_lookup(
        self, gateway, toss_api, toss_payment
    ) -> None:
        toss_api.post("/v1/payments/confirm").respond(
            400, json={"code": "ALREADY_PROCESSED_PAYMENT", "message": "이미 처리된 결제"}
        )
        lookup = toss_api.get("/v1/payments/pk_test_0001").respond(
            200, json=toss_payment("ORDER_1", 120_000)
        )

        approved = await gateway.approve("pk_test_0001", "ORDER_1", 120_000)

        assert lookup.called
        assert approved.amount == 120_000

    async def test_unparseable_response(self, gateway, toss_api) -> None:
        toss_api.post("/v1/payments/confirm").respond(200, json={"unexpected": True})

        with pytest.raises(PaymentError) as exc_info:
            await gateway.approve("pk_test_0001", "ORDER_1", 120_000)

        assert exc_info.value.reason == PaymentErrorReason.PROVIDER_ERROR


class TestCancelAndStatus:
    async def test_cancel(self, gateway, toss_api, toss_payment) -> None:
        route = toss_api.post("/v1/payments/pk_test_0001/cancel").respond(
            200,
            json=toss_payment(
                "ORDER_1",
                120_000,
                status="PARTIAL_CANCELED",
                balanceAmount=60_000,
                cancels=[
                    {
                        "cancelAmount": 60_000,
                        "cancelReason": "고객 요청",
                        "canceledAt": "2026-03-03T09:00:00+09:00",
                    }
                ],
            ),
        )

        cancelled = await gateway.cancel("pk_test_0001", "ORDER_1", 60_000, "고객 요청")

        assert cancelled.cancelled_amount == 60_000
        assert cancelled.remaining_amount == 60_000
        assert cancelled.cancelled_at.isoformat() == "2026-03-03T09:00:00+09:00"
        body = json.loads(route.calls.last.request.content)
        assert body == {"cancelReason": "고객 요청", "cancelAmount": 60_000}

    async def test_cancel_failure(self, gateway, toss_api) -> None:
        toss_api.post("/v1/payments/pk_test_0001/cancel").respond(
            400, json={"code": "ALREADY_CANCELED_PAYMENT", "message": "이미 취소된 결제"}
        )

        with pytest.raises(PaymentError) as exc_info:
            await gateway.cancel("pk_test_0001", "ORDER_1", 120_000, "고객 요청")

        assert exc_info.value.reason == PaymentErrorReason.PROVIDER_ERROR
        assert exc_info.value.provider_code == "ALREADY_CANCELED_PAYMENT"

    async def test_status_by_order_id(self, gateway, toss_api, toss_payment) -> None:
        toss_api.get("/v1/payments/orders/ORDER_1").respond(
            200, json=toss_payment("ORDER_1", 120_000)
        )

        status = await gateway.get_status("ORDER_1")

        assert status.status == TransactionStatus.COMPLETED
        assert status.amount == 120_000
        assert status.transaction_id == "pk_test_0001"

    async def test_unknown_order_is_pending(self, gateway, toss_api) -> None:
        toss_api.get("/v1/payments/orders/ORDER_1").respond(
            404, json={"code": "NOT_FOUND_PAYMENT", "message": "존재하지 않는 결제"}
        )

        status = await gateway.get_status("ORDER_1")

        assert status.status == TransactionStatus.PENDING
        assert status.amount is None

    async def test_status_error(self, gateway, toss_api) -> None:
        toss_api.get("/v1/payments/pk_1").respond(
            401, json={"code": "UNAUTHORIZED_KEY", "message": "인증되지 않은 키"}
        )

        with pytest.raises(PaymentError):
            await gateway.get_status("ORDER_1", "pk_1")


class TestCallbacks:
    async def test_success_redirect(self, gateway) -> None:
        callback = await gateway.verify_callback(
            {"paymentKey": "pk_1", "orderId": "ORDER_1", "amount": "120000"}
        )

        assert callback.transaction_id == "pk_1"
        assert callback.amount == 120_000

    async def test_missing_payment_key(self, gateway) -> None:
        with pytest.raises(PaymentError) as exc_info:
            await gateway.verify_callback({"orderId": "ORDER_1", "code": "PAY_PROCESS_CANCELED"})

        assert exc_info.value.provider_code == "PAY_PROCESS_CANCELED"

    async def test_non_numeric_amount(self, gateway) -> None:
        with pytest.raises(PaymentError) as exc_info:
            await gateway.verify_callback(
                {"paymentKey": "pk_1", "orderId": "ORDER_1", "amount": "12만원"}
            )

        assert exc_info.value.reason == PaymentErrorReason.AMOUNT_MISMATCH

    async def test_webhook(self, gateway, toss_payment) -> None:
        body = json.dumps(
            {
                "eventType": "PAYMENT_STATUS_CHANGED",
                "createdAt": "2026-03-02T10:00:06.000000",
                "data": toss_payment("ORDER_1", 120_000),
            }
        ).encode()

        notice = await gateway.parse_webhook(body)

        assert notice.order_id == "ORDER_1"
        assert notice.status == TransactionStatus.COMPLETED
        assert notice.event_type == "PAYMENT_STATUS_CHANGED"

    async def test_webhook_invalid_json(self, gateway) -> None:
        with pytest.raises(PaymentError):
            await gateway.parse_webhook(b"not json")
