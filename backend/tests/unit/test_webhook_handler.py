"""Unit tests for WebhookHandler.

Test categories:
- A webhook settles the order through reconciliation
- Redeliveries are recognised by body hash
- Unknown orders are recorded and skipped
- Forged or retryable deliveries record nothing
"""

import json

import pytest

from coop_booking.models.enums import BookingState, PaymentProvider
from coop_booking.models.errors import ErrorCode, PaymentError
from coop_booking.services.webhook_handler import WebhookHandler


@pytest.fixture
def handler(db, orchestrator, gateway_factory, clock) -> WebhookHandler:
    return WebhookHandler(db, orchestrator, gateway_factory, clock=clock)


@pytest.fixture
async def order_id(orchestrator, put_program, make_program, booking_request) -> str:
    put_program(make_program())
    started = await orchestrator.start_booking(booking_request())
    return started.session.order_id


def toss_webhook(payment: dict) -> bytes:
    return json.dumps(
        {
            "eventType": "PAYMENT_STATUS_CHANGED",
            "createdAt": "2026-03-02T10:00:06.000000",
            "data": payment,
        }
    ).encode()


class TestTossWebhook:
    async def test_webhook_commits_paid_order(
        self, handler, order_id, toss_api, toss_payment, read_item
    ) -> None:
        toss_api.get(f"/v1/payments/orders/{order_id}").respond(
            200, json=toss_payment(order_id, 120_000)
        )
        body = toss_webhook(toss_payment(order_id, 120_000))

        result = await handler.handle(PaymentProvider.TOSS, body)

        assert result.processing_result == "success"
        assert result.order_id == order_id
        assert result.message == "state=committed"
        assert read_item("booking-sessions", {"order_id": order_id})["state"] == (
            BookingState.COMMITTED.value
        )
        event = read_item("payment-webhook-events", {"event_id": result.event_id})
        assert event["processing_result"] == "success"
        assert event["provider"] == "toss"

    async def test_redelivery_is_a_duplicate(
        self, handler, order_id, toss_api, toss_payment
    ) -> None:
        status = toss_api.get(f"/v1/payments/orders/{order_id}").respond(
            200, json=toss_payment(order_id, 120_000)
        )
        body = toss_webhook(toss_payment(order_id, 120_000))
        await handler.handle(PaymentProvider.TOSS, body)

        again = await handler.handle(PaymentProvider.TOSS, body)

        assert again.processing_result == "duplicate"
        assert status.call_count == 1

    async def test_unknown_order_is_skipped(
        self, handler, create_tables, toss_payment, read_item
    ) -> None:
        body = toss_webhook(toss_payment("ORDER_UNKNOWN", 120_000))

        result = await handler.handle(PaymentProvider.TOSS, body)

        assert result.processing_result == "skipped"
        assert read_item("payment-webhook-events", {"event_id": result.event_id})

    async def test_retryable_failure_records_nothing(
        self, handler, order_id, toss_api, toss_payment, scan_table
    ) -> None:
        """The provider redelivers when the response is not 2xx."""
        toss_api.get(f"/v1/payments/orders/{order_id}").respond(503)

        with pytest.raises(PaymentError) as exc_info:
            await handler.handle(PaymentProvider.TOSS, toss_webhook(toss_payment(order_id, 120_000)))

        assert exc_info.value.retryable is True
        assert scan_table("payment-webhook-events") == []

    def test_event_id_is_body_hash(self) -> None:
        assert WebhookHandler.compute_event_id(b"a") == WebhookHandler.compute_event_id(b"a")
        assert WebhookHandler.compute_event_id(b"a") != WebhookHandler.compute_event_id(b"b")


class TestNicePayWebhook:
    async def test_forged_signature(self, handler, create_tables, scan_table) -> None:
        body = json.dumps(
            {
                "resultCode": "0000",
                "tid": "nictest00m01011104191651325596",
                "orderId": "ORDER_1",
                "amount": 120000,
                "status": "paid",
                "ediDate": "2026-03-02T10:00:05.000+09:00",
                "signature": "0" * 64,
            }
        ).encode()

        with pytest.raises(PaymentError) as exc_info:
            await handler.handle(PaymentProvider.NICEPAY, body)

        assert exc_info.value.code == ErrorCode.INVALID_WEBHOOK_SIGNATURE
        assert scan_table("payment-webhook-events") == []
