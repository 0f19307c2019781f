"""Contract tests for the payment endpoints.

Test categories:
- Toss success redirect: approve server-side, 303 to the result page
- NicePay return form post
- POST /api/payments/confirm (JSON, authenticated, idempotent)
- POST /api/payments/fail
- GET /api/payments/{order_id}
"""

import hashlib
import json
from urllib.parse import parse_qs, urlsplit

from fastapi.testclient import TestClient
from starlette.status import (
    HTTP_200_OK,
    HTTP_303_SEE_OTHER,
    HTTP_400_BAD_REQUEST,
    HTTP_402_PAYMENT_REQUIRED,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
)

MEMBER = {"x-user-sub": "member-1"}
OTHER_MEMBER = {"x-user-sub": "member-2"}
NICEPAY_TID = "nictest00m01011104191651325596"


def redirect_target(response) -> tuple[str, dict[str, str]]:
    location = urlsplit(response.headers["location"])
    query = {key: values[0] for key, values in parse_qs(location.query).items()}
    return location.path, query


class TestTossSuccessRedirect:
    def test_approves_and_redirects_to_complete(
        self, client: TestClient, start_booking, toss_api, toss_payment
    ) -> None:
        started = start_booking()
        order_id = started["order_id"]
        confirm = toss_api.post("/v1/payments/confirm").respond(
            200, json=toss_payment(order_id, 120_000)
        )

        response = client.get(
            "/api/payments/toss/success",
            params={"paymentKey": "pk_test_0001", "orderId": order_id, "amount": "120000"},
            follow_redirects=False,
        )

        assert response.status_code == HTTP_303_SEE_OTHER
        path, query = redirect_target(response)
        assert path == "/payments/complete"
        assert query["orderId"] == order_id
        assert query["reservationId"]
        assert confirm.called

    def test_decline_redirects_to_failure(
        self, client: TestClient, start_booking, toss_api
    ) -> None:
        started = start_booking()
        toss_api.post("/v1/payments/confirm").respond(
            400, json={"code": "REJECT_CARD_COMPANY", "message": "카드사에서 거절했습니다."}
        )

        response = client.get(
            "/api/payments/toss/success",
            params={
                "paymentKey": "pk_test_0001",
                "orderId": started["order_id"],
                "amount": "120000",
            },
            follow_redirects=False,
        )

        path, query = redirect_target(response)
        assert path == "/payments/failure"
        assert query["code"] == "ERR_PAY_001"
        booking = client.get(f"/api/bookings/{started['order_id']}", headers=MEMBER).json()
        assert booking["state"] == "rolled_back"

    def test_tampered_amount_is_confirmed_at_the_locked_price(
        self, client: TestClient, start_booking, toss_api, toss_payment
    ) -> None:
        """Toss charged what the tampered widget asked for; the charge is returned."""
        started = start_booking()
        order_id = started["order_id"]
        confirm = toss_api.post("/v1/payments/confirm").respond(
            200, json=toss_payment(order_id, 100)
        )
        cancel = toss_api.post("/v1/payments/pk_test_0001/cancel").respond(
            200, json=toss_payment(order_id, 100, status="CANCELED", balanceAmount=0)
        )

        response = client.get(
            "/api/payments/toss/success",
            params={
                "paymentKey": "pk_test_0001",
                "orderId": started["order_id"],
                "amount": "100",
            },
            follow_redirects=False,
        )

        _, query = redirect_target(response)
        assert query["code"] == "ERR_PAY_003"
        assert json.loads(confirm.calls.last.request.content)["amount"] == 120_000
        assert cancel.called
        booking = client.get(f"/api/bookings/{order_id}", headers=MEMBER).json()
        assert booking["state"] == "rolled_back"

    def test_unverifiable_redirect_leaves_the_booking_alone(
        self, client: TestClient, start_booking, toss_api, read_item
    ) -> None:
        """The success URL is public; without a paymentKey nothing changes."""
        started = start_booking()
        confirm = toss_api.post("/v1/payments/confirm")

        response = client.get(
            "/api/payments/toss/success",
            params={"orderId": started["order_id"], "amount": "120000"},
            follow_redirects=False,
        )

        assert response.status_code == HTTP_303_SEE_OTHER
        path, query = redirect_target(response)
        assert path == "/payments/failure"
        assert query["code"] == "ERR_PAY_001"
        assert not confirm.called
        booking = client.get(f"/api/bookings/{started['order_id']}", headers=MEMBER).json()
        assert booking["state"] == "payment_initiated"
        assert read_item("programs", {"program_id": "prog-coding-camp"})[
            "current_participants"
        ] == 1


class TestNicePayReturn:
    def test_form_post_approves(
        self, client: TestClient, start_booking, nicepay_api
    ) -> None:
        started = start_booking(provider="nicepay")
        order_id = started["order_id"]
        assert started["handoff"]["client_key"] == "test_client_nicepay"
        nicepay_api.post(f"/v1/payments/{NICEPAY_TID}").respond(
            200,
            json={
                "resultCode": "0000",
                "resultMsg": "정상 처리되었습니다.",
                "tid": NICEPAY_TID,
                "orderId": order_id,
                "amount": 120_000,
                "status": "paid",
                "payMethod": "card",
                "paidAt": "2026-03-02T10:00:05.000+09:00",
            },
        )
        auth_token = "NICEUNTT0000000001"
        signature = hashlib.sha256(
            f"{auth_token}test_client_nicepay120000test_sk_nicepay".encode()
        ).hexdigest()

        response = client.post(
            "/api/payments/nicepay/return",
            data={
                "authResultCode": "0000",
                "authResultMsg": "인증 성공",
                "tid": NICEPAY_TID,
                "clientId": "test_client_nicepay",
                "orderId": order_id,
                "amount": "120000",
                "authToken": auth_token,
                "signature": signature,
            },
            follow_redirects=False,
        )

        assert response.status_code == HTTP_303_SEE_OTHER
        path, _ = redirect_target(response)
        assert path == "/payments/complete"

    def test_bad_signature_is_refused_without_touching_the_order(
        self, client: TestClient, start_booking, nicepay_api
    ) -> None:
        started = start_booking(provider="nicepay")
        approve = nicepay_api.post(f"/v1/payments/{NICEPAY_TID}")

        response = client.post(
            "/api/payments/nicepay/return",
            data={
                "authResultCode": "0000",
                "tid": NICEPAY_TID,
                "clientId": "test_client_nicepay",
                "orderId": started["order_id"],
                "amount": "120000",
                "authToken": "NICEUNTT0000000001",
                "signature": "0" * 64,
            },
            follow_redirects=False,
        )

        _, query = redirect_target(response)
        assert query["code"] == "ERR_PAY_006"
        assert not approve.called
        booking = client.get(f"/api/bookings/{started['order_id']}", headers=MEMBER).json()
        assert booking["state"] == "payment_initiated"


class TestConfirmPayment:
    def test_confirm_returns_reservation(self, client: TestClient, paid_booking) -> None:
        assert paid_booking["status"] == "confirmed"
        assert paid_booking["payment_status"] == "paid"
        assert paid_booking["amount_paid"] == 120_000
        assert paid_booking["participant_name"] == "홍길동"

    def test_confirm_is_idempotent(
        self, client: TestClient, paid_booking, toss_api
    ) -> None:
        response = client.post(
            "/api/payments/confirm",
            json={
                "order_id": paid_booking["order_id"],
                "transaction_id": "pk_test_0001",
                "amount": 120_000,
            },
            headers=MEMBER,
        )

        assert response.status_code == HTTP_200_OK
        assert response.json()["reservation_id"] == paid_booking["reservation_id"]

    def test_other_member_cannot_confirm(self, client: TestClient, start_booking) -> None:
        started = start_booking()

        response = client.post(
            "/api/payments/confirm",
            json={
                "order_id": started["order_id"],
                "transaction_id": "pk_test_0001",
                "amount": 120_000,
            },
            headers=OTHER_MEMBER,
        )

        assert response.status_code == HTTP_403_FORBIDDEN

    def test_declined(self, client: TestClient, start_booking, toss_api) -> None:
        started = start_booking()
        toss_api.post("/v1/payments/confirm").respond(
            400, json={"code": "INVALID_CARD_EXPIRATION", "message": "카드 유효기간 오류"}
        )

        response = client.post(
            "/api/payments/confirm",
            json={
                "order_id": started["order_id"],
                "transaction_id": "pk_test_0001",
                "amount": 120_000,
            },
            headers=MEMBER,
        )

        assert response.status_code == HTTP_402_PAYMENT_REQUIRED
        body = response.json()
        assert body["error_code"] == "ERR_PAY_001"
        assert body["details"]["provider_code"] == "INVALID_CARD_EXPIRATION"


class TestFailPayment:
    def test_fail_releases_slot(self, client: TestClient, start_booking, read_item) -> None:
        started = start_booking()

        response = client.post(
            "/api/payments/fail",
            json={"order_id": started["order_id"], "code": "PAY_PROCESS_CANCELED"},
            headers=MEMBER,
        )

        assert response.status_code == HTTP_200_OK
        assert response.json()["state"] == "rolled_back"
        assert read_item("programs", {"program_id": "prog-coding-camp"})[
            "current_participants"
        ] == 0

    def test_confirm_after_fail_is_expired(self, client: TestClient, start_booking) -> None:
        started = start_booking()
        client.post("/api/payments/fail", json={"order_id": started["order_id"]}, headers=MEMBER)

        response = client.post(
            "/api/payments/confirm",
            json={
                "order_id": started["order_id"],
                "transaction_id": "pk_test_0001",
                "amount": 120_000,
            },
            headers=MEMBER,
        )

        assert response.status_code == HTTP_400_BAD_REQUEST
        assert response.json()["error_code"] == "ERR_VAL_004"


class TestGetPayment:
    def test_owner_sees_completed_payment(self, client: TestClient, paid_booking) -> None:
        response = client.get(f"/api/payments/{paid_booking['order_id']}", headers=MEMBER)

        assert response.status_code == HTTP_200_OK
        body = response.json()
        assert body["status"] == "completed"
        assert body["amount"] == 120_000
        assert body["provider"] == "toss"
        assert body["reservation_id"] == paid_booking["reservation_id"]
        assert "raw_data" not in body

    def test_other_member(self, client: TestClient, paid_booking) -> None:
        response = client.get(
            f"/api/payments/{paid_booking['order_id']}", headers=OTHER_MEMBER
        )

        assert response.status_code == HTTP_403_FORBIDDEN

    def test_unknown_order(self, client: TestClient) -> None:
        response = client.get("/api/payments/ORDER_missing", headers=MEMBER)

        assert response.status_code == HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "ERR_NF_002"
