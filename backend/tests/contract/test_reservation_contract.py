"""Contract tests for the reservation endpoints.

Test categories:
- Listing and reading reservations (ownership)
- Cancellation with a policy refund
- Admin participant list
"""

import json

from fastapi.testclient import TestClient
from starlette.status import (
    HTTP_200_OK,
    HTTP_400_BAD_REQUEST,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
)

MEMBER = {"x-user-sub": "member-1"}
OTHER_MEMBER = {"x-user-sub": "member-2"}
ADMIN = {"x-user-sub": "admin-1", "x-user-groups": "admin"}


class TestReadReservations:
    def test_list_mine(self, client: TestClient, paid_booking) -> None:
        response = client.get("/api/reservations", headers=MEMBER)

        assert response.status_code == HTTP_200_OK
        body = response.json()
        assert body["total_count"] == 1
        assert body["reservations"][0]["reservation_id"] == paid_booking["reservation_id"]

    def test_other_member_sees_nothing(self, client: TestClient, paid_booking) -> None:
        response = client.get("/api/reservations", headers=OTHER_MEMBER)

        assert response.json() == {"reservations": [], "total_count": 0}

    def test_get_by_owner(self, client: TestClient, paid_booking) -> None:
        response = client.get(
            f"/api/reservations/{paid_booking['reservation_id']}", headers=MEMBER
        )

        assert response.status_code == HTTP_200_OK
        assert response.json()["order_id"] == paid_booking["order_id"]

    def test_get_by_other_member(self, client: TestClient, paid_booking) -> None:
        response = client.get(
            f"/api/reservations/{paid_booking['reservation_id']}", headers=OTHER_MEMBER
        )

        assert response.status_code == HTTP_403_FORBIDDEN
        assert response.json()["error_code"] == "ERR_AUTH_002"

    def test_get_unknown(self, client: TestClient, create_tables) -> None:
        response = client.get("/api/reservations/res-missing", headers=MEMBER)

        assert response.status_code == HTTP_404_NOT_FOUND
        assert response.json()["error_code"] == "ERR_NF_003"


class TestCancelReservation:
    def test_cancel_refunds_in_full(
        self, client: TestClient, paid_booking, toss_api, toss_payment, read_item
    ) -> None:
        """The program starts in 30 days, so the whole amount comes back."""
        cancel = toss_api.post("/v1/payments/pk_test_0001/cancel").respond(
            200,
            json=toss_payment(
                paid_booking["order_id"], 120_000, status="CANCELED", balanceAmount=0
            ),
        )

        response = client.post(
            f"/api/reservations/{paid_booking['reservation_id']}/cancel",
            json={"reason": "일정 변경"},
            headers=MEMBER,
        )

        assert response.status_code == HTTP_200_OK
        body = response.json()
        assert body["reservation"]["status"] == "cancelled"
        assert body["reservation"]["payment_status"] == "refunded"
        assert body["refund"]["amount"] == 120_000
        assert body["refund"]["status"] == "completed"
        assert body["refund_policy"]["refund_percentage"] == 100
        assert json.loads(cancel.calls.last.request.content)["cancelAmount"] == 120_000
        program = read_item("programs", {"program_id": "prog-coding-camp"})
        assert program["current_participants"] == 0

    def test_member_cannot_override_refund(self, client: TestClient, paid_booking) -> None:
        response = client.post(
            f"/api/reservations/{paid_booking['reservation_id']}/cancel",
            json={"reason": "일정 변경", "refund_amount": 1},
            headers=MEMBER,
        )

        assert response.status_code == HTTP_403_FORBIDDEN

    def test_cancel_twice(
        self, client: TestClient, paid_booking, toss_api, toss_payment
    ) -> None:
        toss_api.post("/v1/payments/pk_test_0001/cancel").respond(
            200, json=toss_payment(paid_booking["order_id"], 120_000, status="CANCELED")
        )
        url = f"/api/reservations/{paid_booking['reservation_id']}/cancel"
        client.post(url, json={"reason": "일정 변경"}, headers=MEMBER)

        response = client.post(url, json={"reason": "일정 변경"}, headers=MEMBER)

        assert response.status_code == HTTP_400_BAD_REQUEST
        assert response.json()["error_code"] == "ERR_VAL_007"


class TestAdminParticipantList:
    def test_admin_lists_participants(self, client: TestClient, paid_booking) -> None:
        response = client.get(
            "/api/admin/programs/prog-coding-camp/reservations", headers=ADMIN
        )

        assert response.status_code == HTTP_200_OK
        assert [r["participant_name"] for r in response.json()["reservations"]] == ["홍길동"]

    def test_member_is_refused(self, client: TestClient, paid_booking) -> None:
        response = client.get(
            "/api/admin/programs/prog-coding-camp/reservations", headers=MEMBER
        )

        assert response.status_code == HTTP_403_FORBIDDEN
