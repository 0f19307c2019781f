"""Fixtures for the HTTP contract tests.

The app runs with its real dependency providers against moto, with the
provider keys in mocked Parameter Store and the provider APIs behind
respx. Program dates are relative to the real clock because the API
prices bookings at the current time.
"""

import datetime as dt
from collections.abc import Callable
from typing import Any, Generator

import pytest
from fastapi.testclient import TestClient

MEMBER = {"x-user-sub": "member-1"}
OTHER_MEMBER = {"x-user-sub": "member-2"}
ADMIN = {"x-user-sub": "admin-1", "x-user-groups": "admin"}


@pytest.fixture
def client(create_tables: None, ssm_provider_secrets: None) -> Generator[TestClient, None, None]:
    """TestClient over the real app; one event loop for the whole test."""
    from coop_api.dependencies import reset_services
    from coop_api.main import app

    reset_services()
    with TestClient(app) as test_client:
        yield test_client
    reset_services()


@pytest.fixture
def live_program(put_program: Callable[[Any], Any]) -> Any:
    """An open program starting in 30 days with its early-bird price active."""
    from coop_booking.models.program import Program

    now = dt.datetime.now(dt.UTC).replace(microsecond=0)
    start = now + dt.timedelta(days=30)
    return put_program(
        Program(
            program_id="prog-coding-camp",
            title="Weekend Coding Camp",
            base_price=150_000,
            early_bird_price=120_000,
            early_bird_deadline=now + dt.timedelta(days=7),
            max_participants=20,
            start_date=start,
            end_date=start + dt.timedelta(days=1),
            location="Community Center, Room 2",
        )
    )


@pytest.fixture
def booking_body() -> dict[str, Any]:
    return {
        "program_id": "prog-coding-camp",
        "participant": {
            "name": "홍길동",
            "phone": "010-1234-5678",
            "email": "member@example.org",
        },
        "provider": "toss",
        "expected_amount": 120_000,
    }


@pytest.fixture
def start_booking(
    client: TestClient, live_program: Any, booking_body: dict[str, Any]
) -> Callable[..., dict[str, Any]]:
    """POST /api/bookings as a member and return the response body."""

    def start(headers: dict[str, str] | None = None, **overrides: Any) -> dict[str, Any]:
        response = client.post(
            "/api/bookings", json={**booking_body, **overrides}, headers=headers or MEMBER
        )
        assert response.status_code == 201, response.text
        return response.json()

    return start


@pytest.fixture
def paid_booking(
    client: TestClient,
    start_booking: Callable[..., dict[str, Any]],
    toss_api: Any,
    toss_payment: Callable[..., dict[str, Any]],
) -> dict[str, Any]:
    """A booking confirmed through POST /api/payments/confirm."""
    started = start_booking()
    toss_api.post("/v1/payments/confirm").respond(
        200, json=toss_payment(started["order_id"], 120_000)
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
    assert response.status_code == 200, response.text
    return response.json()
