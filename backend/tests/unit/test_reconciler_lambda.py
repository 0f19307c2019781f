"""Unit tests for the payment reconciler Lambda handler.

The handler wires its own services from the environment, so the
abandoned order is started an hour before the real clock and the sweep
runs against the same mocked tables.
"""

import asyncio
import datetime as dt
from types import SimpleNamespace
from typing import Any

import pytest

from coop_booking.models.enums import BookingState
from coop_booking.services.capacity import CapacityGuard
from coop_booking.services.catalog import CatalogStore
from coop_booking.services.notification_service import NotificationDispatcher
from coop_booking.services.orchestrator import ReservationOrchestrator
from coop_booking.services.pricing import PricingEngine
from coop_booking.services.reservation_repository import ReservationRepository


@pytest.fixture
def abandoned_order(
    db: Any,
    settings: Any,
    gateway_factory: Any,
    ses_client: Any,
    sns_client: Any,
    ssm_provider_secrets: None,
    put_program: Any,
    make_program: Any,
    booking_request: Any,
) -> str:
    """A Toss order whose payment window closed 30 minutes ago."""
    started_at = dt.datetime.now(dt.UTC) - dt.timedelta(hours=1)
    start = started_at + dt.timedelta(days=30)
    put_program(
        make_program(
            start_date=start,
            end_date=start + dt.timedelta(days=1),
            early_bird_deadline=started_at + dt.timedelta(days=7),
        )
    )

    def clock() -> dt.datetime:
        return started_at

    orchestrator = ReservationOrchestrator(
        catalog=CatalogStore(db),
        capacity=CapacityGuard(db, clock=clock),
        pricing=PricingEngine(),
        repository=ReservationRepository(db),
        notifier=NotificationDispatcher(
            db, settings, ses_client=ses_client, sns_client=sns_client, clock=clock
        ),
        settings=settings,
        gateway_factory=gateway_factory,
        clock=clock,
    )
    started = asyncio.run(orchestrator.start_booking(booking_request()))
    return started.session.order_id


class TestHandler:
    def test_unpaid_order_is_rolled_back(self, abandoned_order, toss_api, read_item) -> None:
        from handler import handler

        toss_api.get(f"/v1/payments/orders/{abandoned_order}").respond(
            404, json={"code": "NOT_FOUND_PAYMENT", "message": "존재하지 않는 결제 정보 입니다."}
        )

        result = handler({"id": "evt-1"}, SimpleNamespace(aws_request_id="req-1"))

        assert result["statusCode"] == 200
        assert result["body"]["checked"] == 1
        assert result["body"]["rolled_back"] == 1
        session = read_item("booking-sessions", {"order_id": abandoned_order})
        assert session["state"] == BookingState.ROLLED_BACK.value
        program = read_item("programs", {"program_id": "prog-coding-camp"})
        assert program["current_participants"] == 0

    def test_paid_order_is_committed(
        self, abandoned_order, toss_api, toss_payment, read_item
    ) -> None:
        """The member paid but never came back from the widget."""
        from handler import handler

        toss_api.get(f"/v1/payments/orders/{abandoned_order}").respond(
            200, json=toss_payment(abandoned_order, 120_000)
        )

        result = handler({"id": "evt-2"}, SimpleNamespace(aws_request_id="req-2"))

        assert result["body"]["committed"] == 1
        session = read_item("booking-sessions", {"order_id": abandoned_order})
        assert session["state"] == BookingState.COMMITTED.value
        assert read_item("reservations", {"reservation_id": session["reservation_id"]})

    def test_nothing_to_sweep(self, create_tables, ssm_provider_secrets) -> None:
        from handler import handler

        result = handler({}, None)

        assert result["body"] == {
            "checked": 0,
            "committed": 0,
            "rolled_back": 0,
            "pending": 0,
            "errors": 0,
        }
