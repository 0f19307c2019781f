"""Pytest configuration and fixtures for the cooperative booking backend tests.

This module provides reusable fixtures for testing:
- AWS mocking with moto (DynamoDB tables, SES, SNS, SSM)
- A pinned clock shared by every service under test
- Sample programs and participants
- A fully wired ReservationOrchestrator against the mocked tables
- respx routers standing in for the TossPayments and NicePay APIs
"""

import datetime as dt
import os
from collections.abc import AsyncGenerator, Callable
from typing import Any, Generator

import boto3
import pytest
import respx
from moto import mock_aws

# === Environment Setup ===

# Set environment variables for testing before imports
os.environ.setdefault("AWS_DEFAULT_REGION", "ap-northeast-2")
os.environ.setdefault("DYNAMODB_TABLE_PREFIX", "test-booking")
os.environ.setdefault("ENVIRONMENT", "test")

# Only set fake credentials for moto if no real credentials are present
if not os.environ.get("AWS_PROFILE") and not os.environ.get("AWS_ACCESS_KEY_ID"):
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")

REGION = "ap-northeast-2"
TABLE_PREFIX = "test-booking"
SENDER_EMAIL = "noreply@coop.example.org"
SITE_URL = "https://coop.example.org"
TOSS_API = "https://api.tosspayments.com"
NICEPAY_API = "https://api.nicepay.co.kr"

# 2026-03-02 10:00 KST
NOW = dt.datetime(2026, 3, 2, 1, 0, tzinfo=dt.UTC)


class FakeClock:
    """Callable clock that only moves when a test moves it."""

    def __init__(self, now: dt.datetime) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs: float) -> dt.datetime:
        self.now = self.now + dt.timedelta(**kwargs)
        return self.now


# === Singleton Reset ===


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Reset cached settings, the DynamoDB singleton and SSM cache.

    Services created inside a mock_aws context must not be reused by a
    later test running against a fresh mock.
    """
    from coop_booking.config import get_settings
    from coop_booking.services.dynamodb import reset_dynamodb_service
    from coop_booking.services.ssm_service import reset_ssm_service

    get_settings.cache_clear()
    reset_dynamodb_service()
    reset_ssm_service()
    yield
    get_settings.cache_clear()
    reset_dynamodb_service()
    reset_ssm_service()


# === AWS Fixtures ===


@pytest.fixture
def aws_credentials() -> None:
    """Mocked AWS credentials for moto."""
    if not os.environ.get("AWS_PROFILE"):
        os.environ["AWS_ACCESS_KEY_ID"] = "testing"
        os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
        os.environ["AWS_SECURITY_TOKEN"] = "testing"
        os.environ["AWS_SESSION_TOKEN"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = REGION


@pytest.fixture
def aws(aws_credentials: None) -> Generator[None, None, None]:
    """Start moto for every AWS service used by the backend."""
    with mock_aws():
        yield


@pytest.fixture
def dynamodb_client(aws: None) -> Any:
    return boto3.client("dynamodb", region_name=REGION)


@pytest.fixture
def dynamodb_resource(aws: None) -> Any:
    return boto3.resource("dynamodb", region_name=REGION)


def _table(
    name: str,
    key: str,
    attributes: dict[str, str] | None = None,
    indexes: list[tuple[str, str, str | None]] | None = None,
) -> dict[str, Any]:
    definitions = {key: "S", **(attributes or {})}
    table: dict[str, Any] = {
        "TableName": f"{TABLE_PREFIX}-{name}",
        "KeySchema": [{"AttributeName": key, "KeyType": "HASH"}],
        "AttributeDefinitions": [
            {"AttributeName": attr, "AttributeType": kind}
            for attr, kind in definitions.items()
        ],
        "BillingMode": "PAY_PER_REQUEST",
    }
    if indexes:
        table["GlobalSecondaryIndexes"] = [
            {
                "IndexName": index_name,
                "KeySchema": [{"AttributeName": hash_key, "KeyType": "HASH"}]
                + ([{"AttributeName": range_key, "KeyType": "RANGE"}] if range_key else []),
                "Projection": {"ProjectionType": "ALL"},
            }
            for index_name, hash_key, range_key in indexes
        ]
    return table


TABLES = [
    _table(
        "programs",
        "program_id",
        {"status": "S", "start_date": "S"},
        [("status-index", "status", "start_date")],
    ),
    _table("capacity-holds", "hold_id"),
    _table(
        "booking-sessions",
        "order_id",
        {"state": "S", "expires_at": "N"},
        [("state-index", "state", "expires_at")],
    ),
    _table(
        "payments",
        "order_id",
        {"payment_id": "S", "user_id": "S"},
        [("payment_id-index", "payment_id", None), ("user_id-index", "user_id", None)],
    ),
    _table(
        "reservations",
        "reservation_id",
        {"user_id": "S", "program_id": "S"},
        [("user_id-index", "user_id", None), ("program_id-index", "program_id", None)],
    ),
    _table("participant-claims", "claim_id"),
    _table(
        "refunds",
        "refund_id",
        {"payment_id": "S"},
        [("payment_id-index", "payment_id", None)],
    ),
    _table("payment-webhook-events", "event_id"),
    _table("notifications", "notification_id"),
]


@pytest.fixture
def create_tables(dynamodb_client: Any) -> None:
    """Create all required DynamoDB tables for testing."""
    for table in TABLES:
        dynamodb_client.create_table(**table)


@pytest.fixture
def ses_client(aws: None) -> Any:
    client = boto3.client("ses", region_name=REGION)
    client.verify_email_identity(EmailAddress=SENDER_EMAIL)
    return client


@pytest.fixture
def sns_client(aws: None) -> Any:
    return boto3.client("sns", region_name=REGION)


@pytest.fixture
def ssm_provider_secrets(aws: None) -> None:
    """Provider keys in Parameter Store, as the gateways read them."""
    ssm = boto3.client("ssm", region_name=REGION)
    params = {
        "/booking/test/toss/client_key": "test_ck_toss",
        "/booking/test/toss/secret_key": "test_sk_toss",
        "/booking/test/nicepay/client_id": "test_client_nicepay",
        "/booking/test/nicepay/secret_key": "test_sk_nicepay",
    }
    for name, value in params.items():
        ssm.put_parameter(Name=name, Value=value, Type="SecureString")


# === Service Fixtures ===


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(NOW)


@pytest.fixture
def settings() -> Any:
    from coop_booking.config import Settings

    return Settings(
        environment="test",
        dynamodb_table_prefix=TABLE_PREFIX,
        site_url=SITE_URL,
        provider_max_attempts=2,
        provider_backoff_seconds=0,
        store_backoff_seconds=0,
        notification_sender_email=SENDER_EMAIL,
    )


@pytest.fixture
def db(create_tables: None, settings: Any) -> Generator[Any, None, None]:
    from coop_booking.services.dynamodb import DynamoDBService

    service = DynamoDBService(settings=settings, max_workers=4)
    yield service
    service.close()


@pytest.fixture
def provider_credentials() -> Any:
    from coop_booking.gateways import ProviderCredentials

    return ProviderCredentials(client_key="test_ck", secret_key="test_sk")


@pytest.fixture
def gateway_factory(settings: Any, provider_credentials: Any) -> Callable[[Any], Any]:
    from coop_booking.gateways import get_payment_gateway

    def factory(provider: Any) -> Any:
        return get_payment_gateway(provider, settings, provider_credentials)

    return factory


@pytest.fixture
async def notifier(
    db: Any, settings: Any, ses_client: Any, sns_client: Any, clock: FakeClock
) -> AsyncGenerator[Any, None]:
    from coop_booking.services.notification_service import NotificationDispatcher

    dispatcher = NotificationDispatcher(
        db, settings, ses_client=ses_client, sns_client=sns_client, clock=clock
    )
    yield dispatcher
    await dispatcher.drain()


@pytest.fixture
def repository(db: Any) -> Any:
    from coop_booking.services.reservation_repository import ReservationRepository

    return ReservationRepository(db)


@pytest.fixture
def capacity(db: Any, clock: FakeClock) -> Any:
    from coop_booking.services.capacity import CapacityGuard

    return CapacityGuard(db, clock=clock)


@pytest.fixture
def catalog(db: Any) -> Any:
    from coop_booking.services.catalog import CatalogStore

    return CatalogStore(db)


@pytest.fixture
def orchestrator(
    catalog: Any,
    capacity: Any,
    repository: Any,
    notifier: Any,
    settings: Any,
    gateway_factory: Callable[[Any], Any],
    clock: FakeClock,
) -> Any:
    from coop_booking.services.orchestrator import ReservationOrchestrator
    from coop_booking.services.pricing import PricingEngine

    return ReservationOrchestrator(
        catalog=catalog,
        capacity=capacity,
        pricing=PricingEngine(),
        repository=repository,
        notifier=notifier,
        settings=settings,
        gateway_factory=gateway_factory,
        clock=clock,
    )


# === Sample Data Fixtures ===


@pytest.fixture
def make_program(clock: FakeClock) -> Callable[..., Any]:
    """Build a Program; keyword arguments override the defaults.

    Default: 150,000 KRW, 120,000 KRW early bird for another 7 days,
    20 seats, starting in 30 days.
    """
    from coop_booking.models.program import Program

    def factory(**overrides: Any) -> Program:
        start = clock.now + dt.timedelta(days=30)
        values: dict[str, Any] = {
            "program_id": "prog-coding-camp",
            "title": "Weekend Coding Camp",
            "base_price": 150_000,
            "early_bird_price": 120_000,
            "early_bird_deadline": clock.now + dt.timedelta(days=7),
            "max_participants": 20,
            "start_date": start,
            "end_date": start + dt.timedelta(days=1),
            "location": "Community Center, Room 2",
        }
        values.update(overrides)
        return Program(**values)

    return factory


@pytest.fixture
def put_program(dynamodb_resource: Any, create_tables: None) -> Callable[[Any], Any]:
    """Store a Program directly in the mocked programs table."""
    table = dynamodb_resource.Table(f"{TABLE_PREFIX}-programs")

    def put(program: Any) -> Any:
        table.put_item(Item=program.to_item())
        return program

    return put


@pytest.fixture
def read_item(dynamodb_resource: Any, create_tables: None) -> Callable[[str, dict], Any]:
    """Read a raw item from a mocked table (name without prefix)."""

    def read(table: str, key: dict[str, Any]) -> dict[str, Any] | None:
        response = dynamodb_resource.Table(f"{TABLE_PREFIX}-{table}").get_item(Key=key)
        return response.get("Item")

    return read


@pytest.fixture
def scan_table(dynamodb_resource: Any, create_tables: None) -> Callable[[str], list]:
    def scan(table: str) -> list[dict[str, Any]]:
        return dynamodb_resource.Table(f"{TABLE_PREFIX}-{table}").scan()["Items"]

    return scan


@pytest.fixture
def participant() -> Any:
    from coop_booking.models.reservation import ParticipantInfo

    return ParticipantInfo(name="홍길동", phone="010-1234-5678", email="member@example.org")


@pytest.fixture
def booking_request(participant: Any) -> Callable[..., Any]:
    """Build a Toss BookingRequest for the default program."""
    from coop_booking.models.booking import BookingRequest
    from coop_booking.models.enums import PaymentProvider

    def factory(**overrides: Any) -> BookingRequest:
        values: dict[str, Any] = {
            "program_id": "prog-coding-camp",
            "user_id": "user-1",
            "participant": participant,
            "provider": PaymentProvider.TOSS,
        }
        values.update(overrides)
        return BookingRequest(**values)

    return factory


# === Provider API Fixtures ===


@pytest.fixture
def toss_api() -> Generator[respx.MockRouter, None, None]:
    with respx.mock(base_url=TOSS_API, assert_all_called=False) as router:
        yield router


@pytest.fixture
def nicepay_api() -> Generator[respx.MockRouter, None, None]:
    with respx.mock(base_url=NICEPAY_API, assert_all_called=False) as router:
        yield router


@pytest.fixture
def toss_payment() -> Callable[..., dict[str, Any]]:
    """Build a TossPayments payment object as the API returns it."""

    def build(
        order_id: str,
        amount: int,
        status: str = "DONE",
        payment_key: str = "pk_test_0001",
        **extra: Any,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "paymentKey": payment_key,
            "orderId": order_id,
            "orderName": "Weekend Coding Camp",
            "status": status,
            "totalAmount": amount,
            "balanceAmount": amount,
            "method": "카드",
            "requestedAt": "2026-03-02T10:00:00+09:00",
            "approvedAt": "2026-03-02T10:00:05+09:00",
        }
        body.update(extra)
        return body

    return build
