"""FastAPI dependency providers for the booking services.

Each provider is cached with @lru_cache so a warm Lambda (or uvicorn
worker) reuses one instance per service.

Service dependency graph:
    DynamoDBService (singleton via get_dynamodb_service)
        ├── CatalogStore
        ├── CapacityGuard
        ├── ReservationRepository
        │       └── RefundService
        └── NotificationDispatcher
    ReservationOrchestrator (catalog, capacity, pricing, repository, notifier)
        └── WebhookHandler

Testing:
    Call reset_services() between tests.
"""

from functools import lru_cache

from coop_booking.config import get_settings
from coop_booking.services.capacity import CapacityGuard
from coop_booking.services.catalog import CatalogStore
from coop_booking.services.dynamodb import get_dynamodb_service
from coop_booking.services.notification_service import NotificationDispatcher
from coop_booking.services.orchestrator import ReservationOrchestrator
from coop_booking.services.pricing import PricingEngine
from coop_booking.services.refund_service import RefundService
from coop_booking.services.reservation_repository import ReservationRepository
from coop_booking.services.webhook_handler import WebhookHandler


@lru_cache
def get_catalog_store() -> CatalogStore:
    return CatalogStore(db=get_dynamodb_service())


@lru_cache
def get_capacity_guard() -> CapacityGuard:
    return CapacityGuard(db=get_dynamodb_service())


@lru_cache
def get_pricing_engine() -> PricingEngine:
    return PricingEngine(max_amount=get_settings().max_payment_amount)


@lru_cache
def get_reservation_repository() -> ReservationRepository:
    return ReservationRepository(db=get_dynamodb_service())


@lru_cache
def get_notification_dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(db=get_dynamodb_service(), settings=get_settings())


@lru_cache
def get_orchestrator() -> ReservationOrchestrator:
    """Get the cached ReservationOrchestrator wired to the shared services."""
    return ReservationOrchestrator(
        catalog=get_catalog_store(),
        capacity=get_capacity_guard(),
        pricing=get_pricing_engine(),
        repository=get_reservation_repository(),
        notifier=get_notification_dispatcher(),
        settings=get_settings(),
    )


@lru_cache
def get_refund_service() -> RefundService:
    return RefundService(repository=get_reservation_repository())


@lru_cache
def get_webhook_handler() -> WebhookHandler:
    return WebhookHandler(db=get_dynamodb_service(), orchestrator=get_orchestrator())


def reset_services() -> None:
    """Clear cached services, settings and the DynamoDB singleton.

    Example:
        @pytest.fixture(autouse=True)
        def reset_state():
            yield
            reset_services()
    """
    from coop_booking.services.dynamodb import reset_dynamodb_service
    from coop_booking.services.ssm_service import reset_ssm_service

    get_catalog_store.cache_clear()
    get_capacity_guard.cache_clear()
    get_pricing_engine.cache_clear()
    get_reservation_repository.cache_clear()
    get_notification_dispatcher.cache_clear()
    get_orchestrator.cache_clear()
    get_refund_service.cache_clear()
    get_webhook_handler.cache_clear()
    get_settings.cache_clear()

    reset_dynamodb_service()
    reset_ssm_service()
