"""Payment Reconciler Lambda - scheduled stale-session sweep.

Runs on an EventBridge schedule (every 5 minutes). For every booking
session past its payment window that is not in a terminal state:
1. Asks the payment provider for the order's real status
2. Commits the reservation if the provider holds an approved charge
3. Otherwise releases the slot and rolls the session back

This closes the gap left by clients that never return from the payment
widget and by server crashes between approval and commit.
"""

import asyncio
import logging
import os
from typing import Any

from coop_booking.config import get_settings
from coop_booking.services.capacity import CapacityGuard
from coop_booking.services.catalog import CatalogStore
from coop_booking.services.dynamodb import get_dynamodb_service
from coop_booking.services.notification_service import NotificationDispatcher
from coop_booking.services.orchestrator import ReservationOrchestrator
from coop_booking.services.pricing import PricingEngine
from coop_booking.services.reservation_repository import ReservationRepository
from coop_booking.utils.logging import configure_logging, set_correlation_id

configure_logging(os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)


def build_orchestrator(notifier: NotificationDispatcher) -> ReservationOrchestrator:
    settings = get_settings()
    db = get_dynamodb_service()
    return ReservationOrchestrator(
        catalog=CatalogStore(db),
        capacity=CapacityGuard(db),
        pricing=PricingEngine(max_amount=settings.max_payment_amount),
        repository=ReservationRepository(db),
        notifier=notifier,
        settings=settings,
    )


async def sweep() -> dict[str, int]:
    notifier = NotificationDispatcher(get_dynamodb_service(), settings=get_settings())
    counts = await build_orchestrator(notifier).sweep_stale_sessions()
    # Confirmation mails of sessions committed by the sweep
    await notifier.drain()
    return counts


def handler(event: dict[str, Any], context: Any) -> dict[str, Any]:
    """Lambda entry point.

    Args:
        event: EventBridge scheduled event
        context: Lambda context

    Returns:
        Sweep counts (checked, committed, rolled_back, pending, errors)
    """
    request_id = getattr(context, "aws_request_id", None)
    set_correlation_id(request_id)
    logger.info("Stale session sweep started (event id %s)", event.get("id"))

    counts = asyncio.run(sweep())

    if counts["errors"]:
        logger.warning("Sweep finished with %d errors", counts["errors"])
    return {"statusCode": 200, "body": counts}
