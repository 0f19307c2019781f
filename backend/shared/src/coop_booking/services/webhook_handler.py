"""Webhook handler for provider payment notifications.

A webhook is only a hint: it names an order, and the order is then
reconciled against the provider's status API like any stale session.
Deliveries are logged by body hash so a redelivery is processed once.
"""

import hashlib
import logging
from dataclasses import dataclass

from ..gateways import PaymentGateway, get_payment_gateway
from ..models.enums import PaymentProvider
from ..models.errors import BookingError, NotFoundError
from ..models.webhook_event import PaymentWebhookEvent
from ..utils.clock import Clock, utc_now
from ..utils.logging import log_webhook_event
from .dynamodb import DynamoDBService
from .orchestrator import ReservationOrchestrator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    order_id: str | None
    processing_result: str
    message: str | None = None


class WebhookHandler:
    """Verifies, de-duplicates and applies provider webhooks."""

    WEBHOOK_EVENTS_TABLE = "payment-webhook-events"

    def __init__(
        self,
        db: DynamoDBService,
        orchestrator: ReservationOrchestrator,
        gateway_factory=get_payment_gateway,
        clock: Clock = utc_now,
    ) -> None:
        self._db = db
        self._orchestrator = orchestrator
        self._gateway_factory = gateway_factory
        self._clock = clock

    @staticmethod
    def compute_event_id(body: bytes) -> str:
        return hashlib.sha256(body).hexdigest()

    async def is_event_already_processed(self, event_id: str) -> bool:
        existing = await self._db.run(
            self._db.get_item, self.WEBHOOK_EVENTS_TABLE, {"event_id": event_id}
        )
        return existing is not None

    async def handle(self, provider: PaymentProvider, body: bytes) -> WebhookResult:
        """Process one webhook delivery.

        Args:
            provider: Provider the delivery came from (route path)
            body: Raw request body

        Returns:
            WebhookResult with success, duplicate, skipped or error

        Raises:
            PaymentError: INVALID_SIGNATURE; nothing is recorded
            BookingError: retryable failures, so the provider redelivers
        """
        event_id = self.compute_event_id(body)
        gateway: PaymentGateway = self._gateway_factory(provider)
        notice = await gateway.parse_webhook(body)

        log_webhook_event(
            logger,
            provider.value,
            notice.event_type,
            event_id,
            order_id=notice.order_id,
            result="received",
        )

        if await self.is_event_already_processed(event_id):
            log_webhook_event(
                logger,
                provider.value,
                notice.event_type,
                event_id,
                order_id=notice.order_id,
                result="duplicate",
            )
            return WebhookResult(
                event_id, notice.event_type, notice.order_id, "duplicate", "Event already processed"
            )

        result, message = "success", None
        try:
            session = await self._orchestrator.reconcile_order(notice.order_id)
            message = f"state={session.state.value}"
        except NotFoundError:
            logger.info("Webhook for unknown order %s, skipping", notice.order_id)
            result, message = "skipped", "Unknown order"
        except BookingError as e:
            if e.retryable:
                log_webhook_event(
                    logger,
                    provider.value,
                    notice.event_type,
                    event_id,
                    order_id=notice.order_id,
                    result="retry",
                    error=e.code.value,
                )
                raise
            result, message = "error", f"{e.code.value}: {e.message}"

        event = PaymentWebhookEvent(
            event_id=event_id,
            provider=provider,
            event_type=notice.event_type,
            order_id=notice.order_id,
            transaction_id=notice.transaction_id,
            processed_at=self._clock(),
            processing_result=result,
            error_message=message if result == "error" else None,
        )
        recorded = await self._db.run(
            self._db.put_item,
            self.WEBHOOK_EVENTS_TABLE,
            event.to_item(),
            "attribute_not_exists(event_id)",
        )
        if not recorded:
            result = "duplicate"

        log_webhook_event(
            logger,
            provider.value,
            notice.event_type,
            event_id,
            order_id=notice.order_id,
            result=result,
            error=message if result == "error" else None,
        )
        return WebhookResult(event_id, notice.event_type, notice.order_id, result, message)
