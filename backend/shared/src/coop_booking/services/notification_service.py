"""Notification dispatcher: in-app records, e-mail (SES) and SMS (SNS).

Sending is fire-and-forget for the booking flow. ``dispatch`` schedules
``send`` as a background task; every channel failure is logged and
swallowed so a notification problem never undoes a booking.
"""

import asyncio
import logging
import re
import uuid
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, ConfigDict

from ..config import Settings, get_settings
from ..models.enums import NotificationChannel
from ..models.notification import Notification, NotificationRecord
from ..utils.clock import Clock, utc_now
from ..utils.retry import retry
from .dynamodb import DynamoDBService

logger = logging.getLogger(__name__)


class Recipient(BaseModel):
    """Where e-mail and SMS go. In-app records only need the user ID."""

    model_config = ConfigDict(frozen=True)

    email: str | None = None
    phone: str | None = None


def to_e164(phone: str) -> str:
    """Convert a Korean domestic number (010-1234-5678) to +821012345678."""
    digits = re.sub(r"\D", "", phone)
    if phone.startswith("+"):
        return f"+{digits}"
    if digits.startswith("0"):
        digits = digits[1:]
    return f"+82{digits}"


class NotificationDispatcher:
    """Delivers notifications to each requested channel."""

    TABLE = "notifications"

    def __init__(
        self,
        db: DynamoDBService,
        settings: Settings | None = None,
        ses_client: Any | None = None,
        sns_client: Any | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._db = db
        self._settings = settings or get_settings()
        self._ses = ses_client
        self._sns = sns_client
        self._clock = clock
        self._tasks: set[asyncio.Task[dict[NotificationChannel, bool]]] = set()

    def dispatch(
        self,
        user_id: str,
        notification: Notification,
        recipient: Recipient | None = None,
    ) -> asyncio.Task[dict[NotificationChannel, bool]]:
        """Schedule ``send`` without waiting for it. Requires a running loop."""
        task = asyncio.create_task(self.send(user_id, notification, recipient))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every dispatched send (end of a Lambda run, tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def send(
        self,
        user_id: str,
        notification: Notification,
        recipient: Recipient | None = None,
    ) -> dict[NotificationChannel, bool]:
        """Deliver a notification on each of its channels.

        Returns:
            Delivery result per channel. Never raises.
        """
        results: dict[NotificationChannel, bool] = {}
        for channel in notification.channels:
            try:
                if channel == NotificationChannel.IN_APP:
                    await self._store_in_app(user_id, notification)
                elif channel == NotificationChannel.EMAIL:
                    if not recipient or not recipient.email:
                        logger.info("No e-mail address for %s, skipping", user_id)
                        results[channel] = False
                        continue
                    await self._send_email(recipient.email, notification)
                elif channel == NotificationChannel.SMS:
                    if not recipient or not recipient.phone:
                        logger.info("No phone number for %s, skipping", user_id)
                        results[channel] = False
                        continue
                    await self._send_sms(recipient.phone, notification)
                results[channel] = True
            except Exception as e:
                logger.error(
                    "Notification %r failed on %s for %s: %s",
                    notification.title,
                    channel.value,
                    user_id,
                    e,
                )
                results[channel] = False
        logger.info("Notification %r sent to %s: %s", notification.title, user_id, results)
        return results

    async def _store_in_app(self, user_id: str, notification: Notification) -> None:
        record = NotificationRecord(
            notification_id=str(uuid.uuid4()),
            user_id=user_id,
            title=notification.title,
            message=notification.message,
            type=notification.type,
            priority=notification.priority,
            action_url=notification.action_url,
            created_at=self._clock(),
        )
        await self._db.run(self._db.put_item, self.TABLE, record.to_item())

    @retry(max_attempts=2, backoff_seconds=0.2, retry_on=(ClientError, BotoCoreError))
    async def _send_email(self, address: str, notification: Notification) -> None:
        if self._ses is None:
            self._ses = boto3.client("ses")
        text_body = notification.message
        if notification.action_url:
            text_body += f"\n\n{self._settings.site_url}{notification.action_url}"
        await asyncio.to_thread(
            self._ses.send_email,
            Source=self._settings.notification_sender_email,
            Destination={"ToAddresses": [address]},
            Message={
                "Subject": {"Data": notification.title, "Charset": "UTF-8"},
                "Body": {"Text": {"Data": text_body, "Charset": "UTF-8"}},
            },
        )

    @retry(max_attempts=2, backoff_seconds=0.2, retry_on=(ClientError, BotoCoreError))
    async def _send_sms(self, phone: str, notification: Notification) -> None:
        if self._sns is None:
            self._sns = boto3.client("sns")
        await asyncio.to_thread(
            self._sns.publish,
            PhoneNumber=to_e164(phone),
            Message=f"[{notification.title}] {notification.message}",
        )
