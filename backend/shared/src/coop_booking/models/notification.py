"""Notification messages sent to users after booking events."""

import datetime as dt

from pydantic import BaseModel, ConfigDict, Field

from .enums import NotificationChannel, NotificationPriority, NotificationType


class Notification(BaseModel):
    model_config = ConfigDict(strict=True)

    title: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)
    type: NotificationType = NotificationType.GENERAL
    channels: list[NotificationChannel] = Field(
        default_factory=lambda: [NotificationChannel.IN_APP]
    )
    priority: NotificationPriority = NotificationPriority.NORMAL
    action_url: str | None = None


class NotificationRecord(BaseModel):
    """In-app notification row stored for the user's dashboard."""

    model_config = ConfigDict(strict=True)

    notification_id: str
    user_id: str
    title: str
    message: str
    type: NotificationType
    priority: NotificationPriority
    action_url: str | None = None
    is_read: bool = False
    created_at: dt.datetime

    def to_item(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


def reservation_confirmed(program_title: str, start_date: dt.datetime) -> Notification:
    return Notification(
        title="프로그램 예약 확인",
        message=(
            f"{program_title} 프로그램 예약이 완료되었습니다. "
            f"시작일: {start_date:%Y. %m. %d.}"
        ),
        type=NotificationType.PROGRAM,
        channels=[NotificationChannel.EMAIL, NotificationChannel.IN_APP],
        priority=NotificationPriority.HIGH,
        action_url="/dashboard",
    )


def payment_completed(program_title: str, amount: int) -> Notification:
    return Notification(
        title="결제 완료",
        message=f"{program_title} 프로그램 결제가 완료되었습니다. 결제금액: {amount:,}원",
        type=NotificationType.PAYMENT,
        channels=[
            NotificationChannel.EMAIL,
            NotificationChannel.SMS,
            NotificationChannel.IN_APP,
        ],
        priority=NotificationPriority.HIGH,
        action_url="/dashboard",
    )


def reservation_cancelled(
    program_title: str, reason: str | None, refund_amount: int
) -> Notification:
    message = f"{program_title} 프로그램 예약이 취소되었습니다."
    if reason:
        message += f" 사유: {reason}"
    if refund_amount > 0:
        message += f" 환불 금액 {refund_amount:,}원, 환불 처리는 2-3일 소요됩니다."
    return Notification(
        title="예약 취소 확인",
        message=message,
        type=NotificationType.PROGRAM,
        channels=[NotificationChannel.EMAIL, NotificationChannel.IN_APP],
        priority=NotificationPriority.NORMAL,
        action_url="/dashboard",
    )
