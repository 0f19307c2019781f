"""Pydantic models for the cooperative's booking and payment entities."""

from .booking import (
    ALLOWED_TRANSITIONS,
    BookingRequest,
    BookingSession,
    BookingStarted,
    PaymentCallback,
    can_transition,
)
from .enums import (
    BookingState,
    NotificationChannel,
    NotificationPriority,
    NotificationType,
    PaymentMethod,
    PaymentProvider,
    PaymentStatus,
    ProgramStatus,
    RefundStatus,
    ReservationStatus,
    TransactionStatus,
)
from .errors import (
    ERROR_MESSAGES,
    ERROR_RECOVERY,
    AccessError,
    BookingError,
    BookingValidationError,
    CapacityError,
    ErrorCode,
    ErrorResponse,
    NotFoundError,
    PaymentError,
    PaymentErrorReason,
    PersistenceError,
)
from .notification import Notification, NotificationRecord
from .payment import (
    ApprovedPayment,
    CancelledPayment,
    ClientHandoff,
    OrderMeta,
    Payment,
    ProviderStatus,
    Refund,
)
from .program import PriceQuote, Program
from .provider_payloads import (
    NicePayApprovalPayload,
    NicePayAuthResult,
    NicePayWebhookPayload,
    ProviderPayload,
    TossPaymentPayload,
    TossWebhookPayload,
    UnknownProviderPayload,
    parse_payload,
)
from .reservation import ParticipantInfo, Reservation
from .webhook_event import PaymentWebhookEvent

__all__ = [
    # Enums
    "BookingState",
    "NotificationChannel",
    "NotificationPriority",
    "NotificationType",
    "PaymentMethod",
    "PaymentProvider",
    "PaymentStatus",
    "ProgramStatus",
    "RefundStatus",
    "ReservationStatus",
    "TransactionStatus",
    # Catalog
    "Program",
    "PriceQuote",
    # Booking
    "ALLOWED_TRANSITIONS",
    "BookingRequest",
    "BookingSession",
    "BookingStarted",
    "PaymentCallback",
    "can_transition",
    # Reservation
    "ParticipantInfo",
    "Reservation",
    # Payment
    "ApprovedPayment",
    "CancelledPayment",
    "ClientHandoff",
    "OrderMeta",
    "Payment",
    "ProviderStatus",
    "Refund",
    # Provider payloads
    "NicePayApprovalPayload",
    "NicePayAuthResult",
    "NicePayWebhookPayload",
    "ProviderPayload",
    "TossPaymentPayload",
    "TossWebhookPayload",
    "UnknownProviderPayload",
    "parse_payload",
    # Notifications
    "Notification",
    "NotificationRecord",
    "PaymentWebhookEvent",
    # Errors
    "AccessError",
    "BookingError",
    "BookingValidationError",
    "CapacityError",
    "ErrorCode",
    "ErrorResponse",
    "ERROR_MESSAGES",
    "ERROR_RECOVERY",
    "NotFoundError",
    "PaymentError",
    "PaymentErrorReason",
    "PersistenceError",
]
