"""Enumeration types for booking data models."""

from enum import Enum


class ProgramStatus(str, Enum):
    """Lifecycle status of a program."""

    OPEN = "open"
    FULL = "full"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class ReservationStatus(str, Enum):
    """Status of a program participant reservation."""

    REGISTERED = "registered"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class PaymentStatus(str, Enum):
    """Payment status as seen from a reservation."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class TransactionStatus(str, Enum):
    """Status of a payment row."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RefundStatus(str, Enum):
    """Status of a refund request."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class PaymentMethod(str, Enum):
    """Supported payment methods."""

    CARD = "card"
    VBANK = "vbank"
    TRANSFER = "transfer"
    SIMPLE = "simple"


class PaymentProvider(str, Enum):
    """Payment processing providers."""

    TOSS = "toss"
    NICEPAY = "nicepay"


class BookingState(str, Enum):
    """States of the reservation orchestrator."""

    DRAFT = "draft"
    PRICE_LOCKED = "price_locked"
    SLOT_RESERVED = "slot_reserved"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_APPROVED = "payment_approved"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


class NotificationChannel(str, Enum):
    """Delivery channels for user notifications."""

    EMAIL = "email"
    SMS = "sms"
    IN_APP = "in_app"


class NotificationPriority(str, Enum):
    """Notification priority."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class NotificationType(str, Enum):
    """Notification category."""

    PROGRAM = "program"
    PAYMENT = "payment"
    GENERAL = "general"
