"""Standard error codes and exceptions for the booking core.

Every component raises a subclass of BookingError. The orchestrator maps
component failures onto one of four kinds before they reach a caller:

- BookingValidationError: bad input, recoverable by user correction
- CapacityError: program full, terminal for this attempt
- PaymentError: decline/timeout/amount mismatch (timeout is retryable)
- PersistenceError: transient store I/O (retryable) or permanent conflict

AccessError covers callers acting on records they do not own.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class ErrorCode(str, Enum):
    """Standard error codes."""

    # Validation (ERR_VAL_*)
    VALIDATION_FAILED = "ERR_VAL_001"
    PROGRAM_NOT_OPEN = "ERR_VAL_002"
    PRICE_CHANGED = "ERR_VAL_003"
    BOOKING_EXPIRED = "ERR_VAL_004"
    INVALID_STATE = "ERR_VAL_005"
    REFUND_EXCEEDS_BALANCE = "ERR_VAL_006"
    RESERVATION_NOT_CANCELLABLE = "ERR_VAL_007"

    # Not found (ERR_NF_*)
    PROGRAM_NOT_FOUND = "ERR_NF_001"
    ORDER_NOT_FOUND = "ERR_NF_002"
    RESERVATION_NOT_FOUND = "ERR_NF_003"
    REFUND_NOT_FOUND = "ERR_NF_004"

    # Capacity (ERR_CAP_*)
    PROGRAM_FULL = "ERR_CAP_001"

    # Payment (ERR_PAY_*)
    PAYMENT_DECLINED = "ERR_PAY_001"
    PAYMENT_TIMEOUT = "ERR_PAY_002"
    PAYMENT_AMOUNT_MISMATCH = "ERR_PAY_003"
    PAYMENT_PROVIDER_ERROR = "ERR_PAY_004"
    PAYMENT_IN_PROGRESS = "ERR_PAY_005"
    INVALID_WEBHOOK_SIGNATURE = "ERR_PAY_006"
    PAYMENT_ORDER_MISMATCH = "ERR_PAY_007"

    # Persistence (ERR_DB_*)
    STORE_UNAVAILABLE = "ERR_DB_001"
    RESERVATION_EXISTS = "ERR_DB_002"
    STORE_CONFLICT = "ERR_DB_003"

    # Access (ERR_AUTH_*)
    AUTH_REQUIRED = "ERR_AUTH_001"
    UNAUTHORIZED = "ERR_AUTH_002"


# Human-readable error messages
ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.VALIDATION_FAILED: "The booking request is invalid",
    ErrorCode.PROGRAM_NOT_OPEN: "This program is not open for booking",
    ErrorCode.PRICE_CHANGED: "The price changed while you were booking",
    ErrorCode.BOOKING_EXPIRED: "The payment window for this booking has expired",
    ErrorCode.INVALID_STATE: "The booking is not in a state that allows this action",
    ErrorCode.REFUND_EXCEEDS_BALANCE: "Refund amount exceeds the refundable balance",
    ErrorCode.RESERVATION_NOT_CANCELLABLE: "This reservation cannot be cancelled",
    ErrorCode.PROGRAM_NOT_FOUND: "Program not found",
    ErrorCode.ORDER_NOT_FOUND: "Order not found",
    ErrorCode.RESERVATION_NOT_FOUND: "Reservation not found",
    ErrorCode.REFUND_NOT_FOUND: "Refund request not found",
    ErrorCode.PROGRAM_FULL: "The program is full",
    ErrorCode.PAYMENT_DECLINED: "The payment was declined",
    ErrorCode.PAYMENT_TIMEOUT: "The payment provider did not respond in time",
    ErrorCode.PAYMENT_AMOUNT_MISMATCH: "The approved amount does not match the booking price",
    ErrorCode.PAYMENT_PROVIDER_ERROR: "The payment provider returned an error",
    ErrorCode.PAYMENT_IN_PROGRESS: "This payment is already being processed",
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: "Invalid payment notification signature",
    ErrorCode.PAYMENT_ORDER_MISMATCH: "The payment does not belong to this order",
    ErrorCode.STORE_UNAVAILABLE: "The booking store is temporarily unavailable",
    ErrorCode.RESERVATION_EXISTS: "A reservation for this program already exists",
    ErrorCode.STORE_CONFLICT: "The record was changed by another request",
    ErrorCode.AUTH_REQUIRED: "Authentication required to perform this action",
    ErrorCode.UNAUTHORIZED: "Not authorized for this action",
}

# Recovery suggestions shown to the user
ERROR_RECOVERY: dict[ErrorCode, str] = {
    ErrorCode.VALIDATION_FAILED: "Correct the highlighted fields and submit again",
    ErrorCode.PROGRAM_NOT_OPEN: "Choose another program or check back later",
    ErrorCode.PRICE_CHANGED: "Review the new price and confirm the booking again",
    ErrorCode.BOOKING_EXPIRED: "Start a new booking",
    ErrorCode.INVALID_STATE: "Reload the booking page",
    ErrorCode.REFUND_EXCEEDS_BALANCE: "Request a smaller amount",
    ErrorCode.RESERVATION_NOT_CANCELLABLE: "Contact support for assistance",
    ErrorCode.PROGRAM_NOT_FOUND: "Check the program link",
    ErrorCode.ORDER_NOT_FOUND: "Start a new booking",
    ErrorCode.RESERVATION_NOT_FOUND: "Check the reservation in your dashboard",
    ErrorCode.REFUND_NOT_FOUND: "Check the refund request ID",
    ErrorCode.PROGRAM_FULL: "Choose another session or program",
    ErrorCode.PAYMENT_DECLINED: "Try a different card or payment method",
    ErrorCode.PAYMENT_TIMEOUT: "Wait a moment and retry the payment",
    ErrorCode.PAYMENT_AMOUNT_MISMATCH: "Start a new booking; no charge was kept",
    ErrorCode.PAYMENT_PROVIDER_ERROR: "Try again or contact support",
    ErrorCode.PAYMENT_IN_PROGRESS: "Wait a moment and reload the page",
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: "Verify provider credentials",
    ErrorCode.PAYMENT_ORDER_MISMATCH: "Return to the booking page and pay again",
    ErrorCode.STORE_UNAVAILABLE: "Try again shortly",
    ErrorCode.RESERVATION_EXISTS: "Check your existing reservation in the dashboard",
    ErrorCode.STORE_CONFLICT: "Reload and try again",
    ErrorCode.AUTH_REQUIRED: "Log in and try again",
    ErrorCode.UNAUTHORIZED: "Use the account that owns this booking",
}


class ErrorResponse(BaseModel):
    """Standard error response body."""

    model_config = ConfigDict(strict=True)

    success: bool = False
    error_code: ErrorCode
    message: str
    recovery: str
    details: Optional[dict[str, str]] = None

    @classmethod
    def from_code(
        cls,
        code: ErrorCode,
        details: Optional[dict[str, str]] = None,
    ) -> "ErrorResponse":
        """Create an ErrorResponse from an error code.

        Args:
            code: The error code
            details: Optional additional context about the error

        Returns:
            An ErrorResponse with the message and recovery hint for the code.
        """
        return cls(
            error_code=code,
            message=ERROR_MESSAGES[code],
            recovery=ERROR_RECOVERY[code],
            details=details,
        )


class BookingError(Exception):
    """Base exception raised by booking operations."""

    retryable: bool = False

    def __init__(
        self,
        code: ErrorCode,
        details: Optional[dict[str, str]] = None,
    ):
        self.code = code
        self.message = ERROR_MESSAGES[code]
        self.recovery = ERROR_RECOVERY[code]
        self.details = details
        super().__init__(self.message)

    def to_response(self) -> ErrorResponse:
        """Convert this exception to an ErrorResponse."""
        return ErrorResponse.from_code(self.code, self.details)


class BookingValidationError(BookingError):
    """Bad input, recoverable by user correction."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[dict[str, str]] = None,
    ):
        super().__init__(code, details)


class NotFoundError(BookingValidationError):
    """A referenced record does not exist."""


class AccessError(BookingError):
    """The caller is not allowed to act on the record."""

    def __init__(
        self,
        code: ErrorCode = ErrorCode.UNAUTHORIZED,
        details: Optional[dict[str, str]] = None,
    ):
        super().__init__(code, details)


class CapacityError(BookingError):
    """No capacity slot left for the program."""

    def __init__(self, program_id: str, details: Optional[dict[str, str]] = None):
        self.program_id = program_id
        super().__init__(
            ErrorCode.PROGRAM_FULL,
            {"program_id": program_id, **(details or {})},
        )


class PaymentErrorReason(str, Enum):
    """Why a payment operation failed."""

    DECLINED = "declined"
    TIMEOUT = "timeout"
    AMOUNT_MISMATCH = "amount_mismatch"
    PROVIDER_ERROR = "provider_error"
    IN_PROGRESS = "in_progress"
    EXPIRED = "expired"
    INVALID_SIGNATURE = "invalid_signature"
    ORDER_MISMATCH = "order_mismatch"


_PAYMENT_REASON_CODES: dict[PaymentErrorReason, ErrorCode] = {
    PaymentErrorReason.DECLINED: ErrorCode.PAYMENT_DECLINED,
    PaymentErrorReason.TIMEOUT: ErrorCode.PAYMENT_TIMEOUT,
    PaymentErrorReason.AMOUNT_MISMATCH: ErrorCode.PAYMENT_AMOUNT_MISMATCH,
    PaymentErrorReason.PROVIDER_ERROR: ErrorCode.PAYMENT_PROVIDER_ERROR,
    PaymentErrorReason.IN_PROGRESS: ErrorCode.PAYMENT_IN_PROGRESS,
    PaymentErrorReason.EXPIRED: ErrorCode.BOOKING_EXPIRED,
    PaymentErrorReason.INVALID_SIGNATURE: ErrorCode.INVALID_WEBHOOK_SIGNATURE,
    PaymentErrorReason.ORDER_MISMATCH: ErrorCode.PAYMENT_ORDER_MISMATCH,
}

_RETRYABLE_PAYMENT_REASONS = {
    PaymentErrorReason.TIMEOUT,
    PaymentErrorReason.IN_PROGRESS,
}


class PaymentError(BookingError):
    """Payment provider failure."""

    def __init__(
        self,
        reason: PaymentErrorReason,
        details: Optional[dict[str, str]] = None,
        provider_code: Optional[str] = None,
    ):
        self.reason = reason
        self.provider_code = provider_code
        self.retryable = reason in _RETRYABLE_PAYMENT_REASONS
        merged = dict(details or {})
        if provider_code:
            merged.setdefault("provider_code", provider_code)
        super().__init__(_PAYMENT_REASON_CODES[reason], merged or None)


class PersistenceError(BookingError):
    """Data store failure.

    transient=True means the operation may succeed on retry; otherwise the
    error is a permanent conflict.
    """

    def __init__(
        self,
        code: ErrorCode = ErrorCode.STORE_UNAVAILABLE,
        details: Optional[dict[str, str]] = None,
        transient: bool = True,
    ):
        self.transient = transient
        self.retryable = transient
        super().__init__(code, details)


# Provider error codes that indicate a transient failure worth retrying
PROVIDER_RETRYABLE_ERRORS: set[str] = {
    # TossPayments
    "PROVIDER_ERROR",
    "FAILED_INTERNAL_SYSTEM_PROCESSING",
    "FAILED_PAYMENT_INTERNAL_SYSTEM_PROCESSING",
    "UNKNOWN_PAYMENT_ERROR",
    # NicePay
    "2152",
    "9999",
}


def is_provider_error_retryable(provider_code: Optional[str]) -> bool:
    """Check if a provider error code is likely transient.

    Args:
        provider_code: The provider-specific error code.

    Returns:
        True if the error may be resolved by retrying.
    """
    return provider_code in PROVIDER_RETRYABLE_ERRORS if provider_code else False
