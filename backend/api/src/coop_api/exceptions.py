"""FastAPI exception handlers converting BookingError to HTTP responses.

Status mapping:
- 400 Bad Request: validation and business rule violations
- 401 Unauthorized: authentication required, bad webhook signature
- 402 Payment Required: declined or mismatched payments
- 403 Forbidden: acting on another user's records
- 404 Not Found: unknown program, order, reservation or refund
- 409 Conflict: program full, duplicate reservation, concurrent update
- 503 Service Unavailable: transient store or provider failure

Usage:
    from coop_api.exceptions import register_exception_handlers
    register_exception_handlers(app)
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.status import (
    HTTP_400_BAD_REQUEST,
    HTTP_401_UNAUTHORIZED,
    HTTP_402_PAYMENT_REQUIRED,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_500_INTERNAL_SERVER_ERROR,
    HTTP_503_SERVICE_UNAVAILABLE,
)

from coop_booking.models.errors import (
    BookingError,
    ErrorCode,
    NotFoundError,
    PaymentError,
    PersistenceError,
)

logger = logging.getLogger(__name__)

ERROR_CODE_TO_HTTP_STATUS: dict[ErrorCode, int] = {
    # Authentication -> 401
    ErrorCode.AUTH_REQUIRED: HTTP_401_UNAUTHORIZED,
    ErrorCode.INVALID_WEBHOOK_SIGNATURE: HTTP_401_UNAUTHORIZED,
    # Authorization -> 403
    ErrorCode.UNAUTHORIZED: HTTP_403_FORBIDDEN,
    # Not found -> 404
    ErrorCode.PROGRAM_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.ORDER_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.RESERVATION_NOT_FOUND: HTTP_404_NOT_FOUND,
    ErrorCode.REFUND_NOT_FOUND: HTTP_404_NOT_FOUND,
    # Conflicts -> 409
    ErrorCode.PROGRAM_FULL: HTTP_409_CONFLICT,
    ErrorCode.RESERVATION_EXISTS: HTTP_409_CONFLICT,
    ErrorCode.STORE_CONFLICT: HTTP_409_CONFLICT,
    ErrorCode.PAYMENT_IN_PROGRESS: HTTP_409_CONFLICT,
    # Payment failures -> 402
    ErrorCode.PAYMENT_DECLINED: HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.PAYMENT_AMOUNT_MISMATCH: HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.PAYMENT_ORDER_MISMATCH: HTTP_402_PAYMENT_REQUIRED,
    # Transient -> 503
    ErrorCode.PAYMENT_TIMEOUT: HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.PAYMENT_PROVIDER_ERROR: HTTP_503_SERVICE_UNAVAILABLE,
    ErrorCode.STORE_UNAVAILABLE: HTTP_503_SERVICE_UNAVAILABLE,
}


def get_http_status_for_error(exc: BookingError) -> int:
    """HTTP status for a BookingError, defaulting to 400."""
    if isinstance(exc, PersistenceError) and exc.transient:
        return HTTP_503_SERVICE_UNAVAILABLE
    if exc.code in ERROR_CODE_TO_HTTP_STATUS:
        return ERROR_CODE_TO_HTTP_STATUS[exc.code]
    if isinstance(exc, NotFoundError):
        return HTTP_404_NOT_FOUND
    if isinstance(exc, PaymentError):
        return HTTP_402_PAYMENT_REQUIRED
    return HTTP_400_BAD_REQUEST


async def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    """Convert a BookingError to the standard error body."""
    status_code = get_http_status_for_error(exc)
    if status_code >= 500:
        logger.warning("%s on %s: %s", exc.code.value, request.url.path, exc.details)
    headers = {"Retry-After": "2"} if exc.retryable else None
    return JSONResponse(
        status_code=status_code,
        content=exc.to_response().model_dump(mode="json"),
        headers=headers,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback for unexpected exceptions; internal details are not exposed."""
    logger.exception("Unhandled exception on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error_code": "ERR_INTERNAL",
            "message": "An unexpected error occurred",
            "recovery": "Please try again later or contact support",
            "details": None,
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(BookingError, booking_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, generic_exception_handler)
