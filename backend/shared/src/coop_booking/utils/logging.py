"""Logging setup and correlation IDs.

Every line carries the correlation ID of the request (or Lambda
invocation) that produced it. Payment and webhook events are logged as
one ``key=value`` line with the same fields in ``extra`` so CloudWatch
Logs Insights can filter on them.
"""

import logging
import uuid
from contextvars import ContextVar
from typing import Any

# Copied into tasks created by asyncio, so dispatched notifications keep it
_correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)

NO_CORRELATION_ID = "-"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(correlation_id)s] %(name)s: %(message)s"


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind a correlation ID to the current context, minting one if needed."""
    value = correlation_id or uuid.uuid4().hex
    _correlation_id.set(value)
    return value


def get_correlation_id() -> str | None:
    return _correlation_id.get()


def clear_correlation_id() -> None:
    _correlation_id.set(None)


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _correlation_id.get() or NO_CORRELATION_ID
        return True


def configure_logging(level: int | str = logging.INFO) -> None:
    """Attach the correlation-aware handler to the root logger once.

    Called from the API module and the reconciler Lambda at import time.
    """
    root = logging.getLogger()
    root.setLevel(level)
    if any(getattr(h, "_coop_booking", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(CorrelationIdFilter())
    handler._coop_booking = True  # type: ignore[attr-defined]
    root.addHandler(handler)


def _event_line(prefix: str, fields: dict[str, Any]) -> str:
    pairs = [f"{key}={value}" for key, value in fields.items() if value is not None]
    return " | ".join([prefix, *pairs])


def log_payment_operation(
    logger: logging.Logger,
    operation: str,
    *,
    order_id: str | None = None,
    payment_id: str | None = None,
    reservation_id: str | None = None,
    amount: int | None = None,
    status: str | None = None,
    error: str | None = None,
    **extra: Any,
) -> None:
    """Log one step of a payment (initiate, approve, commit, rollback, refund...).

    Logged at ERROR when ``error`` is set, INFO otherwise.
    """
    fields: dict[str, Any] = {
        "order_id": order_id,
        "payment_id": payment_id,
        "reservation_id": reservation_id,
        "amount": amount,
        "status": status,
        "error": error,
        **extra,
    }
    context = {"operation": operation, **{k: v for k, v in fields.items() if v is not None}}
    level = logging.ERROR if error else logging.INFO
    logger.log(level, _event_line(f"payment {operation}", fields), extra=context)


def log_webhook_event(
    logger: logging.Logger,
    provider: str,
    event_type: str,
    event_id: str,
    *,
    order_id: str | None = None,
    result: str | None = None,
    error: str | None = None,
) -> None:
    """Log a webhook delivery; duplicates and skips are warnings."""
    fields = {"order_id": order_id, "result": result, "error": error}
    context = {
        "provider": provider,
        "event_type": event_type,
        "event_id": event_id,
        **{k: v for k, v in fields.items() if v is not None},
    }
    if result == "error":
        level = logging.ERROR
    elif result in ("duplicate", "skipped"):
        level = logging.WARNING
    else:
        level = logging.INFO
    logger.log(
        level, _event_line(f"webhook {provider} {event_type} {event_id[:12]}", fields), extra=context
    )
