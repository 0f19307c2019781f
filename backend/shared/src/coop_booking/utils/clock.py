"""Time helpers shared by the booking services.

Services take a ``Clock`` callable so tests can pin "now".
"""

import datetime as dt
from collections.abc import Callable

Clock = Callable[[], dt.datetime]


def utc_now() -> dt.datetime:
    """Current UTC time (the default Clock)."""
    return dt.datetime.now(dt.UTC)


def parse_datetime(value: str | dt.datetime | None) -> dt.datetime | None:
    """Parse an ISO 8601 timestamp as stored in DynamoDB.

    Naive values are assumed to be UTC.
    """
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        parsed = value
    else:
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        parsed = dt.datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.UTC)
    return parsed


def to_epoch(value: dt.datetime) -> int:
    return int(value.timestamp())
