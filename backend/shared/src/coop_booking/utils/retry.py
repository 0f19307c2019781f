"""Bounded retries with exponential backoff for awaitable calls."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import ParamSpec, TypeVar

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


async def call_with_retry(
    func: Callable[[], Awaitable[R]],
    *,
    max_attempts: int,
    backoff_seconds: float,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    should_retry: Callable[[BaseException], bool] | None = None,
    operation: str | None = None,
) -> R:
    """Await ``func()`` up to max_attempts times.

    Args:
        func: Zero-argument coroutine factory (called once per attempt)
        max_attempts: Maximum number of attempts (>= 1)
        backoff_seconds: Initial backoff, doubled after each failure
        retry_on: Exception types considered transient
        should_retry: Optional finer check on a caught exception
        operation: Name used in log lines

    Returns:
        The first successful result.

    Raises:
        The last exception once attempts are exhausted, or immediately for a
        non-transient one.
    """
    name = operation or getattr(func, "__name__", "operation")
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func()
        except retry_on as e:
            if should_retry is not None and not should_retry(e):
                raise
            if attempt >= max_attempts:
                logger.error("All %d attempts failed for %s: %s", max_attempts, name, e)
                raise
            wait_time = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "Attempt %d/%d failed for %s: %s. Retrying in %.2fs",
                attempt,
                max_attempts,
                name,
                e,
                wait_time,
            )
            await asyncio.sleep(wait_time)


def retry(
    max_attempts: int = 3,
    backoff_seconds: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Decorator form of call_with_retry for fixed retry policies."""

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            return await call_with_retry(
                lambda: func(*args, **kwargs),
                max_attempts=max_attempts,
                backoff_seconds=backoff_seconds,
                retry_on=retry_on,
                operation=func.__name__,
            )

        return wrapper

    return decorator
