"""Retry loop with exponential backoff, shared by queries and mutations."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def exponential_backoff(base_delay: int, attempt: int) -> int:
    """Delay in ms before retry number attempt (0-indexed): base * 2**attempt.

    Example:
        >>> exponential_backoff(1000, 0)
        1000
        >>> exponential_backoff(1000, 2)
        4000
    """
    return base_delay * (2**attempt)


async def execute_with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    retry_count: int,
    delay_for: Callable[[int], int],
    label: object = "",
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Run fn, retrying up to retry_count times after a failure.

    Args:
        fn: Async function to execute
        retry_count: Retries after the first attempt (0 = single attempt)
        delay_for: Maps the 0-indexed retry number to a delay in ms
        label: Used in log messages only
        on_retry: Optional callback called before each retry (attempt, error)

    Returns:
        Result of the first successful attempt

    Raises:
        The error of the final attempt, once retries are exhausted.
        Cancellation is never retried.
    """
    attempt = 0
    while True:
        try:
            logger.debug("Running %s (attempt %d/%d)", label, attempt + 1, retry_count + 1)
            return await fn()
        except Exception as e:
            if attempt >= retry_count:
                raise
            delay = delay_for(attempt)
            logger.debug(
                "Retry %d/%d for %s in %d ms after %r",
                attempt + 1,
                retry_count,
                label,
                delay,
                e,
            )
            if on_retry is not None:
                on_retry(attempt, e)
            await asyncio.sleep(delay / 1000)
            attempt += 1


__all__ = ["execute_with_retry", "exponential_backoff"]
