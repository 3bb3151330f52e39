"""Utility functions for Neural Mail."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterator
from typing import TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


def backoff_delays(
    initial: float = 1.0,
    factor: float = 2.0,
    max_delay: float = 30.0,
) -> Iterator[float]:
    """Yield an endless exponential backoff sequence capped at ``max_delay``."""

    delay = initial
    while True:
        yield min(delay, max_delay)
        delay *= factor


async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    retry_on: tuple[type[BaseException], ...],
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: float = 30.0,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    operation: str | None = None,
) -> T:
    """Call ``func`` until it succeeds, retrying listed exceptions with exponential backoff.

    Args:
        func: Zero-argument coroutine factory.
        retry_on: Exception types that trigger another attempt. Anything else
            propagates immediately.
        max_attempts: Total attempts, including the first one.
        delay: Initial delay between attempts in seconds.
        backoff: Multiplier for delay after each attempt.
        max_delay: Cap for a single delay.
        sleep: Awaitable sleep, injectable for tests.
        operation: Name used in log events.

    Returns:
        The first successful result.

    Raises:
        The last retryable exception once the attempts are exhausted.
    """

    name = operation or getattr(func, "__name__", "operation")
    delays = backoff_delays(delay, backoff, max_delay)

    for attempt in range(1, max_attempts + 1):
        try:
            return await func()
        except retry_on as e:
            if attempt >= max_attempts:
                logger.error(
                    "function_retry_exhausted",
                    function=name,
                    attempts=attempt,
                    error_type=type(e).__name__,
                )
                raise
            current_delay = next(delays)
            logger.warning(
                "function_retry",
                function=name,
                attempt=attempt,
                max_attempts=max_attempts,
                delay=current_delay,
                error_type=type(e).__name__,
            )
            await sleep(current_delay)

    raise AssertionError("unreachable")  # pragma: no cover
