"""Exponential backoff for transfer operations."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number *attempt* (1-based), doubling up to *max_delay*."""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, OSError) or bool(getattr(exc, "retryable", False))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int,
    base_delay: float,
    max_delay: float,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    on_failure: Callable[[int, BaseException], None] | None = None,
) -> T:
    """Run *operation* until it succeeds or *max_attempts* is reached.

    Only OSError and errors flagged ``retryable`` are retried; anything else,
    and the last retryable failure, propagates to the caller.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if on_failure is not None:
                on_failure(attempt, e)
            if not is_retryable(e) or attempt >= max_attempts:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.debug(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                description, attempt, max_attempts, e, delay,
            )
            await sleep(delay)
