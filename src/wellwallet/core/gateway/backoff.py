"""Bounded exponential backoff for transient gateway failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from wellwallet.core.gateway.client import RateLimitedError, TransientGatewayError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base_delay: float, retry_after: float | None = None) -> float:
    """Delay before retry number ``attempt`` (1-based): ``base * 2**(attempt-1)``.

    A server-supplied ``Retry-After`` wins when it is longer.
    """
    delay = base_delay * (2 ** max(attempt - 1, 0))
    if retry_after is not None and retry_after > delay:
        return retry_after
    return delay


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.5,
    sleep: Sleep = asyncio.sleep,
    label: str = "gateway call",
) -> T:
    """Run ``operation`` retrying transient failures up to ``attempts`` times.

    Only ``TransientGatewayError`` subclasses are retried. Every other error
    propagates immediately with its classification intact; once every attempt
    has failed the last transient error propagates too.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TransientGatewayError as exc:
            if attempt >= attempts:
                logger.warning(
                    "%s failed after %d attempt(s): %s", label, attempt, exc
                )
                raise
            retry_after = exc.retry_after if isinstance(exc, RateLimitedError) else None
            delay = backoff_delay(attempt, base_delay, retry_after)
            logger.info(
                "%s hit %s (attempt %d/%d); retrying in %.2fs",
                label,
                type(exc).__name__,
                attempt,
                attempts,
                delay,
            )
            await sleep(delay)
    raise AssertionError("unreachable")  # pragma: no cover
