"""
Retry - Bounded exponential backoff with jitter.

Used by the checkpoint store for backend calls and by collaborator nodes
for external fetches. Rate limits, 5xx responses, timeouts and network
failures are retried; other 4xx responses, permission and payload errors
fail fast.
"""

import asyncio
import json
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx
import pydantic

from proposal_engine.errors import NonRetryableError, TransientIOError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429})


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule: base_delay * multiplier**(attempt-1), capped, plus jitter."""

    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0
    jitter: float = 0.25  # Fraction of the delay added at random

    def delay_for(self, attempt: int) -> float:
        """
        Delay to sleep after a failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed

        Returns:
            Seconds to wait before the next attempt
        """
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter > 0 and delay > 0:
            delay += random.uniform(0, delay * self.jitter)
        return delay


NO_RETRY = RetryPolicy(max_attempts=1, base_delay=0.0)


def is_retryable(exc: BaseException) -> bool:
    """Classify an exception as worth retrying."""
    if isinstance(exc, (NonRetryableError, ValidationError, PermissionError)):
        return False
    if isinstance(exc, (pydantic.ValidationError, json.JSONDecodeError)):
        return False
    if isinstance(exc, TransientIOError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status in RETRYABLE_STATUS_CODES
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(exc, ConnectionError):
        return True
    return False


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run an async operation under a retry policy.

    Args:
        operation: Zero-argument coroutine factory, called once per attempt
        policy: Backoff schedule
        description: Used in log messages
        sleep: Injected for tests

    Returns:
        The operation's result

    Raises:
        The last exception once attempts are exhausted, or the first
        non-retryable exception immediately.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e):
                logger.debug(f"{description}: non-retryable {type(e).__name__}: {e}")
                raise
            if attempt >= policy.max_attempts:
                logger.error(f"✗ {description} failed after {attempt} attempts: {e}")
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"↻ {description} failed ({type(e).__name__}: {e}); "
                f"retry {attempt}/{policy.max_attempts - 1} in {delay:.2f}s"
            )
            await sleep(delay)
