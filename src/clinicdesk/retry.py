"""Retry with exponential backoff for scheduler calls.

Only transport failures (including timeouts), 5xx and 429 are retried.
Other 4xx responses mean the request itself is wrong and fail immediately.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from clinicdesk.errors import SchedulerError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Full-jitter exponential backoff: sleep ~ U(0, min(cap, base * 2**attempt))."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int) -> float:
        ceiling = min(self.max_delay, self.base_delay * (2 ** attempt))
        return random.uniform(0, ceiling)


DEFAULT_POLICY = RetryPolicy()


def is_retryable(error: Exception) -> bool:
    if isinstance(error, SchedulerError):
        return error.retryable
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return status == 429 or status >= 500
    return isinstance(error, httpx.TransportError)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    label: str,
    policy: RetryPolicy = DEFAULT_POLICY,
) -> T:
    """Await ``fn()`` up to ``policy.max_attempts`` times.

    The last error is re-raised unchanged once attempts are exhausted or as
    soon as a non-retryable error is seen.
    """
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as e:
            attempt += 1
            if not is_retryable(e):
                raise
            if attempt >= policy.max_attempts:
                logger.error("%s failed after %d attempts: %s", label, attempt, e)
                raise
            delay = policy.delay_for(attempt - 1)
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.2fs: %s",
                label, attempt, policy.max_attempts, delay, e,
            )
            await asyncio.sleep(delay)
