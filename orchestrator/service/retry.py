"""
Retry with exponential backoff.

Only recoverable failures are retried: ``TransientDependencyError`` and
timeouts. A ``CircuitOpenError`` ends the attempt sequence immediately because
the call was never made.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import anyio
from pydantic import BaseModel, Field

from .errors import CircuitOpenError, TransientDependencyError

logger = logging.getLogger(__name__)


class RetryPolicy(BaseModel):
    """Exponential backoff parameters."""

    max_attempts: int = Field(default=3, ge=1, description="Attempts including the first")
    base_delay: float = Field(default=0.5, ge=0, description="Delay before the first retry")
    multiplier: float = Field(default=2.0, ge=1.0)
    max_delay: float = Field(default=30.0, ge=0)

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        return min(self.base_delay * self.multiplier ** (attempt - 1), self.max_delay)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, CircuitOpenError):
        return False
    return isinstance(exc, (TransientDependencyError, asyncio.TimeoutError, TimeoutError))


async def retry_async(
    fn: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    retryable: Callable[[BaseException], bool] = is_retryable,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], Awaitable[Any]] = anyio.sleep,
) -> Any:
    """
    Call ``fn`` until it succeeds, a non-retryable error occurs or attempts run out.

    Args:
        fn: Coroutine factory performing one attempt
        policy: Backoff parameters
        retryable: Predicate deciding whether an error is worth another attempt
        on_retry: Called with (attempt, error, delay) before each backoff sleep
        sleep: Awaitable sleep, injectable for tests

    Returns:
        Result of the first successful attempt

    Raises:
        The last error once retries are exhausted, or the first non-retryable one
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as e:
            if not retryable(e) or attempt >= policy.max_attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                f"Attempt {attempt}/{policy.max_attempts} failed: {e}. Retrying in {delay:.2f}s"
            )
            if on_retry:
                on_retry(attempt, e, delay)
            # Cancellation of the caller aborts the pending backoff here
            await sleep(delay)
