"""Retry and backoff utilities for resilient operations.

This module provides the single retry policy used by the platform request
client and the upload pipeline: a bounded number of attempts, a backoff
function of the attempt number, and a predicate deciding which failures are
worth another attempt.
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from app.core.logging import get_logger

logger = get_logger(__name__)


def exponential_backoff(
    base: float = 1.0, maximum: float = 30.0, jitter: bool = True
) -> Callable[[int], float]:
    """Backoff of ``min(base * 2^(attempt-1), maximum)``, optionally jittered."""

    def _delay(attempt: int) -> float:
        delay = min(base * (2 ** (attempt - 1)), maximum)
        if jitter:
            delay *= 0.5 + random.random()
        return delay

    return _delay


def linear_backoff(step: float = 1.0) -> Callable[[int], float]:
    """Backoff of ``step * attempt``: 1s, 2s, 3s... for the default step."""

    def _delay(attempt: int) -> float:
        return step * attempt

    return _delay


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    ``max_attempts`` counts the first call, so ``max_attempts=4`` means three
    retries. ``backoff`` receives the 1-based number of the failed attempt.
    """

    max_attempts: int = 3
    backoff: Callable[[int], float] = field(default_factory=exponential_backoff)
    retryable_exceptions: tuple[type[Exception], ...] = field(default_factory=lambda: (Exception,))
    should_retry: Callable[[Exception], bool] | None = None

    def is_retryable(self, error: Exception) -> bool:
        if not isinstance(error, self.retryable_exceptions):
            return False
        if self.should_retry is not None:
            return self.should_retry(error)
        return True


async def retry_with_backoff[T](
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    operation_name: str = "operation",
) -> T:
    """
    Await ``fn()`` until it succeeds or the config says to stop.

    Failures the config does not consider retryable propagate on the spot;
    a retryable failure on the last attempt propagates as well.

    Args:
        fn: Zero-argument coroutine factory, called once per attempt
        config: Attempts, backoff and retry predicate (defaults if omitted)
        operation_name: Label attached to the retry log events

    Example:
        ```python
        payload = await retry_with_backoff(
            lambda: self._send_once(method, url, path, platform, headers, content),
            config=RetryConfig(max_attempts=4, backoff=linear_backoff(1.0),
                               retryable_exceptions=(TransportError,)),
            operation_name=f"{platform.key}:{path}",
        )
        ```
    """
    config = config or RetryConfig()

    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as e:
            if not config.is_retryable(e):
                raise
            if attempt >= config.max_attempts:
                logger.error(
                    "retry_exhausted",
                    operation=operation_name,
                    attempts=attempt,
                    error=str(e),
                )
                raise

            delay = config.backoff(attempt)
            logger.warning(
                "retry_attempt",
                operation=operation_name,
                attempt=attempt,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
            )
            await asyncio.sleep(delay)
