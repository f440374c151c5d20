"""Retry logic with exponential backoff and jitter.

Used for the two places where the ETL retries on its own: transient storage
errors while ingesting (sync) and gateway HTTP calls (async). The record
writer itself never retries.

Usage:
    outcome = retry_sync(
        lambda: writer.write(record, epoch),
        config=RetryConfig(max_retries=3, retryable_exceptions=(TransientStorageError,)),
    )

    response = await retry_async(send, config=RetryConfig(retryable_exceptions=(httpx.TransportError,)))
"""

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from gateway_etl.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Base delay in seconds before first retry (default: 1.0)
        max_delay: Maximum delay in seconds between retries (default: 60.0)
        backoff_factor: Exponential backoff multiplier (default: 2.0)
        jitter: Whether to add random jitter to delays (default: True)
        jitter_range: Range for jitter as fraction of delay (default: 0.1 = ±10%)
        retryable_exceptions: Tuple of exception types to retry (default: all)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.1
    retryable_exceptions: tuple[type[Exception], ...] = field(default_factory=lambda: (Exception,))

    def __post_init__(self):
        """Validate configuration parameters."""
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if not 0 <= self.jitter_range <= 1:
            raise ValueError("jitter_range must be between 0 and 1")

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given retry attempt (0-indexed)."""
        delay = min(self.base_delay * (self.backoff_factor**attempt), self.max_delay)

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0, delay + random.uniform(-jitter_amount, jitter_amount))

        return delay

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Whether ``error`` raised on ``attempt`` deserves another try."""
        if not isinstance(error, self.retryable_exceptions):
            logger.debug(
                "retry_skipped_non_retryable_exception",
                exception_type=type(error).__name__,
                error=str(error),
            )
            return False

        if attempt >= self.max_retries:
            logger.error(
                "retry_exhausted",
                attempts=attempt + 1,
                exception=type(error).__name__,
                error=str(error),
            )
            return False

        return True


async def retry_async(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
) -> T:
    """Retry an async function with exponential backoff.

    Args:
        func: Async function to retry (takes no arguments)
        config: Retry configuration (uses defaults if None)

    Returns:
        The return value of func() on success

    Raises:
        The last exception if all retries are exhausted
    """
    config = config or RetryConfig()
    attempt = 0

    while True:
        try:
            return await func()
        except Exception as e:
            if not config.should_retry(e, attempt):
                raise

            delay = config.calculate_delay(attempt)
            logger.info(
                "retry_attempt",
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
                exception=type(e).__name__,
                error=str(e),
            )
            await asyncio.sleep(delay)
            attempt += 1


def retry_sync(
    func: Callable[[], T],
    config: RetryConfig | None = None,
) -> T:
    """Retry a blocking function with exponential backoff.

    Same contract as :func:`retry_async`, but sleeps with ``time.sleep`` so it
    can run inside or outside an event loop.
    """
    config = config or RetryConfig()
    attempt = 0

    while True:
        try:
            return func()
        except Exception as e:
            if not config.should_retry(e, attempt):
                raise

            delay = config.calculate_delay(attempt)
            logger.info(
                "retry_attempt",
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
                exception=type(e).__name__,
                error=str(e),
            )
            time.sleep(delay)
            attempt += 1
