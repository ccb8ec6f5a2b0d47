"""
Retry utilities with exponential backoff for ledger gateway calls.

Execution itself never loops: a transient ledger failure puts the
transaction back to ``approved`` and tells the caller when to retry, using
``RetryConfig.calculate_delay``. Read-only gateway calls made by the
reconciliation pass go through ``retry_async``.

Usage:
    from quorum_custody.retry import RetryConfig, retry_async

    config = RetryConfig.from_settings(settings)
    confirmations = await retry_async(gateway.get_confirmations, tx_hash, config=config)
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar, TYPE_CHECKING

from .exceptions import LedgerPermanentError, LedgerTransientError

if TYPE_CHECKING:
    from .config import QuorumSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (0 means no retries)
        base_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        jitter: Maximum jitter factor (0.0-1.0) added to delays
        retryable_exceptions: Exception types that trigger retries
        non_retryable_exceptions: Exception types that are raised immediately
    """

    max_retries: int = 2
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: float = 0.0
    retryable_exceptions: tuple[Type[BaseException], ...] = (LedgerTransientError,)
    non_retryable_exceptions: tuple[Type[BaseException], ...] = (LedgerPermanentError,)

    @classmethod
    def from_settings(cls, settings: "QuorumSettings") -> "RetryConfig":
        return cls(
            max_retries=max(settings.max_execution_attempts - 1, 0),
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt number (0-based).

        Uses exponential backoff capped at ``max_delay`` with optional jitter.
        """
        delay = self.base_delay * (self.exponential_base ** attempt)
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            delay = delay + random.uniform(-jitter_range, jitter_range)

        return max(0.0, delay)

    def should_retry(self, exception: BaseException) -> bool:
        # Non-retryable takes precedence
        if isinstance(exception, self.non_retryable_exceptions):
            return False
        return isinstance(exception, self.retryable_exceptions)


@dataclass
class RetryStats:
    """Statistics about retry execution."""

    attempts: int = 0
    total_delay: float = 0.0
    success: bool = False
    last_exception: Optional[BaseException] = None


class RetryExhausted(Exception):
    """Raised when all retry attempts have been exhausted."""

    def __init__(
        self,
        message: str,
        stats: RetryStats,
        original_exception: BaseException,
    ) -> None:
        super().__init__(message)
        self.stats = stats
        self.original_exception = original_exception


async def retry_async(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    config: Optional[RetryConfig] = None,
    **kwargs: Any,
) -> T:
    """Execute an async function with retry logic.

    Raises:
        RetryExhausted: If all retry attempts fail with retryable errors
    """
    if config is None:
        config = RetryConfig()

    stats = RetryStats()
    last_exception: Optional[BaseException] = None
    name = getattr(func, "__name__", repr(func))

    for attempt in range(config.max_retries + 1):
        stats.attempts = attempt + 1

        try:
            result = await func(*args, **kwargs)
            stats.success = True
            return result

        except Exception as e:
            last_exception = e
            stats.last_exception = e

            if not config.should_retry(e):
                logger.debug(f"Exception {type(e).__name__} is not retryable, raising immediately")
                raise

            if attempt >= config.max_retries:
                break

            delay = config.calculate_delay(attempt)
            stats.total_delay += delay

            logger.warning(
                f"Retry {attempt + 1}/{config.max_retries} for "
                f"{name} after {type(e).__name__}: {e}. "
                f"Waiting {delay:.2f}s"
            )

            await asyncio.sleep(delay)

    raise RetryExhausted(
        f"All {config.max_retries + 1} attempts failed for {name}",
        stats=stats,
        original_exception=last_exception,
    ) from last_exception


__all__ = [
    "RetryConfig",
    "RetryStats",
    "RetryExhausted",
    "retry_async",
]
