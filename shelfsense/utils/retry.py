"""
Retry utilities with exponential backoff for upstream page fetches.

The commerce client never retries on its own; the sync engine wraps each
page fetch in a RetryContext so that cursor state only reflects pages that
were actually committed.
"""
import asyncio
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from shelfsense.exceptions import ShelfSenseError
from shelfsense.utils.logger import log


@dataclass
class RetryStats:
    """Tracks retry statistics for a single operation."""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    success: bool = False

    def record_attempt(self, error: Optional[Exception] = None, delay: float = 0.0):
        """Record a retry attempt."""
        self.attempts += 1
        self.total_delay_seconds += delay
        if error:
            error_str = f"{type(error).__name__}: {str(error)}"
            self.last_error = error_str
            self.errors.append(error_str)

    def mark_success(self):
        """Mark the operation as successful."""
        self.success = True

    @property
    def retries(self) -> int:
        """Extra attempts beyond the first one"""
        return max(0, self.attempts - 1)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/storage."""
        return {
            "attempts": self.attempts,
            "total_delay_seconds": round(self.total_delay_seconds, 2),
            "success": self.success,
            "last_error": self.last_error,
            "errors": self.errors[:5]  # Cap at 5 errors
        }


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True
) -> float:
    """
    Calculate delay for exponential backoff.

    Args:
        attempt: Current attempt number (1-indexed)
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap
        exponential_base: Base for exponential calculation
        jitter: Add randomness to prevent thundering herd

    Returns:
        Delay in seconds
    """
    delay = base_delay * (exponential_base ** (attempt - 1))
    delay = min(delay, max_delay)

    # Add jitter (0-25% of delay)
    if jitter:
        delay += delay * random.uniform(0, 0.25)

    return delay


def is_retryable_error(error: Exception) -> bool:
    """
    Check if an error is retryable.

    Only errors that declare themselves retryable qualify; rejected requests
    and storage failures propagate on the first attempt.
    """
    if isinstance(error, ShelfSenseError):
        return bool(getattr(error, "retryable", False))
    return False


class RetryContext:
    """
    Context manager for retry operations with stats tracking.

    Usage:
        async with RetryContext(max_attempts=3) as ctx:
            page = await ctx.execute(client.fetch_page, "orders")
            print(ctx.stats.to_dict())
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.sleep = sleep or asyncio.sleep
        self.on_retry = on_retry
        self.stats = RetryStats()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        pass

    async def execute(self, func: Callable, *args, **kwargs):
        """Execute a coroutine function with retry logic."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                result = await func(*args, **kwargs)
                self.stats.record_attempt()
                self.stats.mark_success()
                return result

            except Exception as e:
                if attempt >= self.max_attempts or not is_retryable_error(e):
                    self.stats.record_attempt(error=e)
                    raise

                delay = calculate_backoff(
                    attempt,
                    base_delay=self.base_delay,
                    max_delay=self.max_delay,
                    exponential_base=self.exponential_base,
                    jitter=self.jitter,
                )

                self.stats.record_attempt(error=e, delay=delay)

                log.warning(
                    f"Attempt {attempt} failed: {e}. Retrying in {delay:.1f}s..."
                )

                if self.on_retry:
                    self.on_retry(attempt, e, delay)

                await self.sleep(delay)

        raise RuntimeError("Retry exhausted")
