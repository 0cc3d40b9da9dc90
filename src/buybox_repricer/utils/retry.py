"""
Retry utilities with exponential backoff for marketplace and ledger calls.

Transient failures (timeouts, rate limits, 5xx responses) are retried with an
exponentially growing delay plus random jitter. Everything else is raised
immediately so the caller can flag the listing.
"""

import asyncio
import random
from dataclasses import dataclass
from functools import wraps
from typing import Callable, Optional, Any, Awaitable

from buybox_repricer.utils.logger import get_logger
from buybox_repricer.utils.exceptions import is_transient_error


logger = get_logger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3  # Total attempts, first call included
    base_delay: float = 0.5  # Delay before the first retry in seconds
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter: bool = True  # Up to +25% on top of the computed delay

    # Rate limiting
    respect_retry_after: bool = True
    max_retry_after: float = 120.0

    # Per-attempt timeout; None disables it
    call_timeout: Optional[float] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay cannot be negative")

    @classmethod
    def from_settings(cls, settings, call_timeout: Optional[float] = None) -> "RetryConfig":
        """Build from a RetryPolicyConfig."""
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            exponential_base=settings.exponential_base,
            jitter=settings.jitter,
            call_timeout=call_timeout,
        )


class ExponentialBackoff:
    """
    Exponential backoff calculator with jitter.

    - First retry waits ``base_delay``
    - Each further retry multiplies the delay by ``exponential_base``
    - Jitter only ever adds time, so the computed delay is a lower bound
    - ``max_delay`` caps the result
    """

    def __init__(self, config: RetryConfig):
        self.config = config
        self.attempt = 0

    def reset(self) -> None:
        """Reset attempt counter."""
        self.attempt = 0

    def calculate_delay(self, retry_after: Optional[float] = None) -> float:
        """
        Calculate delay for the current retry.

        Args:
            retry_after: Seconds requested by the upstream (Retry-After)

        Returns:
            Delay in seconds
        """
        delay = self.config.base_delay * (self.config.exponential_base ** self.attempt)

        if self.config.jitter:
            delay += random.uniform(0, delay * 0.25)

        delay = min(delay, self.config.max_delay)

        if retry_after is not None and self.config.respect_retry_after:
            if retry_after <= self.config.max_retry_after:
                delay = max(delay, retry_after)
            else:
                logger.warning(f"Retry-After too large ({retry_after}s), using exponential backoff")

        self.attempt += 1

        logger.debug(f"Calculated retry delay: {delay:.2f}s (retry {self.attempt})")
        return delay

    def should_retry(self, exception: BaseException) -> bool:
        """
        Determine if another attempt is allowed for this failure.

        Args:
            exception: Exception that occurred

        Returns:
            True if should retry, False otherwise
        """
        if self.attempt + 1 >= self.config.max_attempts:
            logger.debug(f"Max attempts ({self.config.max_attempts}) reached")
            return False

        if is_transient_error(exception):
            logger.debug(f"Retrying on exception: {type(exception).__name__}")
            return True

        logger.debug(f"Not retrying exception: {type(exception).__name__}")
        return False


def _retry_after_of(exception: BaseException) -> Optional[float]:
    retry_after = getattr(exception, 'retry_after', None)
    if retry_after is None:
        cause = getattr(exception, 'cause', None)
        retry_after = getattr(cause, 'retry_after', None)
    return retry_after


class RetryableOperation:
    """
    Context manager for retryable async operations.

    Example:
        async with RetryableOperation(RetryConfig(max_attempts=3)) as retry:
            result = await retry.execute(adapter.update_price, sku, 1999)
    """

    def __init__(self, config: Optional[RetryConfig] = None,
                 on_retry: Optional[Callable[[BaseException, int, float], None]] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.config = config or RetryConfig()
        self.backoff = ExponentialBackoff(self.config)
        self.on_retry = on_retry
        self._sleep = sleep

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        pass

    async def _call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        if self.config.call_timeout is None:
            return await func(*args, **kwargs)
        return await asyncio.wait_for(func(*args, **kwargs), timeout=self.config.call_timeout)

    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Execute coroutine function with retry logic.

        Args:
            func: Coroutine function to execute
            *args: Function arguments
            **kwargs: Function keyword arguments

        Returns:
            Function result

        Raises:
            Exception: The last failure once retries are exhausted, or the
                first non-transient failure.
        """
        self.backoff.reset()
        name = getattr(func, '__name__', 'operation')

        while True:
            try:
                return await self._call(func, *args, **kwargs)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                if not self.backoff.should_retry(e):
                    if is_transient_error(e):
                        logger.error(f"Retries exhausted for {name}: {e}")
                    raise

                delay = self.backoff.calculate_delay(_retry_after_of(e))
                logger.info(f"Retrying {name} in {delay:.2f}s (attempt {self.backoff.attempt + 1}): {e}")
                if self.on_retry is not None:
                    self.on_retry(e, self.backoff.attempt, delay)
                await self._sleep(delay)


def retry_with_backoff(config: Optional[RetryConfig] = None):
    """
    Decorator for retrying coroutine functions with exponential backoff.

    Args:
        config: Retry configuration (uses default if None)

    Returns:
        Decorated function with retry logic
    """
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        if not asyncio.iscoroutinefunction(func):
            raise TypeError("retry_with_backoff only decorates coroutine functions")

        @wraps(func)
        async def async_wrapper(*args, **kwargs):
            return await RetryableOperation(config).execute(func, *args, **kwargs)

        return async_wrapper

    return decorator
