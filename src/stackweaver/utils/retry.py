"""Retry strategy with exponential backoff for provider operations."""

import time
import random
from typing import Callable, TypeVar, Optional
from functools import wraps

from stackweaver.utils.errors import ProviderError
from stackweaver.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')


class RetryStrategy:
    """Implements exponential backoff for retryable provider errors."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize retry strategy.

        Args:
            max_attempts: Total number of attempts, including the first call
            base_delay: Base delay in seconds for first retry
            max_delay: Maximum delay in seconds between retries
            exponential_base: Base for exponential backoff calculation
            jitter: Whether to add random jitter to delay
            sleep: Function used to wait between attempts
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.sleep = sleep

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """Determine if an error should trigger a retry.

        Args:
            error: The exception that occurred
            attempt: Attempt number that just failed (1-indexed)

        Returns:
            True if the error is retryable and attempts remain
        """
        if attempt >= self.max_attempts:
            return False
        return isinstance(error, ProviderError) and error.retryable

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before next retry using exponential backoff.

        Args:
            attempt: Attempt number that just failed (1-indexed)

        Returns:
            Delay in seconds before next retry
        """
        delay = min(
            self.base_delay * (self.exponential_base ** (attempt - 1)),
            self.max_delay
        )

        # Up to 10% jitter
        if self.jitter and delay > 0:
            delay += random.uniform(0, delay * 0.1)

        return delay

    def call(
        self,
        func: Callable[[], T],
        deadline: Optional[float] = None,
        description: str = "operation"
    ) -> T:
        """Execute a function with retry logic.

        Args:
            func: Zero-argument function to execute
            deadline: Optional time.monotonic() value after which no retry is attempted
            description: Label used in log messages

        Returns:
            Result of the function call

        Raises:
            The last exception if it is not retryable or attempts are exhausted
        """
        attempt = 0
        while True:
            attempt += 1
            try:
                result = func()
                if attempt > 1:
                    logger.info(f"{description} succeeded after {attempt - 1} retries")
                return result
            except Exception as e:
                if not self.should_retry(e, attempt):
                    raise

                delay = self.get_delay(attempt)
                if deadline is not None and time.monotonic() + delay >= deadline:
                    logger.warning(f"{description} failed and no time is left before its deadline")
                    raise

                logger.warning(
                    f"{description} attempt {attempt}/{self.max_attempts} failed: {e}. "
                    f"Retrying in {delay:.2f}s..."
                )
                self.sleep(delay)


def with_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter: bool = True
):
    """Decorator to add retry logic to a function.

    Example:
        @with_retry(max_attempts=3, base_delay=2.0)
        def wait_for_certificate(client, arn):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            strategy = RetryStrategy(
                max_attempts=max_attempts,
                base_delay=base_delay,
                max_delay=max_delay,
                exponential_base=exponential_base,
                jitter=jitter
            )
            return strategy.call(lambda: func(*args, **kwargs), description=func.__name__)

        return wrapper

    return decorator
