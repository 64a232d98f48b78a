"""Retry logic with exponential backoff."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar, Optional

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryManager:
    """
    Retry manager with configurable exponential backoff.

    Used for transient infrastructure errors such as checkpoint lock
    contention; outcome errors are never retried.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 1.0,
        backoff_factor: float = 2.0,
        max_delay: float = 30.0,
    ):
        """
        Initialize retry manager.

        Args:
            max_retries: Maximum number of attempts
            base_delay: Delay before the second attempt (seconds)
            backoff_factor: Exponential backoff multiplier
            max_delay: Maximum delay between retries (seconds)
        """
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.logger = logging.getLogger(__name__)

    async def execute_with_retry(
        self,
        func: Callable[..., Awaitable[T]],
        *args,
        retry_on: tuple = (Exception,),
        **kwargs,
    ) -> T:
        """
        Execute a coroutine function with retry logic.

        Args:
            func: Async function to execute
            *args: Positional arguments
            retry_on: Tuple of exception types to retry on
            **kwargs: Keyword arguments

        Returns:
            Function result

        Raises:
            Exception: The last error if all attempts fail
        """
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_retries):
            try:
                return await func(*args, **kwargs)

            except retry_on as e:
                last_error = e

                if attempt < self.max_retries - 1:
                    delay = self.calculate_delay(attempt)
                    name = getattr(func, "__name__", "operation")
                    self.logger.warning(
                        f"Attempt {attempt + 1}/{self.max_retries} of {name} "
                        f"failed: {e}. Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)

        self.logger.error(f"All {self.max_retries} attempts failed: {last_error}")
        raise last_error

    def calculate_delay(self, attempt: int) -> float:
        """
        Calculate retry delay for given attempt.

        Args:
            attempt: Attempt number (0-indexed)

        Returns:
            Delay in seconds
        """
        return min(self.base_delay * self.backoff_factor**attempt, self.max_delay)
