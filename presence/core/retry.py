"""
Retry policy with exponential backoff for remote calls.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from presence.core.errors import RequestTimeoutError, RetryExhaustedError, SheetsTransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(error: Exception) -> bool:
    return isinstance(error, SheetsTransientError)


@dataclass(frozen=True)
class RetryPolicy:
    """max_attempts total tries; delay before try n+1 is base_delay * multiplier ** (n - 1)."""

    max_attempts: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    retryable: Callable[[Exception], bool] = is_transient

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (self.multiplier ** (attempt - 1))

    def call(
        self,
        fn: Callable[[], T],
        description: str = "request",
        sleep: Callable[[float], None] = time.sleep,
        deadline: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> T:
        """
        Run fn until it succeeds, raises a non-retryable error, or attempts run out.
        deadline is a clock() instant; no new attempt or backoff sleep starts past it.
        """
        for attempt in range(1, self.max_attempts + 1):
            if deadline is not None and clock() >= deadline:
                raise RequestTimeoutError(f"Deadline exceeded before {description} attempt {attempt}")
            try:
                return fn()
            except Exception as e:
                if not self.retryable(e):
                    raise
                if attempt == self.max_attempts:
                    raise RetryExhaustedError(
                        f"{description} failed after {attempt} attempts: {e}",
                        last_error=e,
                        attempts=attempt,
                    ) from e
                delay = self.delay_for(attempt)
                if deadline is not None and clock() + delay >= deadline:
                    raise RequestTimeoutError(
                        f"Deadline exceeded while retrying {description}: {e}"
                    ) from e
                logger.warning(
                    f"{description} attempt {attempt} failed, retrying in {delay:.1f}s: {e}"
                )
                sleep(delay)
        raise AssertionError("unreachable")
