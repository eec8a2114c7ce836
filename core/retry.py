"""
Retry with exponential backoff for collaborator and store calls.

Only errors carrying a retryable ErrorKind (TRANSIENT, RATE_LIMITED) are
retried; everything else is raised immediately. When attempts run out the
last error is raised unchanged.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from core.errors import RETRYABLE_KINDS

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry configuration.

    Attributes:
        max_attempts: Total number of attempts, including the first one.
        base_delay: Delay in seconds before the second attempt.
        backoff_factor: Multiplier applied to the delay after each attempt.
        max_delay: Upper bound for a single delay.
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """
        Compute the delay after a failed attempt.

        Args:
            attempt: 1-based number of the attempt that just failed.

        Returns:
            Seconds to sleep before the next attempt.
        """
        delay = self.base_delay * (self.backoff_factor ** (attempt - 1))
        return min(delay, self.max_delay)


def is_retryable(error: BaseException) -> bool:
    """Check whether an error is classified as worth retrying."""
    return getattr(error, "kind", None) in RETRYABLE_KINDS


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    policy: RetryPolicy | None = None,
    description: str = "operation",
    **kwargs: Any
) -> T:
    """
    Call a function, retrying transient and rate-limited failures.

    Args:
        func: Callable to invoke.
        *args: Positional arguments for func.
        policy: Retry configuration (defaults to RetryPolicy()).
        description: Human readable name used in log messages.
        **kwargs: Keyword arguments for func.

    Returns:
        Whatever func returns.

    Raises:
        Exception: The error of the final attempt, or the first
            non-retryable error.
    """
    policy = policy or RetryPolicy()

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not is_retryable(e):
                raise

            if attempt >= policy.max_attempts:
                logger.warning(
                    f"{description} failed after {attempt} attempt(s): {e}"
                )
                raise

            delay = policy.delay_for(attempt)
            retry_after = getattr(e, "retry_after", None)
            if retry_after:
                delay = max(delay, float(retry_after))

            logger.warning(
                f"{description} attempt {attempt}/{policy.max_attempts} "
                f"failed ({e}), retrying in {delay:.2f}s"
            )
            time.sleep(delay)

    # max_attempts < 1
    raise ValueError(f"Invalid retry policy: {policy}")
