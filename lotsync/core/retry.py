"""Retry with exponential backoff for LotSync.

Failed network writes and uploads are retried with capped exponential
backoff plus jitter. Waiting goes through a Scheduler so tests can substitute
a fake clock for time.sleep().

CRITICAL: This module must have NO Textual/Flask dependencies.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, TypeVar

logger = logging.getLogger(__name__)

__all__ = [
    "RetryPolicy",
    "Scheduler",
    "SleepScheduler",
    "calculate_backoff_delay",
    "should_retry",
    "retry_call",
]

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters.

    Attributes:
        max_retries: Retries allowed after the first attempt
        base_delay: Delay before the first retry, in seconds
        max_delay: Upper bound for any delay, in seconds
        multiplier: Growth factor per retry
        jitter: Relative jitter band (0.25 means +/-25%)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.25


DEFAULT_POLICY = RetryPolicy()


def calculate_backoff_delay(
    retry_count: int,
    policy: RetryPolicy = DEFAULT_POLICY,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay in seconds before retry number `retry_count` (0-based).

    The exponential delay is scaled by a factor drawn uniformly from
    [1 - jitter, 1 + jitter] and capped at policy.max_delay.
    """
    if retry_count < 0:
        raise ValueError("retry_count cannot be negative")
    delay = policy.base_delay * (policy.multiplier ** retry_count)
    factor = (1.0 - policy.jitter) + rng() * (2 * policy.jitter)
    return min(delay * factor, policy.max_delay)


class Scheduler(Protocol):
    """Waits until retry `attempt` (0-based) may run."""

    def schedule_retry(self, attempt: int) -> None:
        ...


class SleepScheduler:
    """Scheduler that blocks the calling thread with time.sleep()."""

    def __init__(
        self,
        policy: RetryPolicy = DEFAULT_POLICY,
        sleep: Callable[[float], None] = time.sleep,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.policy = policy
        self._sleep = sleep
        self._rng = rng
        self.last_delay: Optional[float] = None

    def schedule_retry(self, attempt: int) -> None:
        delay = calculate_backoff_delay(attempt, self.policy, self._rng)
        self.last_delay = delay
        logger.info(f"Retrying in {delay:.1f}s (attempt {attempt + 1})")
        self._sleep(delay)


_RETRYABLE_MARKERS = ("network", "fetch", "timeout", "timed out", "connection",
                      "500", "502", "503", "504", "429", "too many requests")
_FATAL_MARKERS = ("400", "401", "403", "404")


def should_retry(error: BaseException) -> bool:
    """Decide whether an error is worth retrying.

    Network errors, timeouts, 5xx responses and rate limiting are retried.
    Client errors (400, 401, 403, 404) are not. Unknown errors are retried.
    """
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True

    status = getattr(error, "status", None)
    if isinstance(status, int):
        if status == 429 or status >= 500:
            return True
        if 400 <= status < 500:
            return False

    message = str(error).lower()
    if any(marker in message for marker in _RETRYABLE_MARKERS):
        return True
    if any(marker in message for marker in _FATAL_MARKERS):
        return False
    return True


def retry_call(
    fn: Callable[[], T],
    policy: RetryPolicy = DEFAULT_POLICY,
    scheduler: Optional[Scheduler] = None,
    retry_on: Callable[[BaseException], bool] = should_retry,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """Call `fn`, retrying failures with backoff.

    Args:
        fn: Operation to run
        policy: Backoff parameters (max_retries bounds the retries)
        scheduler: Waits between attempts (default: SleepScheduler(policy))
        retry_on: Predicate deciding whether an error is retryable
        on_retry: Called with (retry number, error) before each wait

    Returns:
        Result of the first successful call

    Raises:
        The last error, once retries are exhausted or the error is not retryable
    """
    if scheduler is None:
        scheduler = SleepScheduler(policy)

    attempt = 0
    while True:
        try:
            result = fn()
            if attempt > 0:
                logger.info(f"Operation completed after {attempt} retr{'y' if attempt == 1 else 'ies'}")
            return result
        except Exception as e:
            if not retry_on(e) or attempt >= policy.max_retries:
                logger.error(f"Giving up after {attempt + 1} attempt(s): {e}")
                raise
            logger.warning(f"Attempt {attempt + 1} failed: {e}")
            if on_retry is not None:
                on_retry(attempt + 1, e)
            scheduler.schedule_retry(attempt)
            attempt += 1
