"""
Retry backoff for failed outbox jobs.
"""

import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from salesops.config.settings import Settings


def compute_backoff(
    attempt: int,
    base_delay: timedelta,
    max_delay: timedelta,
    jitter_window: timedelta = timedelta(0),
    rand: Callable[[], float] = random.random,
) -> timedelta:
    """
    Delay before the next try after ``attempt`` failed executions.

    ``min(base * 2^(attempt-1), max) + jitter`` with jitter drawn uniformly
    from ``[0, jitter_window)``. With a one minute base: 1m, 2m, 4m, 8m...
    """
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got: {attempt}")

    # Cap the exponent so huge attempt counts can't overflow timedelta
    exponent = min(attempt - 1, 32)
    delay = min(base_delay * (2**exponent), max_delay)

    if jitter_window > timedelta(0):
        delay += jitter_window * rand()

    return delay


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with a cap and additive jitter."""

    base_delay: timedelta = timedelta(minutes=1)
    max_delay: timedelta = timedelta(hours=1)
    jitter_window: timedelta = timedelta(seconds=5)
    rand: Callable[[], float] = field(default=random.random, compare=False)

    def __post_init__(self) -> None:
        if self.base_delay <= timedelta(0):
            raise ValueError("base_delay must be positive")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.jitter_window < timedelta(0):
            raise ValueError("jitter_window must not be negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> "BackoffPolicy":
        return cls(
            base_delay=timedelta(seconds=settings.outbox_backoff_base_s),
            max_delay=timedelta(seconds=settings.outbox_backoff_max_s),
            jitter_window=timedelta(seconds=settings.outbox_backoff_jitter_s),
        )

    def delay(self, attempt: int) -> timedelta:
        return compute_backoff(
            attempt, self.base_delay, self.max_delay, self.jitter_window, self.rand
        )

    def next_run_at(self, attempt: int, now: datetime) -> datetime:
        """Calculate next retry time for a job that just failed ``attempt``."""
        return now + self.delay(attempt)
