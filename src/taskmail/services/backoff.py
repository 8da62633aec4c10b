"""Exponential backoff for notification retries.

delay(attempt) = min(max_delay, base_delay * 2^(attempt - 1)) + jitter

``attempt`` is the 1-indexed number of the attempt that just failed. The
jitter is a small non-negative random component so that workers retrying
the same outage do not line up on identical timestamps.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskmail.core.config import WorkerSettings

# 2^62 * any sane base delay is far beyond every max_delay we accept
_MAX_EXPONENT = 62


@dataclass(frozen=True)
class BackoffPolicy:
    """Stateless retry delay computation.

    Attributes:
        base_delay: Delay in seconds after the first failed attempt.
        max_delay: Cap in seconds for the exponential part.
        jitter: Upper bound in seconds of the random component.
        rng: Random source (injectable for deterministic tests).
    """

    base_delay: float = 30.0
    max_delay: float = 1800.0
    jitter: float = 0.05
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.base_delay <= 0:
            msg = "base_delay must be positive"
            raise ValueError(msg)
        if self.max_delay < self.base_delay:
            msg = "max_delay must be greater than or equal to base_delay"
            raise ValueError(msg)
        if self.jitter < 0:
            msg = "jitter must not be negative"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls, settings: WorkerSettings) -> BackoffPolicy:
        return cls(
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

    def next_delay(self, attempt: int) -> timedelta:
        """Delay before the attempt following ``attempt``.

        Args:
            attempt: 1-indexed number of the attempt that just failed.

        Returns:
            Delay, never more than max_delay + jitter.

        Raises:
            ValueError: If attempt is less than 1.
        """
        if attempt < 1:
            msg = f"attempt must be at least 1, got {attempt}"
            raise ValueError(msg)

        exponent = min(attempt - 1, _MAX_EXPONENT)
        delay = min(self.max_delay, self.base_delay * (2**exponent))
        if self.jitter:
            delay += self.rng.uniform(0, self.jitter)
        return timedelta(seconds=delay)

    def next_attempt_at(self, attempt: int, now: datetime) -> datetime:
        """Absolute time of the next attempt after ``attempt`` failed at ``now``."""
        return now + self.next_delay(attempt)
