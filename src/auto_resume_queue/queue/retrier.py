"""Shared sleep-and-retry policy for lock acquisition and workflow recovery."""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from enum import Enum

logger = logging.getLogger(__name__)


class BackoffMode(str, Enum):
    """How delay grows with the retry number."""

    FIXED = "fixed"
    LINEAR = "linear"


class Retrier:
    """Bounded retry policy with jitter and an optional fixed cooldown override."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_delay_seconds: float,
        max_attempts: int | None = None,
        max_delay_seconds: float | None = None,
        jitter_seconds: float = 0.0,
        min_delay_seconds: float = 0.0,
        mode: BackoffMode = BackoffMode.FIXED,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.base_delay_seconds = max(0.0, base_delay_seconds)
        self.max_attempts = max_attempts
        self.max_delay_seconds = max_delay_seconds
        self.jitter_seconds = max(0.0, jitter_seconds)
        self.min_delay_seconds = max(0.0, min_delay_seconds)
        self.mode = mode
        self._sleep = sleep
        self._random = rng or random.Random()  # noqa: S311

    def can_retry(self, retries_so_far: int) -> bool:
        """Return whether another retry fits into the attempt budget."""

        return self.max_attempts is None or retries_so_far < self.max_attempts

    def compute_delay(self, *, retry_number: int, factor: float = 1.0) -> float:
        """Delay before retry `retry_number` (1-based), with cap, jitter and floor applied."""

        if self.mode == BackoffMode.LINEAR:
            delay = self.base_delay_seconds * max(1, retry_number) * factor
        else:
            delay = self.base_delay_seconds * factor
        if self.max_delay_seconds is not None:
            delay = min(delay, self.max_delay_seconds)
        if self.jitter_seconds:
            delay += self._random.uniform(-self.jitter_seconds, self.jitter_seconds)
        return max(self.min_delay_seconds, delay)

    def wait(
        self,
        *,
        retry_number: int,
        factor: float = 1.0,
        cooldown_seconds: float | None = None,
        limit_seconds: float | None = None,
    ) -> float:
        """Sleep before the next attempt and return the slept duration.

        `cooldown_seconds` replaces the computed backoff with a fixed wait.
        `limit_seconds` caps the sleep, typically at the remaining deadline budget.
        """

        if cooldown_seconds is not None:
            delay = max(0.0, cooldown_seconds)
        else:
            delay = self.compute_delay(retry_number=retry_number, factor=factor)
        if limit_seconds is not None:
            delay = max(0.0, min(delay, limit_seconds))
        if delay > 0:
            logger.debug("Retry %d: sleeping %.2fs", retry_number, delay)
            self._sleep(delay)
        return delay
