"""
Retry policy for transient delivery failures.

delay(attempt) = min(max_seconds, base_seconds * 2 ** (attempt - 1)), then
scaled by a random factor in [1 - jitter, 1 + jitter].
"""
from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from config.settings import DispatchConfig


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    base_seconds: float = 2.0
    max_seconds: float = 60.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, config: DispatchConfig) -> RetryPolicy:
        return cls(
            max_attempts=config.max_attempts,
            base_seconds=config.backoff_base_seconds,
            max_seconds=config.backoff_max_seconds,
            jitter=config.backoff_jitter,
        )

    def should_retry(self, attempts: int) -> bool:
        """`attempts` counts sends already made, including the one that just failed."""
        return attempts < self.max_attempts

    def backoff(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        delay = min(self.max_seconds, self.base_seconds * (2 ** max(0, attempt - 1)))
        if self.jitter:
            delay *= 1 + self.jitter * (2 * rng() - 1)
        return max(0.0, delay)

    def next_attempt_at(self, attempt: int, now: datetime, retry_after: Optional[float] = None) -> datetime:
        delay = self.backoff(attempt)
        if retry_after:
            delay = max(delay, retry_after)
        return now + timedelta(seconds=delay)
