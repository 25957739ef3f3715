"""Retry delay policy for failed jobs.

delay(attempt) = min(cap, base * 2^(attempt - 1)), spread by a uniform
random jitter of +/- jitter_ratio * delay and clamped to [0, cap].
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import timedelta


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with jitter.

    Attributes:
        base_seconds: Delay before the first retry.
        max_seconds: Cap applied to every delay, jitter included.
        jitter_ratio: Fraction of the delay used as random spread (0 disables).
        rng: Random source; tests pass a seeded ``random.Random``.
    """

    base_seconds: float = 10.0
    max_seconds: float = 3600.0
    jitter_ratio: float = 0.1
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    def __post_init__(self) -> None:
        if self.base_seconds <= 0:
            msg = "base_seconds must be positive"
            raise ValueError(msg)
        if self.max_seconds < self.base_seconds:
            msg = "max_seconds must be >= base_seconds"
            raise ValueError(msg)
        if not 0 <= self.jitter_ratio <= 1:
            msg = "jitter_ratio must be between 0 and 1"
            raise ValueError(msg)

    def base_delay(self, attempt: int) -> float:
        """Delay in seconds for ``attempt`` (1-based) before jitter."""
        if attempt < 1:
            msg = f"attempt must be >= 1, got {attempt}"
            raise ValueError(msg)
        # Cap the exponent so huge attempt counts cannot overflow
        exponent = min(attempt - 1, 62)
        return min(self.max_seconds, self.base_seconds * (2**exponent))

    def delay_seconds(self, attempt: int) -> float:
        delay = self.base_delay(attempt)
        if self.jitter_ratio:
            spread = delay * self.jitter_ratio
            delay += self.rng.uniform(-spread, spread)
        return max(0.0, min(self.max_seconds, delay))

    def delay(self, attempt: int) -> timedelta:
        return timedelta(seconds=self.delay_seconds(attempt))
