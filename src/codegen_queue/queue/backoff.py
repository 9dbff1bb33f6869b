"""Retry delay policy for transiently failed jobs."""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import timedelta


@dataclass(slots=True)
class BackoffPolicy:
    """Capped exponential backoff with bounded jitter.

    The deterministic floor for retry ``n`` is ``base * factor**n`` capped at
    ``max_seconds``. Jitter only spreads the delay towards the next floor, so
    the delay for successive attempts never decreases and is always > 0.
    """

    base_seconds: float = 5.0
    max_seconds: float = 900.0
    factor: float = 2.0
    jitter: float = 0.5
    rng: random.Random = field(default_factory=random.Random)

    def __post_init__(self) -> None:
        if self.base_seconds <= 0:
            raise ValueError(f"Backoff base must be > 0, got {self.base_seconds}.")
        if self.max_seconds < self.base_seconds:
            raise ValueError("Backoff cap must be >= base.")
        if self.factor < 1:
            raise ValueError(f"Backoff factor must be >= 1, got {self.factor}.")
        if not 0 <= self.jitter <= 1:
            raise ValueError(f"Backoff jitter must be within [0, 1], got {self.jitter}.")

    def floor_seconds(self, attempts: int) -> float:
        exponent = max(attempts, 0)
        try:
            raw = self.base_seconds * (self.factor**exponent)
        except OverflowError:
            return self.max_seconds
        return min(self.max_seconds, raw)

    def delay_seconds(self, attempts: int) -> float:
        """Delay before the retry that follows ``attempts`` consumed attempts."""

        floor = self.floor_seconds(attempts)
        ceiling = self.floor_seconds(attempts + 1)
        spread = (ceiling - floor) * self.jitter
        if spread <= 0:
            return floor
        return floor + self.rng.uniform(0, spread)

    def delay(self, attempts: int) -> timedelta:
        return timedelta(seconds=self.delay_seconds(attempts))
