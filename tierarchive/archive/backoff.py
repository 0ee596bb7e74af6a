"""
Jittered exponential backoff.
"""

from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable


@dataclass
class BackoffPolicy:
    """Delay before retry number `attempt` (1-based).

    delay = min(cap, base * factor ** (attempt - 1)), plus up to
    jitter_ratio of that delay added at random.

    Example:
        >>> policy = BackoffPolicy(base=1.0, factor=2.0, cap=30.0, jitter_ratio=0.0)
        >>> [policy.delay(n) for n in (1, 2, 3)]
        [1.0, 2.0, 4.0]
    """

    base: float = 1.0
    factor: float = 2.0
    cap: float = 30.0
    jitter_ratio: float = 0.1
    rng: Callable[[], float] = field(default=random.random, repr=False)

    def delay(self, attempt: int) -> float:
        if attempt < 1:
            attempt = 1
        raw = min(self.cap, self.base * (self.factor ** (attempt - 1)))
        return raw + raw * self.jitter_ratio * self.rng()

    @classmethod
    def from_config(cls, retry_config) -> BackoffPolicy:
        return cls(
            base=retry_config.backoff_base_seconds,
            factor=retry_config.backoff_factor,
            cap=retry_config.backoff_cap_seconds,
            jitter_ratio=retry_config.jitter_ratio,
        )
