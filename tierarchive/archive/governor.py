"""
Throughput governor and circuit breaker.

The governor paces record attempts against the shared backends with a
token bucket whose rate adapts to throttle signals: halved on every
throttle (never below min_rps), raised by recovery_step on every success
(never above max_rps).

The breaker watches a sliding window of recent attempt outcomes. When the
error rate crosses the threshold it opens, and dispatch of new chunks
waits for the cooldown before resuming.

Invariants:
    - rate stays within [min_rps, max_rps]
    - max_rps <= 0 disables the governor entirely
    - The breaker never opens before min_calls outcomes are in the window
    - Opening the breaker resets its window

How to change safely:
    - These classes hold no I/O; they only sleep. Keep them that way so
      they stay deterministic under an injected clock.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Deque

logger = logging.getLogger(__name__)


class ThroughputGovernor:
    """Adaptive token bucket (additive increase, multiplicative decrease).

    Example:
        >>> governor = ThroughputGovernor(max_rps=200, min_rps=5)
        >>> await governor.acquire()
        >>> governor.on_throttle()
        >>> governor.rate
        100.0
    """

    def __init__(
        self,
        max_rps: float = 200.0,
        min_rps: float = 5.0,
        recovery_step: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_rps = max_rps
        self.min_rps = min(min_rps, max_rps) if max_rps > 0 else min_rps
        self.recovery_step = recovery_step
        self._clock = clock
        self._rate = float(max_rps)
        self._tokens = 1.0
        self._last_refill = clock()
        self._lock = asyncio.Lock()
        self.throttle_count = 0

    @property
    def enabled(self) -> bool:
        return self.max_rps > 0

    @property
    def rate(self) -> float:
        """Current allowed requests per second."""
        return self._rate

    async def acquire(self) -> None:
        """Wait for a token."""
        if not self.enabled:
            return
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                await asyncio.sleep((1.0 - self._tokens) / self._rate)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        self._last_refill = now
        # Burst capacity is one second of the current rate.
        self._tokens = min(max(self._rate, 1.0), self._tokens + elapsed * self._rate)

    def on_success(self) -> None:
        if not self.enabled:
            return
        self._rate = min(self.max_rps, self._rate + self.recovery_step)

    def on_throttle(self) -> None:
        self.throttle_count += 1
        if not self.enabled:
            return
        previous = self._rate
        self._rate = max(self.min_rps, self._rate / 2)
        self._tokens = min(self._tokens, 1.0)
        if self._rate != previous:
            logger.warning(
                "Backend throttling, reducing archival rate",
                extra={"previous_rps": previous, "rps": self._rate},
            )

    @classmethod
    def from_config(cls, governor_config) -> ThroughputGovernor:
        return cls(
            max_rps=governor_config.max_requests_per_second,
            min_rps=governor_config.min_requests_per_second,
            recovery_step=governor_config.recovery_step,
        )

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "rate": self._rate,
            "throttle_count": self.throttle_count,
        }


class CircuitBreaker:
    """Sliding-window error-rate breaker.

    Example:
        >>> breaker = CircuitBreaker(error_rate_threshold=0.5, window_size=50)
        >>> breaker.record(success=False)
        >>> await breaker.wait_until_closed()
    """

    def __init__(
        self,
        error_rate_threshold: float = 0.5,
        window_size: int = 50,
        min_calls: int = 20,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.error_rate_threshold = error_rate_threshold
        self.window_size = window_size
        self.min_calls = min(min_calls, window_size)
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._window: Deque[bool] = deque(maxlen=window_size)
        self._opened_at: float | None = None
        self.open_count = 0

    @property
    def is_open(self) -> bool:
        if self._opened_at is None:
            return False
        if self._clock() - self._opened_at >= self.cooldown_seconds:
            self._opened_at = None
            logger.info("Circuit breaker closed, resuming dispatch")
            return False
        return True

    @property
    def error_rate(self) -> float:
        if not self._window:
            return 0.0
        return self._window.count(False) / len(self._window)

    def record(self, success: bool) -> None:
        """Add one attempt outcome to the window."""
        self._window.append(success)
        if self._opened_at is not None:
            return
        if len(self._window) >= self.min_calls and self.error_rate >= self.error_rate_threshold:
            self._opened_at = self._clock()
            self.open_count += 1
            logger.warning(
                "Circuit breaker opened, pausing dispatch",
                extra={
                    "error_rate": round(self.error_rate, 3),
                    "window": len(self._window),
                    "cooldown_seconds": self.cooldown_seconds,
                },
            )
            self._window.clear()

    async def wait_until_closed(self) -> None:
        """Block while the breaker is open."""
        while self.is_open:
            remaining = self.cooldown_seconds - (self._clock() - self._opened_at)
            await asyncio.sleep(max(remaining, 0.01))

    @classmethod
    def from_config(cls, breaker_config) -> CircuitBreaker:
        return cls(
            error_rate_threshold=breaker_config.error_rate_threshold,
            window_size=breaker_config.window_size,
            min_calls=breaker_config.min_calls,
            cooldown_seconds=breaker_config.cooldown_seconds,
        )
