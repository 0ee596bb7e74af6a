"""
Failure-isolating cache wrapper.

Any error from the wrapped backend is logged and collapsed into a miss
(for reads) or a no-op (for writes), so a cache outage can never surface
as a caller-visible error or block the cold read path.
"""

from __future__ import annotations

import logging
from typing import Optional

from .base import CacheBackend

logger = logging.getLogger(__name__)


class FailSafeCache:
    """Wraps a CacheBackend so that it cannot fail.

    Attributes:
        backend: Wrapped cache backend
        error_count: Number of absorbed backend errors
    """

    def __init__(self, backend: CacheBackend) -> None:
        self.backend = backend
        self.error_count = 0

    async def get(self, key: str) -> Optional[bytes]:
        try:
            return await self.backend.get(key)
        except Exception as e:
            self._absorb("get", key, e)
            return None

    async def set(self, key: str, value: bytes, ttl_seconds: float) -> None:
        try:
            await self.backend.set(key, value, ttl_seconds)
        except Exception as e:
            self._absorb("set", key, e)

    async def touch(self, key: str, ttl_seconds: float) -> bool:
        try:
            return await self.backend.touch(key, ttl_seconds)
        except Exception as e:
            self._absorb("touch", key, e)
            return False

    async def expire(self, key: str) -> None:
        try:
            await self.backend.expire(key)
        except Exception as e:
            self._absorb("expire", key, e)

    def _absorb(self, operation: str, key: str, error: Exception) -> None:
        self.error_count += 1
        logger.warning(
            f"Cache {operation} failed, bypassing cache: {error}",
            extra={"key": key, "operation": operation},
        )
