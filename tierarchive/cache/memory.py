"""
In-process TTL cache with LRU eviction.

Invariants:
    - Expired entries are never returned
    - Size never exceeds max_entries; the least recently used entry goes first
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Callable, Optional

from ..errors import CacheUnavailableError
from ..models import CacheEntry, now_ms

logger = logging.getLogger(__name__)


class InMemoryCache:
    """In-memory implementation of CacheBackend.

    Attributes:
        max_entries: Capacity before LRU eviction
        available: Testing switch; when False every call raises
            CacheUnavailableError

    Example:
        >>> cache = InMemoryCache(max_entries=1000)
        >>> await cache.set("archive/p/1.json", b"...", ttl_seconds=3600)
        >>> await cache.get("archive/p/1.json")
        b'...'
    """

    def __init__(
        self,
        max_entries: int = 10000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Initialize the cache.

        Args:
            max_entries: Maximum entries kept
            clock: Millisecond clock, injectable for tests
        """
        self.max_entries = max_entries
        self.available = True
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def _check_available(self) -> None:
        if not self.available:
            raise CacheUnavailableError()

    async def get(self, key: str) -> Optional[bytes]:
        self._check_available()
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if entry.expires_at_ms <= self._clock():
            del self._entries[key]
            self.misses += 1
            return None
        self._entries.move_to_end(key)
        self.hits += 1
        return entry.value

    async def set(self, key: str, value: bytes, ttl_seconds: float) -> None:
        self._check_available()
        self._entries[key] = CacheEntry(
            value=value,
            expires_at_ms=self._clock() + int(ttl_seconds * 1000),
        )
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted cache entry", extra={"key": evicted})

    async def touch(self, key: str, ttl_seconds: float) -> bool:
        self._check_available()
        entry = self._entries.get(key)
        if entry is None or entry.expires_at_ms <= self._clock():
            return False
        entry.expires_at_ms = self._clock() + int(ttl_seconds * 1000)
        self._entries.move_to_end(key)
        return True

    async def expire(self, key: str) -> None:
        self._check_available()
        self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)
