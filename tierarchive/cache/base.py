"""
Cache backend protocol.

The cache sits in front of the cold store on the read path. It is a pure
performance optimization: every entry can be rebuilt from the cold store.

Invariants:
    - The cache is never authoritative
    - Backends may raise CacheUnavailableError; the gateway only ever talks
      to a FailSafeCache, which turns that into a miss
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Optional, Protocol, runtime_checkable


@runtime_checkable
class CacheBackend(Protocol):
    """Key-value cache with per-entry TTL. No durability requirement."""

    @abstractmethod
    async def get(self, key: str) -> Optional[bytes]:
        """Return the cached value, or None on miss or expiry."""
        ...

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl_seconds: float) -> None:
        """Store a value for ttl_seconds."""
        ...

    @abstractmethod
    async def touch(self, key: str, ttl_seconds: float) -> bool:
        """Extend an entry's TTL. Returns False if the entry is absent."""
        ...

    @abstractmethod
    async def expire(self, key: str) -> None:
        """Drop an entry."""
        ...
