"""
Read-through cache for cold store reads.

Invariants:
    - Purely derivative; reconstructible from the cold store at any time
    - Cache failures are bypassed, never surfaced to callers
"""

from .base import CacheBackend
from .memory import InMemoryCache
from .safe import FailSafeCache

__all__ = ["CacheBackend", "InMemoryCache", "FailSafeCache"]
