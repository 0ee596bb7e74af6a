"""
Store adapters for TierArchive.

This module provides uniform get/put/delete/exists access to:
- The hot store (SQLite, in-memory)
- The cold store (S3, in-memory)

Invariants:
    - A successful put() is immediately observable on the same backend
    - Adapters do not retry; callers own the retry policy
    - Failures are reported with the errors.py taxonomy

How to change safely:
    - New backends must implement the HotStore or ColdStore protocol
    - Register new backends in the factory functions in base.py
"""

from .base import ColdStore, HotStore, create_cold_store, create_hot_store
from .memory import InMemoryColdStore, InMemoryHotStore
from .s3_cold import S3ColdStore
from .sqlite_hot import SqliteHotStore

__all__ = [
    # Protocols
    "HotStore",
    "ColdStore",
    # Factories
    "create_hot_store",
    "create_cold_store",
    # Implementations
    "InMemoryHotStore",
    "InMemoryColdStore",
    "SqliteHotStore",
    "S3ColdStore",
]
