"""
Base protocols for hot and cold store adapters.

This module defines the HotStore and ColdStore protocols that all backends
must implement, along with factory functions that build a backend from
configuration.

Invariants:
    - put() is verifiable: once it returns, get()/exists() on the same
      backend observe the write
    - Adapters never retry; retry policy lives in the orchestrator and gateway
    - Backend failures are translated into the errors.py taxonomy
    - Side effects are confined to the named backend

How to change safely:
    - Protocol changes require updating all implementations
    - Add new methods as optional with default implementations
    - Keep scan order (timestamp_ms, partition_key, record_id) stable; the
      scanner checkpoint depends on it
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import TYPE_CHECKING, List, Optional, Protocol, runtime_checkable

from ..models import ArchivalCandidate, Record, RecordKey, ScanCursor

if TYPE_CHECKING:
    from ..config import EngineConfig

logger = logging.getLogger(__name__)


@runtime_checkable
class HotStore(Protocol):
    """Protocol for the low-latency primary store.

    Keyed by (partition_key, record_id). Supports point operations and an
    ordered range query by timestamp for the eligibility scanner.

    Example:
        >>> hot = SqliteHotStore("/var/lib/tierarchive/hot.db")
        >>> await hot.connect()
        >>> await hot.put(Record(RecordKey("p1", "r1"), ts, b"payload"))
        >>> record = await hot.get(RecordKey("p1", "r1"))
    """

    @abstractmethod
    async def connect(self) -> None:
        """Prepare the backend for use (create schema, open clients)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def get(self, key: RecordKey) -> Record:
        """Get a record.

        Raises:
            RecordNotFoundError: If the record does not exist
            TransientBackendError: If the backend could not answer
        """
        ...

    @abstractmethod
    async def put(self, record: Record) -> None:
        """Write a record (insert or overwrite).

        Raises:
            PayloadTooLargeError: If the payload exceeds the size limit
            TransientBackendError: If the write failed
        """
        ...

    @abstractmethod
    async def delete(self, key: RecordKey) -> None:
        """Delete a record.

        Raises:
            RecordNotFoundError: If the record does not exist
            TransientBackendError: If the delete failed
        """
        ...

    @abstractmethod
    async def exists(self, key: RecordKey) -> bool:
        """Whether the record exists."""
        ...

    @abstractmethod
    async def scan_older_than(
        self,
        cutoff_ms: int,
        after: Optional[ScanCursor] = None,
        limit: int = 1000,
    ) -> List[ArchivalCandidate]:
        """List records written before cutoff_ms.

        Args:
            cutoff_ms: Exclusive upper bound on timestamp_ms
            after: Only return candidates strictly after this cursor
            limit: Maximum candidates to return

        Returns:
            Candidates ordered by (timestamp_ms, partition_key, record_id)
        """
        ...


@runtime_checkable
class ColdStore(Protocol):
    """Protocol for the low-cost object store.

    Keyed by object name. Objects are written once and not modified
    afterwards; rewriting an object with identical bytes is allowed.

    Example:
        >>> cold = S3ColdStore(s3_config)
        >>> await cold.connect()
        >>> checksum = await cold.put("archive/p1/r1.json", document)
        >>> assert await cold.exists("archive/p1/r1.json")
    """

    @abstractmethod
    async def connect(self) -> None:
        """Prepare the backend for use."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources."""
        ...

    @abstractmethod
    async def get(self, name: str) -> bytes:
        """Read an object.

        Raises:
            ObjectNotFoundError: If the object does not exist
            TransientBackendError: If the backend could not answer
        """
        ...

    @abstractmethod
    async def put(self, name: str, data: bytes) -> str:
        """Write an object.

        Returns:
            Checksum confirmation ("sha256:<hex>") of the bytes written

        Raises:
            TransientBackendError: If the write failed
        """
        ...

    @abstractmethod
    async def exists(self, name: str) -> bool:
        """Whether the object exists."""
        ...

    @abstractmethod
    async def delete(self, name: str) -> None:
        """Delete an object.

        Raises:
            ObjectNotFoundError: If the object does not exist
        """
        ...


def create_hot_store(config: "EngineConfig") -> HotStore:
    """Factory function to create the hot store from configuration.

    Args:
        config: Engine configuration

    Returns:
        Appropriate HotStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import HotBackend
    from .memory import InMemoryHotStore
    from .sqlite_hot import SqliteHotStore

    if config.storage.hot_backend == HotBackend.SQLITE:
        return SqliteHotStore(
            config.storage.hot_db_path,
            wal_mode=config.storage.wal_mode,
            busy_timeout_ms=config.storage.busy_timeout_ms,
        )
    elif config.storage.hot_backend == HotBackend.MEMORY:
        return InMemoryHotStore()
    else:
        raise ValueError(f"Unsupported hot backend: {config.storage.hot_backend}")


def create_cold_store(config: "EngineConfig") -> ColdStore:
    """Factory function to create the cold store from configuration.

    Args:
        config: Engine configuration

    Returns:
        Appropriate ColdStore implementation

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import ColdBackend
    from .memory import InMemoryColdStore
    from .s3_cold import S3ColdStore

    if config.storage.cold_backend == ColdBackend.S3:
        return S3ColdStore(config.s3)
    elif config.storage.cold_backend == ColdBackend.MEMORY:
        return InMemoryColdStore()
    else:
        raise ValueError(f"Unsupported cold backend: {config.storage.cold_backend}")
