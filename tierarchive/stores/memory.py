"""
In-memory hot and cold store implementations for testing.

This module provides simple in-memory backends for:
- Unit tests
- Integration tests
- Local development without external dependencies

Both stores carry testing helpers to script failures, simulate throttling
and silent corruption, and record every mutating operation in an optional
shared journal so tests can check cross-store ordering.

Invariants:
    - All data is lost on process exit
    - Reads observe completed writes immediately
    - Same error semantics as the production backends

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interfaces compatible with the HotStore/ColdStore protocols
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional, Set, Tuple

from ..errors import (
    ObjectNotFoundError,
    RecordNotFoundError,
    ThrottledError,
    TransientBackendError,
)
from ..models import (
    ArchivalCandidate,
    Record,
    RecordKey,
    ScanCursor,
    check_payload_size,
    compute_checksum,
    scan_sort_key,
)

logger = logging.getLogger(__name__)

ErrorFactory = Callable[[str, Any], Exception]


class _FailureInjection:
    """Scripted failures shared by the in-memory stores.

    Failures are keyed by (operation, target). A target of None matches
    any key or object name.
    """

    backend_name = "memory"

    def __init__(self) -> None:
        self._scripted: Dict[Tuple[str, Any], Deque[Exception]] = defaultdict(deque)
        self._always: Dict[Tuple[str, Any], Exception] = {}
        self._rate_limits: Dict[str, Tuple[int, float]] = {}
        self._rate_windows: Dict[str, Deque[float]] = defaultdict(deque)
        self.latency_seconds = 0.0

    def fail_next(
        self,
        op: str,
        times: int = 1,
        target: Any = None,
        error: Optional[Exception] = None,
    ) -> None:
        """Make the next `times` calls of `op` on `target` fail (testing helper)."""
        for _ in range(times):
            self._scripted[(op, target)].append(
                error or TransientBackendError(f"Injected {op} failure", backend=self.backend_name)
            )

    def fail_always(self, op: str, target: Any = None, error: Optional[Exception] = None) -> None:
        """Make every call of `op` on `target` fail (testing helper)."""
        self._always[(op, target)] = error or TransientBackendError(
            f"Injected permanent {op} failure", backend=self.backend_name
        )

    def heal(self) -> None:
        """Remove all scripted failures and rate limits (testing helper)."""
        self._scripted.clear()
        self._always.clear()
        self._rate_limits.clear()
        self._rate_windows.clear()

    def rate_limit(self, op: str, max_calls: int, window_seconds: float = 1.0) -> None:
        """Throttle `op` beyond `max_calls` per sliding window (testing helper)."""
        self._rate_limits[op] = (max_calls, window_seconds)

    async def _before(self, op: str, target: Any) -> None:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)

        for candidate in ((op, target), (op, None)):
            if candidate in self._always:
                raise self._always[candidate]
            queue = self._scripted.get(candidate)
            if queue:
                raise queue.popleft()

        limit = self._rate_limits.get(op)
        if limit:
            max_calls, window = limit
            now = time.monotonic()
            calls = self._rate_windows[op]
            while calls and now - calls[0] > window:
                calls.popleft()
            if len(calls) >= max_calls:
                raise ThrottledError(f"{op} rate exceeded", backend=self.backend_name)
            calls.append(now)


class InMemoryHotStore(_FailureInjection):
    """In-memory implementation of HotStore for testing.

    Attributes:
        journal: Optional shared list receiving ("hot.<op>", key) tuples

    Example:
        >>> hot = InMemoryHotStore()
        >>> await hot.put(Record(RecordKey("p", "1"), 0, b"x"))
        >>> await hot.exists(RecordKey("p", "1"))
        True
    """

    backend_name = "hot"

    def __init__(self, journal: Optional[List[Tuple[str, Any]]] = None) -> None:
        super().__init__()
        self._records: Dict[RecordKey, Record] = {}
        self._lock = asyncio.Lock()
        self._connected = False
        self.journal = journal

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryHotStore connected")

    async def close(self) -> None:
        """Close (data is kept so tests can inspect it)."""
        self._connected = False

    async def get(self, key: RecordKey) -> Record:
        await self._before("get", key)
        record = self._records.get(key)
        if record is None:
            raise RecordNotFoundError(key)
        return record

    async def put(self, record: Record) -> None:
        check_payload_size(record)
        await self._before("put", record.key)
        async with self._lock:
            self._records[record.key] = record
        self._journal("hot.put", record.key)

    async def delete(self, key: RecordKey) -> None:
        await self._before("delete", key)
        async with self._lock:
            if key not in self._records:
                raise RecordNotFoundError(key)
            del self._records[key]
        self._journal("hot.delete", key)

    async def exists(self, key: RecordKey) -> bool:
        await self._before("exists", key)
        return key in self._records

    async def scan_older_than(
        self,
        cutoff_ms: int,
        after: Optional[ScanCursor] = None,
        limit: int = 1000,
    ) -> List[ArchivalCandidate]:
        await self._before("scan", None)
        floor = after.sort_key() if after else None
        candidates = [
            record.candidate()
            for record in list(self._records.values())
            if record.timestamp_ms < cutoff_ms
        ]
        if floor is not None:
            candidates = [c for c in candidates if scan_sort_key(c) > floor]
        candidates.sort(key=scan_sort_key)
        return candidates[:limit]

    def _journal(self, op: str, key: RecordKey) -> None:
        if self.journal is not None:
            self.journal.append((op, key))

    # Testing helpers

    def keys(self) -> Set[RecordKey]:
        """All stored keys (testing helper)."""
        return set(self._records)

    def __len__(self) -> int:
        return len(self._records)


class InMemoryColdStore(_FailureInjection):
    """In-memory implementation of ColdStore for testing.

    Attributes:
        journal: Optional shared list receiving ("cold.<op>", name) tuples

    Example:
        >>> cold = InMemoryColdStore()
        >>> await cold.put("archive/p/1.json", b"{}")
        >>> await cold.get("archive/p/1.json")
        b'{}'
    """

    backend_name = "cold"

    def __init__(self, journal: Optional[List[Tuple[str, Any]]] = None) -> None:
        super().__init__()
        self._objects: Dict[str, bytes] = {}
        self._corrupt_puts: Dict[Any, int] = defaultdict(int)
        self._connected = False
        self.put_count = 0
        self.journal = journal

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryColdStore connected")

    async def close(self) -> None:
        self._connected = False

    async def get(self, name: str) -> bytes:
        await self._before("get", name)
        data = self._objects.get(name)
        if data is None:
            raise ObjectNotFoundError(name)
        return data

    async def put(self, name: str, data: bytes) -> str:
        await self._before("put", name)
        checksum = compute_checksum(data)
        stored = data
        for target in (name, None):
            if self._corrupt_puts.get(target):
                self._corrupt_puts[target] -= 1
                stored = data[:-1] + bytes([(data[-1] + 1) % 256]) if data else b"\x00"
                break
        self._objects[name] = stored
        self.put_count += 1
        self._journal("cold.put", name)
        return checksum

    async def exists(self, name: str) -> bool:
        await self._before("exists", name)
        return name in self._objects

    async def delete(self, name: str) -> None:
        await self._before("delete", name)
        if name not in self._objects:
            raise ObjectNotFoundError(name)
        del self._objects[name]
        self._journal("cold.delete", name)

    def _journal(self, op: str, name: str) -> None:
        if self.journal is not None:
            self.journal.append((op, name))

    # Testing helpers

    def corrupt_next_puts(self, times: int = 1, target: Optional[str] = None) -> None:
        """Store altered bytes on the next puts while reporting success (testing helper)."""
        self._corrupt_puts[target] += times

    def names(self) -> Set[str]:
        """All stored object names (testing helper)."""
        return set(self._objects)

    def __len__(self) -> int:
        return len(self._objects)
