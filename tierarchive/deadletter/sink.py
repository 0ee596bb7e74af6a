"""
Dead-letter sink for records whose archival permanently failed.

A dead-lettered record is still in the hot store and still served by the
gateway; the entry exists so an operator can see it, fix the cause, and
re-inject it.

Entry lifecycle:
    open -> requeued -> resolved ("reinjected")
    open -> requeued -> open (re-injection failed again)
    open -> resolved (operator note)

Invariants:
    - Entries are never deleted and never expire
    - At most one open or requeued entry per record key; a repeated failure
      updates it and reopens a requeued entry
    - requeue() only changes status; the engine reads requeued entries with
      pending_requeued() and resolves them with mark_reinjected() only once
      their records left the hot store, so an interrupted re-injection is
      picked up again

How to change safely:
    - Keep the table append-only; add columns with defaults
    - The operator CLI writes to the same database as the engine
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from abc import abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence, runtime_checkable

from ..errors import NotFoundError, TransientBackendError
from ..models import (
    ArchivalCandidate,
    DeadLetterEntry,
    DeadLetterStatus,
    RecordKey,
    now_ms,
)

logger = logging.getLogger(__name__)

REINJECTED = "reinjected"

_UNRESOLVED = (DeadLetterStatus.OPEN, DeadLetterStatus.REQUEUED)


class DeadLetterEntryNotFoundError(NotFoundError):
    """Dead-letter entry does not exist."""

    def __init__(self, entry_id: int) -> None:
        super().__init__(f"Dead-letter entry not found: {entry_id}", "dead_letter", str(entry_id))
        self.entry_id = entry_id


@runtime_checkable
class DeadLetterSink(Protocol):
    """Protocol for dead-letter storage."""

    @abstractmethod
    async def append(
        self, candidate: ArchivalCandidate, reason: str, attempt_count: int
    ) -> DeadLetterEntry:
        """Record a permanent failure, updating an existing open entry for the key."""
        ...

    @abstractmethod
    async def list(
        self, status: Optional[DeadLetterStatus] = None, limit: int = 100
    ) -> list[DeadLetterEntry]:
        """List entries, oldest first."""
        ...

    @abstractmethod
    async def requeue(
        self, keys: Optional[Sequence[RecordKey]] = None
    ) -> list[ArchivalCandidate]:
        """Mark open entries (all, or those for keys) for re-injection."""
        ...

    @abstractmethod
    async def pending_requeued(self) -> list[ArchivalCandidate]:
        """Candidates of requeued entries, without changing their status."""
        ...

    @abstractmethod
    async def mark_reinjected(self, keys: Sequence[RecordKey]) -> int:
        """Resolve the requeued entries for keys as "reinjected".

        Returns:
            Number of entries resolved
        """
        ...

    @abstractmethod
    async def resolve(self, entry_id: int, note: str) -> DeadLetterEntry:
        """Close an entry with an operator note.

        Raises:
            DeadLetterEntryNotFoundError: If the entry does not exist
        """
        ...


class InMemoryDeadLetterSink:
    """In-memory DeadLetterSink for tests and local runs."""

    def __init__(self, clock: Callable[[], int] = now_ms) -> None:
        self._entries: dict[int, DeadLetterEntry] = {}
        self._next_id = 1
        self._clock = clock
        self._lock = asyncio.Lock()

    async def append(
        self, candidate: ArchivalCandidate, reason: str, attempt_count: int
    ) -> DeadLetterEntry:
        async with self._lock:
            for entry in self._entries.values():
                if entry.key == candidate.key and entry.status in _UNRESOLVED:
                    entry.status = DeadLetterStatus.OPEN
                    entry.reason = reason
                    entry.attempt_count = attempt_count
                    entry.timestamp_ms = candidate.timestamp_ms
                    return entry
            entry = DeadLetterEntry(
                entry_id=self._next_id,
                key=candidate.key,
                timestamp_ms=candidate.timestamp_ms,
                reason=reason,
                attempt_count=attempt_count,
                first_seen_ms=self._clock(),
            )
            self._entries[entry.entry_id] = entry
            self._next_id += 1
            return entry

    async def list(
        self, status: Optional[DeadLetterStatus] = None, limit: int = 100
    ) -> list[DeadLetterEntry]:
        entries = [
            e for e in self._entries.values() if status is None or e.status == status
        ]
        return entries[:limit]

    async def requeue(
        self, keys: Optional[Sequence[RecordKey]] = None
    ) -> list[ArchivalCandidate]:
        wanted = set(keys) if keys is not None else None
        requeued = []
        async with self._lock:
            for entry in self._entries.values():
                if entry.status != DeadLetterStatus.OPEN:
                    continue
                if wanted is not None and entry.key not in wanted:
                    continue
                entry.status = DeadLetterStatus.REQUEUED
                requeued.append(entry.candidate())
        return requeued

    async def pending_requeued(self) -> list[ArchivalCandidate]:
        return [
            e.candidate() for e in self._entries.values() if e.status == DeadLetterStatus.REQUEUED
        ]

    async def mark_reinjected(self, keys: Sequence[RecordKey]) -> int:
        done = set(keys)
        resolved = 0
        async with self._lock:
            for entry in self._entries.values():
                if entry.status == DeadLetterStatus.REQUEUED and entry.key in done:
                    entry.status = DeadLetterStatus.RESOLVED
                    entry.resolved_at_ms = self._clock()
                    entry.resolution = REINJECTED
                    resolved += 1
        return resolved

    async def resolve(self, entry_id: int, note: str) -> DeadLetterEntry:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                raise DeadLetterEntryNotFoundError(entry_id)
            entry.status = DeadLetterStatus.RESOLVED
            entry.resolved_at_ms = self._clock()
            entry.resolution = note
            return entry

    def __len__(self) -> int:
        return len(self._entries)


class SqliteDeadLetterSink:
    """Durable DeadLetterSink on SQLite.

    Table schema:
        dead_letters:
            - entry_id INTEGER PRIMARY KEY AUTOINCREMENT
            - partition_key, record_id TEXT
            - timestamp_ms INTEGER (record write time)
            - reason TEXT
            - attempt_count INTEGER
            - first_seen_ms INTEGER
            - status TEXT (open, requeued, resolved)
            - resolved_at_ms INTEGER NULL
            - resolution TEXT NULL
            - UNIQUE INDEX on (partition_key, record_id) WHERE status = 'open'

    Example:
        >>> sink = SqliteDeadLetterSink("/var/lib/tierarchive/engine_state.db")
        >>> await sink.connect()
        >>> await sink.append(candidate, "cold write rejected", 3)
    """

    _COLUMNS = (
        "entry_id, partition_key, record_id, timestamp_ms, reason, attempt_count, "
        "first_seen_ms, status, resolved_at_ms, resolution"
    )

    def __init__(
        self,
        db_path: str,
        busy_timeout_ms: int = 5000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        self._clock = clock
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
            )
        except sqlite3.OperationalError as e:
            raise TransientBackendError(f"Cannot open dead-letter store: {e}", backend="state") from e
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            yield conn
        except sqlite3.OperationalError as e:
            raise TransientBackendError(
                f"Dead-letter operation failed: {e}", backend="state"
            ) from e
        finally:
            conn.close()

    async def connect(self) -> None:
        """Create the dead-letter table if it doesn't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._lock:
            with self._get_connection() as conn:
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS dead_letters (
                        entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
                        partition_key TEXT NOT NULL,
                        record_id TEXT NOT NULL,
                        timestamp_ms INTEGER NOT NULL,
                        reason TEXT NOT NULL,
                        attempt_count INTEGER NOT NULL,
                        first_seen_ms INTEGER NOT NULL,
                        status TEXT NOT NULL DEFAULT 'open',
                        resolved_at_ms INTEGER,
                        resolution TEXT
                    );

                    CREATE UNIQUE INDEX IF NOT EXISTS idx_dead_letters_open
                        ON dead_letters(partition_key, record_id) WHERE status = 'open';

                    CREATE INDEX IF NOT EXISTS idx_dead_letters_status
                        ON dead_letters(status, entry_id);
                """)
        logger.info(f"Dead-letter sink ready: {self.db_path}")

    async def close(self) -> None:
        """Close (connections are per-operation)."""

    async def append(
        self, candidate: ArchivalCandidate, reason: str, attempt_count: int
    ) -> DeadLetterEntry:
        key = candidate.key
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute(
                        "SELECT entry_id FROM dead_letters WHERE partition_key = ? "
                        "AND record_id = ? AND status IN ('open', 'requeued') "
                        "ORDER BY entry_id LIMIT 1",
                        (key.partition_key, key.record_id),
                    ).fetchone()
                    if row:
                        entry_id = row[0]
                        conn.execute(
                            "UPDATE dead_letters SET status = 'open', reason = ?, "
                            "attempt_count = ?, timestamp_ms = ? WHERE entry_id = ?",
                            (reason, attempt_count, candidate.timestamp_ms, entry_id),
                        )
                    else:
                        cursor = conn.execute(
                            """
                            INSERT INTO dead_letters
                                (partition_key, record_id, timestamp_ms, reason,
                                 attempt_count, first_seen_ms, status)
                            VALUES (?, ?, ?, ?, ?, ?, 'open')
                            """,
                            (
                                key.partition_key,
                                key.record_id,
                                candidate.timestamp_ms,
                                reason,
                                attempt_count,
                                self._clock(),
                            ),
                        )
                        entry_id = cursor.lastrowid
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
                return self._fetch(conn, entry_id)

    async def list(
        self, status: Optional[DeadLetterStatus] = None, limit: int = 100
    ) -> list[DeadLetterEntry]:
        with self._get_connection() as conn:
            if status is None:
                rows = conn.execute(
                    f"SELECT {self._COLUMNS} FROM dead_letters ORDER BY entry_id LIMIT ?",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {self._COLUMNS} FROM dead_letters WHERE status = ? "
                    "ORDER BY entry_id LIMIT ?",
                    (status.value, limit),
                ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    async def requeue(
        self, keys: Optional[Sequence[RecordKey]] = None
    ) -> list[ArchivalCandidate]:
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    rows = conn.execute(
                        f"SELECT {self._COLUMNS} FROM dead_letters WHERE status = 'open' "
                        "ORDER BY entry_id"
                    ).fetchall()
                    entries = [self._row_to_entry(row) for row in rows]
                    if keys is not None:
                        wanted = set(keys)
                        entries = [e for e in entries if e.key in wanted]
                    conn.executemany(
                        "UPDATE dead_letters SET status = 'requeued' WHERE entry_id = ?",
                        [(e.entry_id,) for e in entries],
                    )
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        logger.info("Dead letters requeued", extra={"count": len(entries)})
        return [e.candidate() for e in entries]

    async def pending_requeued(self) -> list[ArchivalCandidate]:
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT {self._COLUMNS} FROM dead_letters WHERE status = 'requeued' "
                "ORDER BY entry_id"
            ).fetchall()
        return [self._row_to_entry(row).candidate() for row in rows]

    async def mark_reinjected(self, keys: Sequence[RecordKey]) -> int:
        if not keys:
            return 0
        resolved_at = self._clock()
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    resolved = 0
                    for key in set(keys):
                        cursor = conn.execute(
                            "UPDATE dead_letters SET status = 'resolved', resolved_at_ms = ?, "
                            "resolution = ? WHERE partition_key = ? AND record_id = ? "
                            "AND status = 'requeued'",
                            (resolved_at, REINJECTED, key.partition_key, key.record_id),
                        )
                        resolved += cursor.rowcount
                    conn.execute("COMMIT")
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
        return resolved

    async def resolve(self, entry_id: int, note: str) -> DeadLetterEntry:
        async with self._lock:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    "UPDATE dead_letters SET status = 'resolved', resolved_at_ms = ?, "
                    "resolution = ? WHERE entry_id = ?",
                    (self._clock(), note, entry_id),
                )
                if cursor.rowcount == 0:
                    raise DeadLetterEntryNotFoundError(entry_id)
                return self._fetch(conn, entry_id)

    def _fetch(self, conn: sqlite3.Connection, entry_id: int) -> DeadLetterEntry:
        row = conn.execute(
            f"SELECT {self._COLUMNS} FROM dead_letters WHERE entry_id = ?", (entry_id,)
        ).fetchone()
        if row is None:
            raise DeadLetterEntryNotFoundError(entry_id)
        return self._row_to_entry(row)

    @staticmethod
    def _row_to_entry(row: tuple) -> DeadLetterEntry:
        return DeadLetterEntry(
            entry_id=row[0],
            key=RecordKey(row[1], row[2]),
            timestamp_ms=row[3],
            reason=row[4],
            attempt_count=row[5],
            first_seen_ms=row[6],
            status=DeadLetterStatus(row[7]),
            resolved_at_ms=row[8],
            resolution=row[9],
        )
