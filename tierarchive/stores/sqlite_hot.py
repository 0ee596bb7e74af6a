"""
SQLite hot store for TierArchive.

Stores recent records in a single SQLite database. Suitable for a
single-node deployment and for integration tests against a real engine.

Invariants:
    - All writes are single statements in autocommit mode
    - Busy/locked errors surface as TransientBackendError, never as not-found
    - scan_older_than() is read-only and ordered by
      (timestamp_ms, partition_key, record_id)

How to change safely:
    - Schema migrations must be backward compatible
    - Keep the scan index in step with the scan query

Table schema:
    records:
        - partition_key TEXT
        - record_id TEXT
        - timestamp_ms INTEGER (Unix ms)
        - payload BLOB
        - PRIMARY KEY (partition_key, record_id)
        - INDEX on (timestamp_ms, partition_key, record_id)
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from ..errors import RecordNotFoundError, TransientBackendError
from ..models import ArchivalCandidate, Record, RecordKey, ScanCursor, check_payload_size

logger = logging.getLogger(__name__)


class SqliteHotStore:
    """SQLite implementation of the HotStore protocol.

    Thread safety:
        Each operation opens its own connection.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> hot = SqliteHotStore("/var/lib/tierarchive/hot.db")
        >>> await hot.connect()
        >>> await hot.put(Record(RecordKey("tenant_1", "doc_1"), ts, b"..."))
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        db_path: str,
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
    ) -> None:
        """Initialize the hot store.

        Args:
            db_path: Path of the SQLite database file
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
        """
        self.db_path = Path(db_path)
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, translating SQLite failures."""
        try:
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout_ms / 1000.0,
                isolation_level=None,
            )
        except sqlite3.OperationalError as e:
            raise TransientBackendError(f"Cannot open hot store: {e}", backend="hot") from e

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            yield conn
        except sqlite3.OperationalError as e:
            raise TransientBackendError(f"Hot store operation failed: {e}", backend="hot") from e
        finally:
            conn.close()

    async def connect(self) -> None:
        """Create the database file and schema if they don't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._lock:
            with self._get_connection() as conn:
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS schema_version (
                        version INTEGER PRIMARY KEY,
                        applied_at INTEGER NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS records (
                        partition_key TEXT NOT NULL,
                        record_id TEXT NOT NULL,
                        timestamp_ms INTEGER NOT NULL,
                        payload BLOB NOT NULL,
                        PRIMARY KEY (partition_key, record_id)
                    );

                    CREATE INDEX IF NOT EXISTS idx_records_age
                        ON records(timestamp_ms, partition_key, record_id);

                    INSERT OR IGNORE INTO schema_version (version, applied_at)
                    VALUES (1, strftime('%s', 'now') * 1000);
                """)
        logger.info(f"Hot store ready: {self.db_path}")

    async def close(self) -> None:
        """Close (connections are per-operation)."""

    async def get(self, key: RecordKey) -> Record:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT timestamp_ms, payload FROM records "
                "WHERE partition_key = ? AND record_id = ?",
                (key.partition_key, key.record_id),
            ).fetchone()
        if row is None:
            raise RecordNotFoundError(key)
        return Record(key=key, timestamp_ms=row[0], payload=bytes(row[1]))

    async def put(self, record: Record) -> None:
        check_payload_size(record)
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO records (partition_key, record_id, timestamp_ms, payload)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (partition_key, record_id)
                DO UPDATE SET timestamp_ms = excluded.timestamp_ms, payload = excluded.payload
                """,
                (
                    record.key.partition_key,
                    record.key.record_id,
                    record.timestamp_ms,
                    sqlite3.Binary(record.payload),
                ),
            )

    async def delete(self, key: RecordKey) -> None:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM records WHERE partition_key = ? AND record_id = ?",
                (key.partition_key, key.record_id),
            )
            if cursor.rowcount == 0:
                raise RecordNotFoundError(key)

    async def exists(self, key: RecordKey) -> bool:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM records WHERE partition_key = ? AND record_id = ?",
                (key.partition_key, key.record_id),
            ).fetchone()
        return row is not None

    async def scan_older_than(
        self,
        cutoff_ms: int,
        after: ScanCursor | None = None,
        limit: int = 1000,
    ) -> list[ArchivalCandidate]:
        with self._get_connection() as conn:
            if after is None:
                rows = conn.execute(
                    """
                    SELECT partition_key, record_id, timestamp_ms FROM records
                    WHERE timestamp_ms < ?
                    ORDER BY timestamp_ms, partition_key, record_id
                    LIMIT ?
                    """,
                    (cutoff_ms, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT partition_key, record_id, timestamp_ms FROM records
                    WHERE timestamp_ms < ?
                      AND (timestamp_ms, partition_key, record_id) > (?, ?, ?)
                    ORDER BY timestamp_ms, partition_key, record_id
                    LIMIT ?
                    """,
                    (
                        cutoff_ms,
                        after.timestamp_ms,
                        after.partition_key,
                        after.record_id,
                        limit,
                    ),
                ).fetchall()

        return [
            ArchivalCandidate(key=RecordKey(row[0], row[1]), timestamp_ms=row[2])
            for row in rows
        ]

    async def count(self) -> int:
        """Number of stored records."""
        with self._get_connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]
