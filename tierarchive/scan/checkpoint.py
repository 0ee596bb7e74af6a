"""
Scan checkpoint persistence.

A checkpoint is the cursor of the last candidate a named scan handed out.
Scans save it after every page and clear it once exhausted, so a restart
resumes mid-scan and a completed scan starts the next pass from the top.

Invariants:
    - save() overwrites; there is one cursor per scan name
    - load() of an unknown or cleared name returns None

How to change safely:
    - The stored cursor is JSON (ScanCursor.to_dict); keep it readable
      by older versions or clear checkpoints on upgrade
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from abc import abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..errors import TransientBackendError
from ..models import ScanCursor, now_ms

logger = logging.getLogger(__name__)


@runtime_checkable
class CheckpointStore(Protocol):
    """Protocol for scan checkpoint storage."""

    @abstractmethod
    async def load(self, name: str) -> ScanCursor | None:
        """Return the saved cursor for a scan, or None."""
        ...

    @abstractmethod
    async def save(self, name: str, cursor: ScanCursor) -> None:
        """Persist the cursor for a scan."""
        ...

    @abstractmethod
    async def clear(self, name: str) -> None:
        """Forget the cursor for a scan."""
        ...


class InMemoryCheckpointStore:
    """In-memory CheckpointStore for tests and local runs."""

    def __init__(self) -> None:
        self._cursors: dict[str, ScanCursor] = {}
        self.save_count = 0

    async def load(self, name: str) -> ScanCursor | None:
        return self._cursors.get(name)

    async def save(self, name: str, cursor: ScanCursor) -> None:
        self._cursors[name] = cursor
        self.save_count += 1

    async def clear(self, name: str) -> None:
        self._cursors.pop(name, None)


class SqliteCheckpointStore:
    """SQLite CheckpointStore, sharing the engine state database.

    Table schema:
        scan_checkpoints:
            - name TEXT PRIMARY KEY
            - cursor_json TEXT
            - updated_at INTEGER (Unix ms)
    """

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.busy_timeout_ms = busy_timeout_ms
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
            raise TransientBackendError(
                f"Cannot open checkpoint store: {e}", backend="state"
            ) from e
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            yield conn
        except sqlite3.OperationalError as e:
            raise TransientBackendError(
                f"Checkpoint store operation failed: {e}", backend="state"
            ) from e
        finally:
            conn.close()

    async def connect(self) -> None:
        """Create the checkpoint table if it doesn't exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._lock:
            with self._get_connection() as conn:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS scan_checkpoints (
                        name TEXT PRIMARY KEY,
                        cursor_json TEXT NOT NULL,
                        updated_at INTEGER NOT NULL
                    )
                """)

    async def close(self) -> None:
        """Close (connections are per-operation)."""

    async def load(self, name: str) -> ScanCursor | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT cursor_json FROM scan_checkpoints WHERE name = ?", (name,)
            ).fetchone()
        if row is None:
            return None
        try:
            return ScanCursor.from_dict(json.loads(row[0]))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(
                f"Ignoring unreadable checkpoint: {e}", extra={"scan": name}
            )
            return None

    async def save(self, name: str, cursor: ScanCursor) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO scan_checkpoints (name, cursor_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT (name)
                DO UPDATE SET cursor_json = excluded.cursor_json,
                              updated_at = excluded.updated_at
                """,
                (name, json.dumps(cursor.to_dict()), now_ms()),
            )

    async def clear(self, name: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM scan_checkpoints WHERE name = ?", (name,))
