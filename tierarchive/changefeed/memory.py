"""
In-process change feed.

Each partition is a Python list of events; an event's offset is its index
in that list. Tests and single-process deployments publish into it
directly, standing in for Kinesis.

Invariants:
    - A partition key always maps to the same partition
    - Offsets within a partition are dense and start at 0
    - A subscriber resumes at the committed offset of every partition
    - Committed offsets never move backwards
    - Nothing survives the process

How to change safely:
    - Keep partitioning stable; tests assert same-key ordering
    - Keep the ChangeFeed protocol signatures in step with kinesis.py
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from typing import AsyncIterator, Dict, List, Optional, Set

from .base import ChangeEvent, FeedConnectionError, FeedPosition

logger = logging.getLogger(__name__)

# Upper bound on how long an idle subscriber sleeps before rechecking close().
IDLE_WAIT_SECONDS = 1.0


def partition_of(partition_key: str, num_partitions: int) -> int:
    """Stable partition for a partition key (first 4 bytes of its md5)."""
    digest = hashlib.md5(partition_key.encode("utf-8")).digest()
    return int.from_bytes(digest[:4], "big") % num_partitions


class InMemoryChangeFeed:
    """ChangeFeed backed by per-partition lists.

    Example:
        >>> feed = InMemoryChangeFeed()
        >>> await feed.connect()
        >>> await feed.publish(ChangeEvent(RecordKey("p", "1"), 0))
        >>> async for event in feed.subscribe("archiver"):
        ...     print(event.key)
    """

    def __init__(self, num_partitions: int = 4, topic: str = "changes") -> None:
        if num_partitions < 1:
            raise ValueError("num_partitions must be >= 1")
        self.num_partitions = num_partitions
        self.topic = topic
        self._logs: List[List[ChangeEvent]] = [[] for _ in range(num_partitions)]
        self._committed: List[int] = [0] * num_partitions
        self._connected = False
        self._mutex = asyncio.Lock()
        self._appended = asyncio.Event()
        self._live: Set[object] = set()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("In-memory change feed opened", extra={"topic": self.topic})

    async def close(self) -> None:
        """Disconnect; open subscriptions finish at their next wake-up."""
        self._connected = False
        self._live.clear()
        self._appended.set()
        logger.debug("In-memory change feed closed", extra={"topic": self.topic})

    async def publish(self, event: ChangeEvent) -> FeedPosition:
        self._ensure_connected()
        partition = partition_of(event.key.partition_key, self.num_partitions)

        async with self._mutex:
            log = self._logs[partition]
            position = FeedPosition(
                topic=self.topic,
                partition=partition,
                offset=len(log),
                timestamp_ms=int(time.time() * 1000),
            )
            log.append(ChangeEvent(event.key, event.timestamp_ms, position))
            self._appended.set()

        logger.debug(
            "Change event appended",
            extra={"key": str(event.key), "partition": partition, "offset": position.offset},
        )
        return position

    async def subscribe(
        self,
        group_id: str,
        start_position: Optional[FeedPosition] = None,
    ) -> AsyncIterator[ChangeEvent]:
        """Stream events from the committed offsets onward until close().

        start_position overrides the resume point of its own partition only;
        delivery starts just after it.
        """
        self._ensure_connected()

        cursors = list(self._committed)
        if start_position is not None:
            cursors[start_position.partition] = start_position.offset + 1

        token = object()
        self._live.add(token)
        logger.debug("Change feed subscription opened", extra={"group_id": group_id})
        try:
            while token in self._live:
                async with self._mutex:
                    ready: List[ChangeEvent] = []
                    for partition, log in enumerate(self._logs):
                        ready.extend(log[cursors[partition]:])
                        cursors[partition] = len(log)
                    if not ready:
                        self._appended.clear()

                if ready:
                    for event in ready:
                        yield event
                    continue

                try:
                    await asyncio.wait_for(self._appended.wait(), timeout=IDLE_WAIT_SECONDS)
                except asyncio.TimeoutError:
                    pass
        finally:
            self._live.discard(token)

    async def commit(self, event: ChangeEvent) -> None:
        """Move the partition's resume point past the event."""
        position = event.position
        if position is None:
            return
        resume_at = position.offset + 1
        if resume_at > self._committed[position.partition]:
            self._committed[position.partition] = resume_at

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise FeedConnectionError("In-memory change feed is not connected")

    def get_event_count(self) -> int:
        """Events published across all partitions."""
        return sum(len(log) for log in self._logs)

    def committed_offsets(self) -> Dict[int, int]:
        """Resume offset per partition."""
        return dict(enumerate(self._committed))
