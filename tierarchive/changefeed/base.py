"""
Base protocol and types for the record change feed.

A change feed carries one notification per hot-store write. The change-feed
trigger consumes it to learn about records without scanning the hot store.

This module defines the ChangeFeed protocol that all backends must implement,
along with common types for feed positions, events, and errors.

Invariants:
    - FeedPosition uniquely identifies a position in the feed
    - Events carry the record identity and write timestamp, never the payload
    - Events for the same partition key are delivered in publish order

How to change safely:
    - Protocol changes require updating all implementations
    - Keep the wire format (ChangeEvent.encode) backward compatible
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Dict,
    Optional,
    Protocol,
    runtime_checkable,
)

from ..models import ArchivalCandidate, RecordKey

if TYPE_CHECKING:
    from ..config import EngineConfig

logger = logging.getLogger(__name__)


class FeedError(Exception):
    """Base exception for change feed operations."""
    pass


class FeedConnectionError(FeedError):
    """Connection to the feed backend failed."""
    pass


class FeedTimeoutError(FeedError):
    """Feed operation timed out or was throttled."""
    pass


class FeedSerializationError(FeedError):
    """Failed to serialize/deserialize a change event."""
    pass


@dataclass(frozen=True)
class FeedPosition:
    """Position in the change feed.

    Attributes:
        topic: Feed/stream name
        partition: Partition number (Kinesis shard number)
        offset: Offset within partition (Kinesis sequence number)
        timestamp_ms: When the event was published (milliseconds)
    """
    topic: str
    partition: int
    offset: int
    timestamp_ms: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "topic": self.topic,
            "partition": self.partition,
            "offset": self.offset,
            "timestamp_ms": self.timestamp_ms,
        }

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass(frozen=True)
class ChangeEvent:
    """A record-written notification.

    Attributes:
        key: Identity of the written record
        timestamp_ms: Record write timestamp
        position: Where the event sits in the feed (None before publish)
    """
    key: RecordKey
    timestamp_ms: int
    position: Optional[FeedPosition] = None

    def candidate(self) -> ArchivalCandidate:
        return ArchivalCandidate(key=self.key, timestamp_ms=self.timestamp_ms)

    def encode(self) -> bytes:
        """Wire format: compact JSON without the position."""
        return json.dumps(
            {
                "partition_key": self.key.partition_key,
                "record_id": self.key.record_id,
                "timestamp_ms": self.timestamp_ms,
            },
            separators=(",", ":"),
        ).encode("utf-8")

    @classmethod
    def decode(cls, data: bytes, position: Optional[FeedPosition] = None) -> ChangeEvent:
        """Parse the wire format.

        Raises:
            FeedSerializationError: If data is not a valid change event
        """
        try:
            parsed = json.loads(data.decode("utf-8"))
            return cls(
                key=RecordKey(parsed["partition_key"], parsed["record_id"]),
                timestamp_ms=int(parsed["timestamp_ms"]),
                position=position,
            )
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError) as e:
            raise FeedSerializationError(f"Failed to parse change event: {e}")

    def __str__(self) -> str:
        return f"ChangeEvent(key={self.key}, pos={self.position})"


@runtime_checkable
class ChangeFeed(Protocol):
    """Protocol for change feed backends.

    Example:
        >>> feed = KinesisChangeFeed(config)
        >>> await feed.connect()
        >>> await feed.publish(ChangeEvent(RecordKey("p1", "r1"), ts))
        >>> async for event in feed.subscribe("archiver"):
        ...     handle(event)
        ...     await feed.commit(event)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the feed backend.

        Raises:
            FeedConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close connection to the feed backend."""
        ...

    @abstractmethod
    async def publish(self, event: ChangeEvent) -> FeedPosition:
        """Publish a change event.

        Returns:
            FeedPosition indicating where the event was written

        Raises:
            FeedConnectionError: If not connected
            FeedTimeoutError: If the write times out or is throttled
        """
        ...

    @abstractmethod
    def subscribe(
        self,
        group_id: str,
        start_position: Optional[FeedPosition] = None,
    ) -> AsyncIterator[ChangeEvent]:
        """Subscribe to change events.

        Yields:
            ChangeEvent objects in order within partitions

        Note:
            The caller must call commit() to acknowledge processed events.
        """
        ...

    @abstractmethod
    async def commit(self, event: ChangeEvent) -> None:
        """Acknowledge a consumed event."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the backend."""
        ...


def create_change_feed(config: "EngineConfig") -> ChangeFeed:
    """Factory function to create a change feed from configuration.

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import ChangeFeedBackend
    from .kinesis import KinesisChangeFeed
    from .memory import InMemoryChangeFeed

    if config.changefeed_backend == ChangeFeedBackend.KINESIS:
        return KinesisChangeFeed(config.kinesis)
    elif config.changefeed_backend == ChangeFeedBackend.MEMORY:
        return InMemoryChangeFeed()
    else:
        raise ValueError(f"Unsupported change feed backend: {config.changefeed_backend}")
