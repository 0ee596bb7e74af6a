"""
Record change feed for TierArchive.

This module provides a pluggable change feed interface supporting:
- AWS Kinesis
- In-memory (for testing)

Hot-store writers publish a change event per write; the change-feed
trigger turns aged events into archival candidates without scanning.

Invariants:
    - publish() returns only after the backend acknowledged the event
    - Events are ordered per partition key
    - Events never carry payloads

How to change safely:
    - New backends must implement ChangeFeed protocol
    - Keep the ChangeEvent wire format backward compatible
"""

from .base import (
    ChangeEvent,
    ChangeFeed,
    FeedConnectionError,
    FeedError,
    FeedPosition,
    FeedSerializationError,
    FeedTimeoutError,
    create_change_feed,
)
from .kinesis import KinesisChangeFeed
from .memory import InMemoryChangeFeed

__all__ = [
    # Protocol and types
    "ChangeFeed",
    "ChangeEvent",
    "FeedPosition",
    "FeedError",
    "FeedConnectionError",
    "FeedTimeoutError",
    "FeedSerializationError",
    # Factory
    "create_change_feed",
    # Implementations
    "KinesisChangeFeed",
    "InMemoryChangeFeed",
]
