"""
Eligibility detection for TierArchive.

The scanner and triggers decide which records are old enough to archive
and when archival runs. Nothing in this package mutates the hot store.
"""

from .checkpoint import CheckpointStore, InMemoryCheckpointStore, SqliteCheckpointStore
from .scanner import EligibilityScanner
from .triggers import (
    ChangeFeedTrigger,
    IntervalTrigger,
    TriggerSource,
    iterate_candidates,
)

__all__ = [
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "SqliteCheckpointStore",
    "EligibilityScanner",
    "TriggerSource",
    "IntervalTrigger",
    "ChangeFeedTrigger",
    "iterate_candidates",
]
