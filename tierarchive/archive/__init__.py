"""
Hot-to-cold archival for TierArchive.

This module moves eligible records from the hot store to the cold store
with write, verify, then delete ordering, and paces itself against
backend capacity.
"""

from .backoff import BackoffPolicy
from .events import CollectingEventSink, EventSink, LoggingEventSink, OutcomeEvent
from .governor import CircuitBreaker, ThroughputGovernor
from .orchestrator import ArchivalOrchestrator, ChunkResult, RunReport

__all__ = [
    "ArchivalOrchestrator",
    "ChunkResult",
    "RunReport",
    "BackoffPolicy",
    "ThroughputGovernor",
    "CircuitBreaker",
    "OutcomeEvent",
    "EventSink",
    "LoggingEventSink",
    "CollectingEventSink",
]
