"""
Per-record outcome events.

One OutcomeEvent is emitted for every record of a finished chunk and for
every dead-letter entry written. Sinks must not raise into the
orchestrator.
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutcomeEvent:
    record_id: str
    partition_key: str
    outcome: str
    attempt_count: int
    timestamp_ms: int
    chunk_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@runtime_checkable
class EventSink(Protocol):
    """Receives outcome events."""

    @abstractmethod
    def emit(self, event: OutcomeEvent) -> None:
        ...


class LoggingEventSink:
    """Logs each event as a structured log record."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self._logger = log or logger

    def emit(self, event: OutcomeEvent) -> None:
        level = logging.WARNING if event.outcome in ("failed", "dead_lettered") else logging.INFO
        self._logger.log(level, "Archival outcome", extra=event.to_dict())


class CollectingEventSink:
    """Keeps events in memory (tests and local inspection)."""

    def __init__(self) -> None:
        self.events: List[OutcomeEvent] = []

    def emit(self, event: OutcomeEvent) -> None:
        self.events.append(event)

    def outcomes(self, outcome: str) -> List[OutcomeEvent]:
        return [e for e in self.events if e.outcome == outcome]
