"""
Dead-letter handling for records whose archival permanently failed.
"""

from .sink import (
    DeadLetterEntryNotFoundError,
    DeadLetterSink,
    InMemoryDeadLetterSink,
    SqliteDeadLetterSink,
)

__all__ = [
    "DeadLetterSink",
    "InMemoryDeadLetterSink",
    "SqliteDeadLetterSink",
    "DeadLetterEntryNotFoundError",
]
