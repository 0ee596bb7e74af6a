"""
Core data model for TierArchive.

Records are opaque payloads identified by (partition_key, record_id) with a
write timestamp used only for age comparison. Everything the engine passes
around is a reference to a record (ArchivalCandidate) except at the moment a
payload is copied between tiers.

Cold document format:
    <prefix>/<partition_key>/<record_id>.json

    {"version": 1, "partition_key": "...", "id": "...", "timestamp_ms": ...,
     "payload_b64": "...", "checksum": "sha256:..."}

Invariants:
    - Record identity is (partition_key, record_id)
    - Records are immutable; archival never mutates the payload
    - The cold object name is a pure function of the identity, so retries
      rewrite the same object with the same bytes
    - Decoding a cold document verifies its checksum

How to change safely:
    - Bump COLD_DOCUMENT_VERSION for any document format change
    - Keep decode_cold_document able to read every older version
    - Never change cold_object_name for existing data
"""

from __future__ import annotations

import base64
import hashlib
import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from .errors import PayloadTooLargeError, PermanentFailure, VerificationFailure

MAX_PAYLOAD_BYTES = 300 * 1024
COLD_DOCUMENT_VERSION = 1
MS_PER_DAY = 24 * 60 * 60 * 1000


def now_ms() -> int:
    """Current wall-clock time in Unix milliseconds."""
    return int(time.time() * 1000)


def compute_checksum(data: bytes) -> str:
    """Compute SHA-256 checksum of data."""
    return f"sha256:{hashlib.sha256(data).hexdigest()}"


@dataclass(frozen=True, order=True)
class RecordKey:
    """Identity of a record.

    Attributes:
        partition_key: Partition/shard key
        record_id: Identifier, unique within the partition
    """

    partition_key: str
    record_id: str

    def to_dict(self) -> Dict[str, str]:
        return {"partition_key": self.partition_key, "record_id": self.record_id}

    def __str__(self) -> str:
        return f"{self.partition_key}/{self.record_id}"


@dataclass(frozen=True)
class Record:
    """A stored record.

    Attributes:
        key: Record identity
        timestamp_ms: Write timestamp (Unix ms), used for age comparison
        payload: Opaque payload bytes
    """

    key: RecordKey
    timestamp_ms: int
    payload: bytes

    @property
    def size(self) -> int:
        return len(self.payload)

    def candidate(self) -> ArchivalCandidate:
        return ArchivalCandidate(key=self.key, timestamp_ms=self.timestamp_ms)


@dataclass(frozen=True)
class ArchivalCandidate:
    """Reference to a record that is eligible for archival."""

    key: RecordKey
    timestamp_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return {**self.key.to_dict(), "timestamp_ms": self.timestamp_ms}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ArchivalCandidate:
        return cls(
            key=RecordKey(data["partition_key"], data["record_id"]),
            timestamp_ms=int(data["timestamp_ms"]),
        )


@dataclass(frozen=True)
class ScanCursor:
    """Position of a scan over the hot store, in scan order.

    Scan order is (timestamp_ms, partition_key, record_id), so the cursor
    identifies the last candidate handed out.
    """

    timestamp_ms: int
    partition_key: str
    record_id: str

    def sort_key(self) -> tuple:
        return (self.timestamp_ms, self.partition_key, self.record_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp_ms": self.timestamp_ms,
            "partition_key": self.partition_key,
            "record_id": self.record_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ScanCursor:
        return cls(
            timestamp_ms=int(data["timestamp_ms"]),
            partition_key=data["partition_key"],
            record_id=data["record_id"],
        )

    @classmethod
    def after(cls, candidate: ArchivalCandidate) -> ScanCursor:
        return cls(
            timestamp_ms=candidate.timestamp_ms,
            partition_key=candidate.key.partition_key,
            record_id=candidate.key.record_id,
        )


def scan_sort_key(candidate: ArchivalCandidate) -> tuple:
    """Sort key that defines scan order (oldest first)."""
    return (candidate.timestamp_ms, candidate.key.partition_key, candidate.key.record_id)


class ChunkState(Enum):
    """Lifecycle of a chunk of candidates."""

    PENDING = "pending"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    PARTIAL_FAILURE = "partial_failure"
    ABANDONED = "abandoned"


class RecordState(Enum):
    """Per-record archival state machine.

    ELIGIBLE -> WRITTEN_COLD -> DELETED_HOT (archived), with failure exits
    to RETRY_QUEUED and finally DEAD_LETTERED.
    """

    ELIGIBLE = "eligible"
    WRITTEN_COLD = "written_cold"
    DELETED_HOT = "deleted_hot"
    ARCHIVED = "deleted_hot"
    RETRY_QUEUED = "retry_queued"
    DEAD_LETTERED = "dead_lettered"


class OutcomeKind(Enum):
    """Per-record archival result."""

    ARCHIVED = "archived"
    ALREADY_ARCHIVED = "already_archived"
    FAILED = "failed"


@dataclass(frozen=True)
class ArchivalOutcome:
    """Result of archiving one record.

    Attributes:
        key: Record identity
        kind: Outcome
        attempts: Number of attempts made (throttled retries excluded)
        reason: Failure reason if kind is FAILED
    """

    key: RecordKey
    kind: OutcomeKind
    attempts: int = 1
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.kind is not OutcomeKind.FAILED

    def raise_for_failure(self) -> None:
        """Raise PermanentFailure if the record was dead-lettered."""
        if self.kind is OutcomeKind.FAILED:
            raise PermanentFailure(self.key, self.attempts, self.reason or "unknown")


@dataclass
class Chunk:
    """A bounded batch of candidates processed by one worker."""

    chunk_id: int
    candidates: List[ArchivalCandidate]
    state: ChunkState = ChunkState.PENDING

    def __len__(self) -> int:
        return len(self.candidates)


class DeadLetterStatus(Enum):
    """Status of a dead-letter entry."""

    OPEN = "open"
    REQUEUED = "requeued"
    RESOLVED = "resolved"


@dataclass
class DeadLetterEntry:
    """A record whose archival permanently failed.

    Attributes:
        entry_id: Sink-assigned identifier
        key: Record identity
        timestamp_ms: Record write timestamp (needed to requeue it)
        reason: Last failure reason
        attempt_count: Attempts made before giving up
        first_seen_ms: When the entry was first written
        status: open, requeued or resolved
        resolved_at_ms: When the entry left the open state
        resolution: Operator note or "reinjected"
    """

    entry_id: int
    key: RecordKey
    timestamp_ms: int
    reason: str
    attempt_count: int
    first_seen_ms: int
    status: DeadLetterStatus = DeadLetterStatus.OPEN
    resolved_at_ms: Optional[int] = None
    resolution: Optional[str] = None

    def candidate(self) -> ArchivalCandidate:
        return ArchivalCandidate(key=self.key, timestamp_ms=self.timestamp_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            **self.key.to_dict(),
            "timestamp_ms": self.timestamp_ms,
            "reason": self.reason,
            "attempt_count": self.attempt_count,
            "first_seen_ms": self.first_seen_ms,
            "status": self.status.value,
            "resolved_at_ms": self.resolved_at_ms,
            "resolution": self.resolution,
        }


@dataclass
class CacheEntry:
    """Cached value with its absolute expiry (Unix ms)."""

    value: bytes
    expires_at_ms: int = field(default=0)


def check_payload_size(record: Record) -> None:
    """Raise PayloadTooLargeError if the payload exceeds MAX_PAYLOAD_BYTES."""
    if record.size > MAX_PAYLOAD_BYTES:
        raise PayloadTooLargeError(record.key, record.size, MAX_PAYLOAD_BYTES)


def cold_object_name(key: RecordKey, prefix: str = "archive") -> str:
    """Build the deterministic cold object name for a record."""
    partition = quote(key.partition_key, safe="")
    record_id = quote(key.record_id, safe="")
    if prefix:
        return f"{prefix}/{partition}/{record_id}.json"
    return f"{partition}/{record_id}.json"


def encode_cold_document(record: Record) -> bytes:
    """Serialize a record into its cold document.

    The output is deterministic for a given record, so rewriting it on retry
    produces identical bytes.
    """
    document = {
        "version": COLD_DOCUMENT_VERSION,
        "partition_key": record.key.partition_key,
        "id": record.key.record_id,
        "timestamp_ms": record.timestamp_ms,
        "payload_b64": base64.b64encode(record.payload).decode("ascii"),
        "checksum": compute_checksum(record.payload),
    }
    return json.dumps(document, separators=(",", ":"), sort_keys=True).encode("utf-8")


def decode_cold_document(data: bytes, name: str = "") -> Record:
    """Parse a cold document back into a Record.

    Raises:
        VerificationFailure: If the document is malformed or its checksum
            does not match the payload
    """
    try:
        document = json.loads(data.decode("utf-8"))
        version = document.get("version", 1)
        if version > COLD_DOCUMENT_VERSION:
            raise ValueError(f"unsupported document version {version}")
        payload = base64.b64decode(document["payload_b64"])
        record = Record(
            key=RecordKey(document["partition_key"], document["id"]),
            timestamp_ms=int(document["timestamp_ms"]),
            payload=payload,
        )
        expected = document["checksum"]
    except (ValueError, KeyError, TypeError, UnicodeDecodeError) as e:
        raise VerificationFailure(f"Malformed cold document {name}: {e}", object_name=name)

    actual = compute_checksum(payload)
    if actual != expected:
        raise VerificationFailure(
            f"Checksum mismatch for {name}",
            object_name=name,
            expected_checksum=expected,
            actual_checksum=actual,
        )
    return record
