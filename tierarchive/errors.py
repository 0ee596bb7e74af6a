"""
Error types for TierArchive.

The taxonomy drives retry decisions:
- TransientBackendError: throttling, timeouts, connection loss. Retried.
- ThrottledError: backend capacity exhausted. Retried, and slows dispatch.
- VerificationFailure: cold read-back mismatch. Treated as transient.
- NotFoundError: resource does not exist. Terminal for the caller.
- PermanentFailure: retry budget exhausted. Dead-lettered.

Invariants:
    - All errors inherit from TierArchiveError
    - Errors carry a stable code for programmatic handling
    - Not-found is never raised for a backend that failed to answer
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class TierArchiveError(Exception):
    """Base exception for all TierArchive errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "TIERARCHIVE_ERROR"
        self.details = details or {}


class TransientBackendError(TierArchiveError):
    """A backend failed in a way that may succeed on retry.

    Raised when:
    - A request times out
    - The backend is unreachable
    - SQLite reports a busy/locked database
    """

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        code: str = "TRANSIENT_BACKEND_ERROR",
    ) -> None:
        super().__init__(message, code=code, details={"backend": backend})
        self.backend = backend


class ThrottledError(TransientBackendError):
    """Backend signalled capacity exhaustion (rate limit / throttle)."""

    def __init__(self, message: str, backend: Optional[str] = None) -> None:
        super().__init__(message, backend=backend, code="THROTTLED")


class VerificationFailure(TransientBackendError):
    """Cold write returned success but the read-back did not match."""

    def __init__(
        self,
        message: str,
        object_name: str,
        expected_checksum: Optional[str] = None,
        actual_checksum: Optional[str] = None,
    ) -> None:
        super().__init__(message, backend="cold", code="VERIFICATION_FAILURE")
        self.details.update(
            {
                "object_name": object_name,
                "expected_checksum": expected_checksum,
                "actual_checksum": actual_checksum,
            }
        )
        self.object_name = object_name
        self.expected_checksum = expected_checksum
        self.actual_checksum = actual_checksum


class NotFoundError(TierArchiveError):
    """Resource not found."""

    def __init__(
        self,
        message: str,
        resource_type: str,
        resource_id: str,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_type": resource_type,
                "resource_id": resource_id,
            },
        )
        self.resource_type = resource_type
        self.resource_id = resource_id


class RecordNotFoundError(NotFoundError):
    """Record does not exist (in a store, or in either tier for the gateway)."""

    def __init__(self, key: Any) -> None:
        super().__init__(f"Record not found: {key}", "record", str(key))
        self.key = key


class ObjectNotFoundError(NotFoundError):
    """Cold store object does not exist."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Object not found: {name}", "object", name)
        self.name = name


class PermanentFailure(TierArchiveError):
    """Archival of a record failed after exhausting its retry budget."""

    def __init__(self, key: Any, attempts: int, reason: str) -> None:
        super().__init__(
            f"Archival of {key} failed after {attempts} attempts: {reason}",
            code="PERMANENT_FAILURE",
            details={"key": str(key), "attempts": attempts, "reason": reason},
        )
        self.key = key
        self.attempts = attempts
        self.reason = reason


class CacheUnavailableError(TierArchiveError):
    """Cache backend cannot be reached."""

    def __init__(self, message: str = "Cache backend unavailable") -> None:
        super().__init__(message, code="CACHE_UNAVAILABLE")


class PayloadTooLargeError(TierArchiveError):
    """Record payload exceeds the supported size."""

    def __init__(self, key: Any, size: int, limit: int) -> None:
        super().__init__(
            f"Payload for {key} is {size} bytes, limit is {limit}",
            code="PAYLOAD_TOO_LARGE",
            details={"key": str(key), "size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit
