"""
Custom exceptions for session recording storage.

Every component raises these exceptions so the front door can map
them onto responses consistently:

- InvalidInputError: rejected batch (400-class)
- WriteUnavailableError / FlushFailedError: durability failure (500-class)
- SessionUnavailableError: partition listing failed (500-class)
- PartialReadFailure: some data could not be read, partial result attached
- ParseError: one bad record, recovered locally by the reader
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .reader import SessionEventStream


class RecordingStorageError(Exception):
    """Base exception for all session recording storage errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidInputError(RecordingStorageError):
    """Raised when a submitted batch fails shape validation.

    The batch is rejected as a whole; ``errors`` holds one entry per
    offending envelope.
    """

    def __init__(
        self,
        reason: str,
        field: str | None = None,
        index: int | None = None,
        errors: list[dict[str, Any]] | None = None,
    ):
        details: dict[str, Any] = {"reason": reason}
        if field:
            details["field"] = field
        if index is not None:
            details["index"] = index
        if errors:
            details["errors"] = errors
        super().__init__(f"Invalid input: {reason}", details)
        self.reason = reason
        self.field = field
        self.index = index
        self.errors = errors or []


class EnvelopeEncodeError(InvalidInputError):
    """Raised when an envelope cannot be serialized to a single line."""


class ParseError(RecordingStorageError):
    """Raised when a single stored record cannot be decoded."""

    def __init__(self, reason: str, line_number: int | None = None):
        details: dict[str, Any] = {"reason": reason}
        if line_number is not None:
            details["line_number"] = line_number
        super().__init__(f"Unparseable record: {reason}", details)
        self.reason = reason
        self.line_number = line_number


class StoreError(RecordingStorageError):
    """Raised when an object store operation fails.

    ``retryable`` tells the retry helper whether another attempt may
    succeed. ``status_code`` carries the HTTP status when the backend
    exposes one.
    """

    def __init__(
        self,
        operation: str,
        key: str | None = None,
        cause: Exception | None = None,
        status_code: int | None = None,
        retryable: bool = True,
    ):
        details: dict[str, Any] = {"operation": operation, "retryable": retryable}
        if key:
            details["key"] = key
        if cause:
            details["cause"] = str(cause)
        if status_code is not None:
            details["status_code"] = status_code
        message = f"Object store error during {operation}"
        if key:
            message += f": {key}"
        super().__init__(message, details)
        self.operation = operation
        self.key = key
        self.cause = cause
        self.status_code = status_code
        self.retryable = retryable


class ObjectNotFoundError(StoreError):
    """Raised when a requested object does not exist."""

    def __init__(self, key: str, cause: Exception | None = None):
        super().__init__("get_object", key, cause, status_code=404, retryable=False)


class FlushFailedError(RecordingStorageError):
    """Raised when a partition object could not be written durably."""

    def __init__(self, session_id: str, attempts: int, cause: Exception | None = None):
        details: dict[str, Any] = {"session_id": session_id, "attempts": attempts}
        if cause:
            details["cause"] = str(cause)
        super().__init__(
            f"Flush failed for session {session_id} after {attempts} attempt(s)",
            details,
        )
        self.session_id = session_id
        self.attempts = attempts
        self.cause = cause


class WriteUnavailableError(RecordingStorageError):
    """Raised to the ingest caller when a batch could not be stored.

    The batch was not durably written; the caller may retry it as is.
    """

    def __init__(
        self,
        session_id: str,
        reason: str,
        cause: Exception | None = None,
    ):
        details: dict[str, Any] = {"session_id": session_id, "reason": reason}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Write unavailable for session {session_id}: {reason}", details)
        self.session_id = session_id
        self.reason = reason
        self.cause = cause


class SessionUnavailableError(RecordingStorageError):
    """Raised when a session's partitions could not be listed.

    Distinct from an empty session, which reads successfully.
    """

    def __init__(self, session_id: str, cause: Exception | None = None):
        details: dict[str, Any] = {"session_id": session_id}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Session unavailable: {session_id}", details)
        self.session_id = session_id
        self.cause = cause


class PartialReadFailure(RecordingStorageError):
    """Raised when a session read could not fetch every partition.

    ``stream`` holds whatever was merged successfully, with
    ``stream.complete`` set to False.
    """

    def __init__(self, stream: SessionEventStream, reason: str):
        details: dict[str, Any] = {
            "session_id": stream.session_id,
            "reason": reason,
            "envelopes": len(stream),
            "failed_keys": list(stream.failed_keys),
        }
        super().__init__(
            f"Partial read for session {stream.session_id}: {reason}",
            details,
        )
        self.stream = stream
        self.session_id = stream.session_id
        self.reason = reason

    @property
    def incomplete(self) -> bool:
        """Always True; mirrors ``not stream.complete``."""
        return not self.stream.complete


class ConfigurationError(RecordingStorageError):
    """Raised when configuration values are missing or invalid."""

    def __init__(self, field: str, reason: str):
        super().__init__(
            f"Invalid configuration for {field}: {reason}",
            {"field": field, "reason": reason},
        )
        self.field = field
        self.reason = reason
