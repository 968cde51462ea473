"""
Event envelope model.

An envelope is one recorded interaction event plus the session id and
the producer-assigned sequence number used to order it on playback.
Envelopes are immutable; the writer stamps ``received_at`` by creating
a copy.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

# Largest integer every JSON consumer (including browsers) reads exactly.
MAX_SAFE_SEQUENCE = 2**53 - 1


@dataclass(frozen=True)
class EventEnvelope:
    """A single unit of ingestion.

    Attributes:
        session_id: Opaque recording identifier, stable for the recording
        sequence: Producer-assigned ordering key, unique per session by intent
        payload: The interaction event itself; round-tripped untouched
        received_at: Ingestion time, assigned by the writer when missing
    """

    session_id: str
    sequence: int
    payload: Any
    received_at: datetime | None = None

    @property
    def key(self) -> tuple[str, int]:
        """Identity used for de-duplication."""
        return (self.session_id, self.sequence)

    def stamped(self, received_at: datetime | None = None) -> EventEnvelope:
        """Return a copy with ``received_at`` set, keeping an existing value."""
        if self.received_at is not None:
            return self
        return dataclasses.replace(self, received_at=received_at or datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the wire dictionary."""
        data: dict[str, Any] = {
            "sessionId": self.session_id,
            "sequence": self.sequence,
            "payload": self.payload,
        }
        if self.received_at is not None:
            data["receivedAt"] = self.received_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], session_id: str | None = None) -> EventEnvelope:
        """Build an envelope from a wire or snake_case dictionary.

        Does not validate; see ``session_id_problem`` and
        ``sequence_problem``. ``session_id`` is used when the dictionary
        carries none.

        Raises:
            KeyError: If the session id, ``sequence`` or ``payload`` is missing
            TypeError: If ``receivedAt`` is neither a string nor a datetime
            ValueError: If ``receivedAt`` is not ISO-8601
        """
        sid = data.get("sessionId", data.get("session_id", session_id))
        if sid is None:
            raise KeyError("sessionId")
        if "sequence" not in data:
            raise KeyError("sequence")
        if "payload" not in data:
            raise KeyError("payload")
        received = data.get("receivedAt", data.get("received_at"))
        if isinstance(received, str):
            received = datetime.fromisoformat(received)
        elif received is not None and not isinstance(received, datetime):
            raise TypeError("receivedAt must be an ISO-8601 string")
        return cls(
            session_id=sid,
            sequence=data["sequence"],
            payload=data["payload"],
            received_at=received,
        )


def session_id_problem(session_id: Any) -> str | None:
    """Describe why a session id is unusable, or return None if it is fine.

    Slashes are refused because the session id becomes a key prefix
    component: ``a`` must never be a prefix of another session's keys.
    """
    if not isinstance(session_id, str):
        return "sessionId must be a string"
    if not session_id:
        return "sessionId must not be empty"
    if "/" in session_id:
        return "sessionId must not contain '/'"
    if any(ord(ch) < 0x20 or ord(ch) == 0x7F for ch in session_id):
        return "sessionId must not contain control characters"
    return None


def sequence_problem(sequence: Any) -> str | None:
    """Describe why a sequence number is unusable, or return None."""
    # bool is an int subclass; True is not a sequence number
    if isinstance(sequence, bool) or not isinstance(sequence, int):
        return "sequence must be an integer"
    if sequence < 0:
        return "sequence must be non-negative"
    if sequence > MAX_SAFE_SEQUENCE:
        return f"sequence must not exceed {MAX_SAFE_SEQUENCE}"
    return None
