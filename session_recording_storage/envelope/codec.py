"""
Line-delimited codec for event envelopes.

Each envelope is stored as one compact JSON object followed by a
newline. JSON string escaping turns any newline inside the payload into
the two characters ``\\n``, so an encoded record never contains the
line delimiter and every line of a partition object decodes on its own.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..exceptions import EnvelopeEncodeError, ParseError
from .types import EventEnvelope, sequence_problem, session_id_problem

LINE_DELIMITER = b"\n"

# Keep at most this many ParseError samples per decoded object
_MAX_ERROR_SAMPLES = 10


@dataclass
class DecodedObject:
    """Result of decoding one partition object.

    Attributes:
        envelopes: Successfully decoded envelopes, in line order
        parse_errors: Number of lines that failed to decode
        errors: A bounded sample of the ParseErrors encountered
    """

    envelopes: list[EventEnvelope] = field(default_factory=list)
    parse_errors: int = 0
    errors: list[ParseError] = field(default_factory=list)


def encode(envelope: EventEnvelope) -> bytes:
    """Serialize an envelope to one newline-terminated line.

    Raises:
        EnvelopeEncodeError: If the envelope fields are invalid or the
            payload is not JSON-serializable
    """
    problem = session_id_problem(envelope.session_id)
    if problem is None:
        problem = sequence_problem(envelope.sequence)
    if problem is not None:
        raise EnvelopeEncodeError(problem)

    try:
        line = json.dumps(
            envelope.to_dict(),
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
        )
    except (TypeError, ValueError) as e:
        raise EnvelopeEncodeError(f"payload is not JSON-serializable: {e}", field="payload") from e

    return line.encode("utf-8") + LINE_DELIMITER


def encoded_size(envelope: EventEnvelope) -> int:
    """Size in bytes of the encoded line, delimiter included."""
    return len(encode(envelope))


def decode(line: bytes, line_number: int | None = None) -> EventEnvelope:
    """Parse one encoded line back into an envelope.

    A trailing delimiter (and carriage return) is tolerated.

    Raises:
        ParseError: If the line is empty, truncated, or malformed
    """
    raw = line.rstrip(b"\r\n")
    if not raw.strip():
        raise ParseError("empty line", line_number)

    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"invalid UTF-8: {e}", line_number) from e

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON: {e.msg}", line_number) from e

    if not isinstance(data, dict):
        raise ParseError("record is not a JSON object", line_number)

    return _envelope_from_record(data, line_number)


def _envelope_from_record(data: dict[str, Any], line_number: int | None) -> EventEnvelope:
    session_id = data.get("sessionId")
    problem = session_id_problem(session_id)
    if problem is not None:
        raise ParseError(problem, line_number)

    if "sequence" not in data:
        raise ParseError("missing sequence", line_number)
    problem = sequence_problem(data["sequence"])
    if problem is not None:
        raise ParseError(problem, line_number)

    # Lines written by the rrweb delivery stream carry the event as rrwebEvent
    payload_field = "payload" if "payload" in data else "rrwebEvent"
    if payload_field not in data:
        raise ParseError("missing payload", line_number)

    received_at = None
    if data.get("receivedAt") is not None:
        try:
            received_at = datetime.fromisoformat(data["receivedAt"])
        except (TypeError, ValueError) as e:
            raise ParseError(f"invalid receivedAt: {e}", line_number) from e

    return EventEnvelope(
        session_id=session_id,
        sequence=data["sequence"],
        payload=data[payload_field],
        received_at=received_at,
    )


def encode_batch(envelopes: list[EventEnvelope]) -> bytes:
    """Serialize several envelopes into the body of one partition object."""
    return b"".join(encode(envelope) for envelope in envelopes)


def decode_object(data: bytes) -> DecodedObject:
    """Decode every line of a partition object.

    Bad lines, including a half-written trailing line, are skipped and
    counted rather than failing the whole object. Blank lines are
    ignored.
    """
    result = DecodedObject()
    for line_number, line in enumerate(data.split(LINE_DELIMITER), start=1):
        if not line.strip():
            continue
        try:
            result.envelopes.append(decode(line, line_number))
        except ParseError as e:
            result.parse_errors += 1
            if len(result.errors) < _MAX_ERROR_SAMPLES:
                result.errors.append(e)
    return result
