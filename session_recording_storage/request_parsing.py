"""
Front-door request body parsing.

The HTTP layer is not part of this package, but the request bodies it
receives come from recorder clients in a few known shapes. This module
turns them into envelopes for ``RecordingPipeline.ingest``:

Single event (recorder library)::

    {"sessionId": "s1", "sequence": 4, "rrwebEvent": {...}}

Batch of raw events, numbered from ``startSequence`` (default 0)::

    {"sessionId": "s1", "startSequence": 10, "events": [{...}, {...}]}

Batch of envelopes::

    {"sessionId": "s1", "events": [{"sequence": 0, "payload": {...}}]}
    [{"sessionId": "s1", "sequence": 0, "payload": {...}}]
"""

from __future__ import annotations

import json
from typing import Any

from .envelope import EventEnvelope, sequence_problem
from .exceptions import InvalidInputError


def _is_envelope_shaped(item: Any) -> bool:
    return isinstance(item, dict) and "sequence" in item and ("payload" in item or "rrwebEvent" in item)


def _to_envelope(item: dict[str, Any], session_id: str) -> EventEnvelope:
    payload = item["payload"] if "payload" in item else item.get("rrwebEvent")
    return EventEnvelope(
        session_id=item.get("sessionId", session_id),
        sequence=item["sequence"],
        payload=payload,
    )


def parse_ingest_body(
    body: bytes | str | dict[str, Any] | list[Any],
    session_id: str | None = None,
) -> tuple[str, list[EventEnvelope]]:
    """Parse a request body into a session id and its envelopes.

    Args:
        body: Raw JSON (bytes/str) or an already decoded document
        session_id: Session id from the request path, if any; must agree
            with the body when both are present

    Returns:
        ``(session_id, envelopes)``; envelopes are validated later by the
        ingestion buffer

    Raises:
        InvalidInputError: If the body is not JSON or has no usable shape
    """
    if isinstance(body, bytes | str):
        try:
            body = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise InvalidInputError(f"body is not valid JSON: {e}", field="body") from e

    if isinstance(body, list):
        items = body
        body_session = next(
            (i.get("sessionId") for i in items if isinstance(i, dict) and "sessionId" in i), None
        )
    elif isinstance(body, dict):
        items = None
        body_session = body.get("sessionId")
    else:
        raise InvalidInputError("body must be a JSON object or array", field="body")

    resolved = _resolve_session(session_id, body_session)

    if isinstance(body, list):
        return resolved, [_envelope_or_error(item, resolved, index) for index, item in enumerate(items)]

    if "rrwebEvent" in body or "payload" in body:
        if "sequence" not in body:
            raise InvalidInputError("missing sequence", field="sequence")
        return resolved, [_to_envelope(body, resolved)]

    events = body.get("events")
    if not isinstance(events, list):
        raise InvalidInputError("body needs 'events', 'rrwebEvent' or 'payload'", field="events")

    start = body.get("startSequence", 0)
    problem = sequence_problem(start)
    if problem is not None:
        raise InvalidInputError(f"startSequence: {problem}", field="startSequence")

    envelopes = []
    for offset, item in enumerate(events):
        if _is_envelope_shaped(item):
            envelopes.append(_to_envelope(item, resolved))
        else:
            envelopes.append(EventEnvelope(session_id=resolved, sequence=start + offset, payload=item))
    return resolved, envelopes


def _resolve_session(path_session: str | None, body_session: Any) -> str:
    if path_session is not None and body_session is not None and body_session != path_session:
        raise InvalidInputError(
            f"sessionId {body_session!r} does not match {path_session!r}", field="sessionId"
        )
    resolved = path_session if path_session is not None else body_session
    if not isinstance(resolved, str) or not resolved:
        raise InvalidInputError("missing sessionId", field="sessionId")
    return resolved


def _envelope_or_error(item: Any, session_id: str, index: int) -> EventEnvelope:
    if not _is_envelope_shaped(item):
        raise InvalidInputError(
            "array items must carry sequence and payload", field="envelope", index=index
        )
    return _to_envelope(item, session_id)
