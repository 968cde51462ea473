"""
Partition key layout.

Every partition object for a session lives under one prefix:

    rrweb/recordings/sessionId=<session_id>/<unique_suffix>

External tooling lists this layout directly, so the format must not
change. The suffix starts with a UTC timestamp, making key order follow
write order within a session, and ends with a random id so concurrent
writers never collide.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from .config import DEFAULT_ROOT_PREFIX
from .envelope import session_id_problem
from .exceptions import InvalidInputError

SESSION_SEGMENT = "sessionId="
OBJECT_SUFFIX = ".jsonl"


def session_prefix(session_id: str, root: str = DEFAULT_ROOT_PREFIX) -> str:
    """Key prefix shared by all partitions of a session (trailing slash included).

    Raises:
        InvalidInputError: If the session id cannot be used in a key
    """
    problem = session_id_problem(session_id)
    if problem is not None:
        raise InvalidInputError(problem, field="sessionId")
    return f"{root.strip('/')}/{SESSION_SEGMENT}{session_id}/"


def unique_suffix(now: datetime | None = None) -> str:
    """Generate a collision-free object name."""
    stamp = (now or datetime.now(UTC)).astimezone(UTC).strftime("%Y%m%dT%H%M%S%fZ")
    return f"{stamp}-{uuid.uuid4().hex}{OBJECT_SUFFIX}"


def partition_key(session_id: str, root: str = DEFAULT_ROOT_PREFIX, now: datetime | None = None) -> str:
    """Generate a fresh key for a new partition object of ``session_id``."""
    return session_prefix(session_id, root) + unique_suffix(now)


def session_id_from_key(key: str, root: str = DEFAULT_ROOT_PREFIX) -> str | None:
    """Recover the session id from a partition key, or None if it does not match."""
    head = f"{root.strip('/')}/{SESSION_SEGMENT}"
    if not key.startswith(head):
        return None
    rest = key[len(head) :]
    session_id, sep, name = rest.partition("/")
    if not sep or not session_id or not name or "/" in name:
        return None
    return session_id
