"""
Partition reader and merge engine.

Rebuilds a session's event stream from storage on every read: list all
partition objects under the session prefix, fetch them concurrently,
decode every line, de-duplicate by ``(session_id, sequence)`` and sort
by sequence. Nothing is cached, so a later read sees partitions flushed
since the previous one.

Delivery is at-least-once and objects arrive in any order, so the merge
never trusts write order, fetch order or wall-clock timestamps. Gaps in
the sequence are returned as they are.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterator
from dataclasses import dataclass, field
from typing import Any

from .config import DEFAULT_ROOT_PREFIX, ReaderConfig
from .envelope import EventEnvelope, decode_object, encode
from .exceptions import PartialReadFailure, SessionUnavailableError
from .logging_utils import session_logger
from .partitions import session_id_from_key, session_prefix
from .resilience import RetryExhaustedError, retry_with_backoff
from .stores.base import ObjectStore

logger = logging.getLogger(__name__)

# Sentinel: use the configured default timeout
DEFAULT_TIMEOUT: Any = object()


@dataclass
class SessionEventStream:
    """Ordered, de-duplicated envelopes of one session, plus read diagnostics.

    Iterating yields envelopes by ascending sequence. ``complete`` is False
    when some partitions could not be read; such a stream only reaches
    callers through ``PartialReadFailure.stream``.
    """

    session_id: str
    envelopes: tuple[EventEnvelope, ...] = ()
    parse_errors: int = 0
    objects_listed: int = 0
    objects_read: int = 0
    failed_keys: tuple[str, ...] = ()
    duplicates_dropped: int = 0
    foreign_records: int = 0
    complete: bool = True
    keys: tuple[str, ...] = field(default=(), repr=False)

    def __iter__(self) -> Iterator[EventEnvelope]:
        return iter(self.envelopes)

    def __len__(self) -> int:
        return len(self.envelopes)

    @property
    def sequences(self) -> list[int]:
        return [e.sequence for e in self.envelopes]

    @property
    def payloads(self) -> list[Any]:
        return [e.payload for e in self.envelopes]

    def iter_lines(self) -> Iterator[bytes]:
        """Serialize lazily, one encoded envelope per line."""
        for envelope in self.envelopes:
            yield encode(envelope)

    def to_jsonl(self) -> bytes:
        """The whole stream as line-delimited bytes."""
        return b"".join(self.iter_lines())


class PartitionReader:
    """Reads and merges the partition objects of a session.

    Example:
        >>> reader = PartitionReader(store)
        >>> stream = await reader.read_session("s1")
        >>> [e.sequence for e in stream]
        [0, 1, 2]
    """

    def __init__(
        self,
        store: ObjectStore,
        config: ReaderConfig | None = None,
        root_prefix: str = DEFAULT_ROOT_PREFIX,
    ) -> None:
        self.store = store
        self.config = config or ReaderConfig()
        self.root_prefix = root_prefix

    async def list_partitions(self, session_id: str) -> list[str]:
        """List every partition key of a session, across all pages, sorted.

        Only direct children of the session prefix are partitions; keys
        nested deeper are left out.

        Raises:
            InvalidInputError: If the session id cannot form a key prefix
            SessionUnavailableError: If listing fails
        """
        prefix = session_prefix(session_id, self.root_prefix)
        keys: list[str] = []
        try:
            async for page in self.store.list_pages(prefix):
                keys.extend(page)
        except Exception as e:
            logger.error("Listing partitions for session %s failed: %s", session_id, e)
            raise SessionUnavailableError(session_id, e) from e

        partitions = sorted(k for k in keys if session_id_from_key(k, self.root_prefix) == session_id)
        if len(partitions) < len(keys):
            logger.debug(
                "Skipped %d non-partition key(s) under %s", len(keys) - len(partitions), prefix
            )
        return partitions

    async def read_session(
        self, session_id: str, timeout: float | None = DEFAULT_TIMEOUT
    ) -> SessionEventStream:
        """Build the ordered event stream of a session.

        Args:
            session_id: Session to read
            timeout: Seconds for the whole read (listing plus fetches);
                defaults to ``config.timeout``, None means no limit

        Returns:
            The complete stream; empty when nothing has been flushed yet

        Raises:
            SessionUnavailableError: If the partitions could not be listed
            PartialReadFailure: If some partitions could not be fetched, or
                the timeout expired; carries the partial stream
        """
        if timeout is DEFAULT_TIMEOUT:
            timeout = self.config.timeout
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        try:
            keys = await asyncio.wait_for(self.list_partitions(session_id), timeout)
        except TimeoutError as e:
            stream = SessionEventStream(session_id, complete=False)
            raise PartialReadFailure(stream, "timed out listing partitions") from e

        if not keys:
            return SessionEventStream(session_id)

        bodies, failed, timed_out = await self._fetch_all(keys, deadline)
        stream = self._merge(session_id, keys, bodies, failed)

        if failed:
            if timed_out:
                reason = f"timed out with {len(failed)} of {len(keys)} partitions unread"
            else:
                reason = f"{len(failed)} of {len(keys)} partitions unreadable"
            session_logger(logger, session_id, partitions=len(keys)).warning(
                "Partial read: %s", reason
            )
            raise PartialReadFailure(stream, reason)

        return stream

    async def stream(
        self, session_id: str, timeout: float | None = DEFAULT_TIMEOUT
    ) -> AsyncIterator[EventEnvelope]:
        """Yield the session's envelopes in order.

        Each call re-lists and re-merges, so iterating again later picks up
        newly flushed partitions.
        """
        result = await self.read_session(session_id, timeout)
        for envelope in result:
            yield envelope

    async def _fetch_all(
        self, keys: list[str], deadline: float | None
    ) -> tuple[dict[str, bytes], list[str], bool]:
        semaphore = asyncio.Semaphore(self.config.max_concurrency)

        async def fetch(key: str) -> bytes:
            async with semaphore:
                return await retry_with_backoff(
                    self.store.get_object, key, config=self.config.retry, context_msg=key
                )

        tasks = {key: asyncio.create_task(fetch(key)) for key in keys}
        loop = asyncio.get_running_loop()
        remaining = None if deadline is None else max(0.0, deadline - loop.time())

        try:
            _done, pending = await asyncio.wait(tasks.values(), timeout=remaining)
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        bodies: dict[str, bytes] = {}
        failed: list[str] = []
        for key, task in tasks.items():
            if task.cancelled():
                failed.append(key)
                continue
            error = task.exception()
            if error is None:
                bodies[key] = task.result()
                continue
            failed.append(key)
            cause = error.last_exception if isinstance(error, RetryExhaustedError) else error
            logger.warning("Could not fetch partition %s: %s", key, cause)

        return bodies, failed, bool(pending)

    def _merge(
        self,
        session_id: str,
        keys: list[str],
        bodies: dict[str, bytes],
        failed: list[str],
    ) -> SessionEventStream:
        merged: dict[int, EventEnvelope] = {}
        parse_errors = 0
        duplicates = 0
        foreign = 0

        # Sorted key order makes "last copy wins" deterministic
        for key in keys:
            body = bodies.get(key)
            if body is None:
                continue
            decoded = decode_object(body)
            if decoded.parse_errors:
                parse_errors += decoded.parse_errors
                logger.warning(
                    "Skipped %d unparseable line(s) in %s (first: %s)",
                    decoded.parse_errors,
                    key,
                    decoded.errors[0].reason if decoded.errors else "unknown",
                )
            for envelope in decoded.envelopes:
                if envelope.session_id != session_id:
                    foreign += 1
                    continue
                if envelope.sequence in merged:
                    duplicates += 1
                merged[envelope.sequence] = envelope

        if foreign:
            logger.warning("Ignored %d record(s) of other sessions under %s", foreign, session_id)

        return SessionEventStream(
            session_id=session_id,
            envelopes=tuple(merged[seq] for seq in sorted(merged)),
            parse_errors=parse_errors,
            objects_listed=len(keys),
            objects_read=len(bodies),
            failed_keys=tuple(failed),
            duplicates_dropped=duplicates,
            foreign_records=foreign,
            complete=not failed,
            keys=tuple(keys),
        )
