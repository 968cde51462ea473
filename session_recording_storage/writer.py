"""
Partitioned writer.

Turns a batch of envelopes into one new, immutable partition object
under the session's key prefix. Objects are never updated or appended
to; durability comes from the store's atomic whole-object put.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from .config import WriterConfig
from .envelope import EventEnvelope, encode_batch
from .exceptions import FlushFailedError, InvalidInputError
from .logging_utils import session_logger
from .partitions import partition_key, session_prefix
from .resilience import RetryExhaustedError, retry_with_backoff
from .stores.base import ObjectStore

logger = logging.getLogger(__name__)


class PartitionedWriter:
    """Writes session-partitioned objects to an object store.

    Example:
        >>> writer = PartitionedWriter(store)
        >>> key = await writer.flush("s1", envelopes)
        >>> key
        'rrweb/recordings/sessionId=s1/20240101T120000123456Z-3f2a....jsonl'
    """

    def __init__(self, store: ObjectStore, config: WriterConfig | None = None) -> None:
        self.store = store
        self.config = config or WriterConfig()
        self.objects_written = 0
        self.envelopes_written = 0

    def prefix_for(self, session_id: str) -> str:
        """Key prefix holding all partitions of ``session_id``."""
        return session_prefix(session_id, self.config.root_prefix)

    async def flush(self, session_id: str, envelopes: list[EventEnvelope]) -> str | None:
        """Durably write ``envelopes`` as one new partition object.

        Envelopes without ``received_at`` are stamped with the flush time.

        Args:
            session_id: Session owning every envelope in the batch
            envelopes: Envelopes to write, in the order they should be stored

        Returns:
            The new object's key, or None for an empty batch

        Raises:
            InvalidInputError: If an envelope belongs to another session or
                cannot be encoded
            FlushFailedError: If the object could not be written
        """
        if not envelopes:
            return None
        return await self.write_partition(session_id, envelopes)

    async def write_partition(self, session_id: str, envelopes: list[EventEnvelope]) -> str:
        """Write a non-empty batch as one new partition object and return its key.

        Raises:
            InvalidInputError: If the batch is empty, mixes sessions or
                cannot be encoded
            FlushFailedError: If the object could not be written
        """
        if not envelopes:
            raise InvalidInputError("empty batch", field="events")

        for index, envelope in enumerate(envelopes):
            if envelope.session_id != session_id:
                raise InvalidInputError(
                    f"envelope for session {envelope.session_id!r} in batch for {session_id!r}",
                    field="sessionId",
                    index=index,
                )

        now = datetime.now(UTC)
        body = encode_batch([envelope.stamped(now) for envelope in envelopes])
        key = partition_key(session_id, self.config.root_prefix, now)
        log = session_logger(logger, session_id, key=key)

        try:
            await retry_with_backoff(
                self.store.put_object,
                key,
                body,
                config=self.config.retry,
                context_msg=key,
            )
        except RetryExhaustedError as e:
            log.error(
                "Flush failed (%d envelopes, %d attempts): %s",
                len(envelopes),
                e.attempts,
                e.last_exception,
            )
            raise FlushFailedError(session_id, e.attempts, e.last_exception) from e

        self.objects_written += 1
        self.envelopes_written += len(envelopes)
        log.debug("Flushed %d envelopes (%d bytes)", len(envelopes), len(body))
        return key

    async def flush_many(self, envelopes: list[EventEnvelope]) -> list[str]:
        """Write a possibly mixed-session batch, one object per session.

        Sessions are written in order of first appearance. A failure stops
        at the failing session; objects already written stay written.

        Returns:
            Keys of the objects written
        """
        by_session: dict[str, list[EventEnvelope]] = {}
        for envelope in envelopes:
            by_session.setdefault(envelope.session_id, []).append(envelope)

        keys: list[str] = []
        for session_id, group in by_session.items():
            key = await self.flush(session_id, group)
            if key is not None:
                keys.append(key)
        return keys
