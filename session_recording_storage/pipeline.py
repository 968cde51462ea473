"""
Recording pipeline facade.

The boundary the front door talks to. It wires one ingestion buffer,
one partitioned writer and one partition reader onto an object store:

    client -> ingest() -> buffer -> writer -> object store
    client <- get_events() <- reader (list + fetch + merge) <-'

Visibility is eventual: with the COALESCED policy a batch lands in
storage within ``buffer.flush_interval`` seconds, and ``ingest`` only
returns after that. Readers that poll should expect empty or partial
results until then; ``wait_for_events`` packages that polling.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Iterable, Mapping
from typing import Any

from .buffer import IngestionBuffer, IngestReceipt
from .config import PipelineConfig
from .envelope import EventEnvelope
from .exceptions import PartialReadFailure
from .reader import DEFAULT_TIMEOUT, PartitionReader, SessionEventStream
from .stores import create_object_store
from .stores.base import ObjectStore
from .writer import PartitionedWriter

logger = logging.getLogger(__name__)

# Content type for the line-delimited events response
EVENTS_CONTENT_TYPE = "application/jsonl+json"


class RecordingPipeline:
    """Ingestion and retrieval of session recordings.

    Example:
        >>> async with RecordingPipeline(InMemoryObjectStore()) as pipeline:
        ...     await pipeline.ingest("s1", [{"sequence": 0, "payload": {"type": 4}}])
        ...     stream = await pipeline.get_events("s1")
    """

    def __init__(
        self,
        store: ObjectStore,
        config: PipelineConfig | None = None,
        *,
        owns_store: bool = False,
    ) -> None:
        """Wire the pipeline components onto ``store``.

        Args:
            store: Object store holding the partitions
            config: Pipeline configuration (defaults if None)
            owns_store: Close the store when the pipeline closes
        """
        self.config = config or PipelineConfig()
        self.store = store
        self.writer = PartitionedWriter(store, self.config.writer)
        self.buffer = IngestionBuffer(self.writer, self.config.buffer)
        self.reader = PartitionReader(store, self.config.reader, self.config.writer.root_prefix)
        self._owns_store = owns_store

    @classmethod
    def from_config(cls, config: PipelineConfig) -> RecordingPipeline:
        """Build the configured object store and a pipeline that owns it."""
        return cls(create_object_store(config.store), config, owns_store=True)

    async def __aenter__(self) -> RecordingPipeline:
        self.buffer.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Flush pending batches, then release the store if owned."""
        try:
            await self.buffer.close()
        finally:
            if self._owns_store:
                await self.store.close()

    async def ingest(
        self, session_id: str, batch: Iterable[EventEnvelope | Mapping[str, Any]]
    ) -> IngestReceipt:
        """Accept one batch of envelopes for a session.

        Returns:
            A receipt once the batch is durably stored

        Raises:
            InvalidInputError: If any envelope is malformed; nothing is stored
            WriteUnavailableError: If storage failed after retries; the same
                batch may be resubmitted safely
        """
        return await self.buffer.ingest(session_id, batch)

    async def get_events(
        self, session_id: str, timeout: float | None = DEFAULT_TIMEOUT
    ) -> SessionEventStream:
        """Read the ordered, de-duplicated event stream of a session.

        Raises:
            SessionUnavailableError: If the session's partitions cannot be listed
            PartialReadFailure: If only part of the session could be read
        """
        return await self.reader.read_session(session_id, timeout)

    async def iter_event_lines(
        self, session_id: str, timeout: float | None = DEFAULT_TIMEOUT
    ) -> AsyncIterator[bytes]:
        """Yield the session's events as encoded lines for passthrough.

        Serve with ``EVENTS_CONTENT_TYPE``.
        """
        stream = await self.get_events(session_id, timeout)
        for line in stream.iter_lines():
            yield line

    async def wait_for_events(
        self,
        session_id: str,
        min_count: int = 1,
        timeout: float = 60.0,
        poll_interval: float = 1.0,
    ) -> SessionEventStream:
        """Poll until at least ``min_count`` envelopes are readable.

        Partial reads count as "not yet" and are retried.

        Raises:
            TimeoutError: If the events are not visible within ``timeout``
            SessionUnavailableError: If listing fails
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        seen = 0
        while True:
            try:
                stream = await self.get_events(session_id)
            except PartialReadFailure as e:
                seen = len(e.stream)
                logger.debug("Partial read of %s while waiting: %s", session_id, e.reason)
            else:
                if len(stream) >= min_count:
                    return stream
                seen = len(stream)

            if loop.time() + poll_interval > deadline:
                raise TimeoutError(
                    f"Only {seen} of {min_count} events visible for session {session_id} "
                    f"after {timeout}s"
                )
            await asyncio.sleep(poll_interval)

    def stats(self) -> dict[str, Any]:
        """Buffer counters plus writer totals."""
        return {
            **self.buffer.stats(),
            "objects_written": self.writer.objects_written,
            "envelopes_written": self.writer.envelopes_written,
        }
