"""
Ingestion buffer.

Validates incoming batches and hands them to the partitioned writer,
either one object per request (DIRECT) or coalesced into fewer, larger
objects (COALESCED) flushed when a size or age trigger fires.

Every ``ingest`` call resolves only once its batch is durably written,
so an ``IngestReceipt`` is a durability acknowledgement. Batches are
all-or-nothing: a batch is validated completely before anything is
queued, and it is always written inside a single partition object.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .config import BufferConfig, FlushPolicy
from .envelope import EventEnvelope, encoded_size, sequence_problem, session_id_problem
from .exceptions import (
    EnvelopeEncodeError,
    FlushFailedError,
    InvalidInputError,
    WriteUnavailableError,
)
from .resilience import is_retryable
from .writer import PartitionedWriter

logger = logging.getLogger(__name__)


@dataclass
class IngestReceipt:
    """Acknowledgement that a batch was durably stored.

    Attributes:
        session_id: Session the batch belongs to
        envelope_count: Envelopes accepted (0 for an empty batch)
        partition_key: Object holding the batch, None for an empty batch
        accepted_at: When the write was acknowledged
    """

    session_id: str
    envelope_count: int
    partition_key: str | None
    accepted_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    status: str = "accepted"


@dataclass
class BufferStats:
    """Counters exposed for monitoring."""

    requests: int = 0
    envelopes: int = 0
    rejected: int = 0
    flushes: int = 0
    flush_retries: int = 0
    failed_flushes: int = 0
    backpressure_rejections: int = 0


@dataclass
class _PendingRequest:
    session_id: str
    envelopes: list[EventEnvelope]
    size: int
    future: asyncio.Future[str | None]
    enqueued_at: float


def _retrieve_exception(future: asyncio.Future[Any]) -> None:
    # Callers that stopped waiting never look at the result
    if not future.cancelled():
        future.exception()


class IngestionBuffer:
    """Validates, coalesces and flushes event batches.

    One timer task per buffer drives the age trigger. Buffers share no
    state with each other, so any number may run against the same store.

    Example:
        >>> async with IngestionBuffer(writer, BufferConfig(flush_interval=5)) as buffer:
        ...     receipt = await buffer.ingest("s1", [{"sequence": 0, "payload": {...}}])
    """

    def __init__(self, writer: PartitionedWriter, config: BufferConfig | None = None) -> None:
        self.writer = writer
        self.config = config or BufferConfig()
        self._stats = BufferStats()

        self._pending: list[_PendingRequest] = []
        self._pending_bytes = 0
        self._pending_records = 0

        self._flush_lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._timer: asyncio.Task[None] | None = None
        self._flush_tasks: set[asyncio.Task[list[str]]] = set()
        self._closed = False

    async def __aenter__(self) -> IngestionBuffer:
        self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the flush timer (COALESCED policy only). Idempotent."""
        if self._closed:
            raise RuntimeError("IngestionBuffer is closed")
        if self.config.policy != FlushPolicy.COALESCED:
            return
        if self._timer is None or self._timer.done():
            self._timer = asyncio.create_task(self._run_timer(), name="ingestion-buffer-timer")

    async def close(self) -> None:
        """Flush everything pending and stop the timer.

        Requests still pending when close is called are written before it
        returns; new requests are refused.
        """
        if self._closed:
            return
        self._closed = True

        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks, return_exceptions=True)
        await self.flush()

        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None

    @property
    def closed(self) -> bool:
        return self._closed

    # =========================================================================
    # Ingestion
    # =========================================================================

    def validate(
        self, session_id: str, batch: Iterable[EventEnvelope | Mapping[str, Any]]
    ) -> tuple[list[EventEnvelope], int]:
        """Check a whole batch without queuing anything.

        Mappings may use wire (``sessionId``) or snake_case keys; a mapping
        without a session id inherits ``session_id``.

        Returns:
            The envelopes and their total encoded size in bytes

        Raises:
            InvalidInputError: If the session id or any envelope is invalid;
                ``errors`` lists every offending index
        """
        if batch is None or isinstance(batch, (str, bytes, Mapping)):
            raise InvalidInputError("batch must be a list of envelopes", field="batch")

        problem = session_id_problem(session_id)
        if problem is not None:
            raise InvalidInputError(problem, field="sessionId")

        envelopes: list[EventEnvelope] = []
        errors: list[dict[str, Any]] = []
        total = 0

        for index, item in enumerate(batch):
            envelope, error = self._check_item(session_id, item)
            if error is not None:
                errors.append({"index": index, **error})
                continue
            try:
                size = encoded_size(envelope)
            except EnvelopeEncodeError as e:
                errors.append({"index": index, "field": e.field or "envelope", "reason": e.reason})
                continue
            if size > self.config.max_payload_bytes:
                errors.append(
                    {
                        "index": index,
                        "field": "payload",
                        "reason": f"encoded size {size} exceeds {self.config.max_payload_bytes} bytes",
                    }
                )
                continue
            envelopes.append(envelope)
            total += size

        if errors:
            first = errors[0]
            raise InvalidInputError(
                f"{len(errors)} invalid envelope(s); first at index {first['index']}: {first['reason']}",
                field=first.get("field"),
                index=first["index"],
                errors=errors,
            )
        return envelopes, total

    def _check_item(
        self, session_id: str, item: Any
    ) -> tuple[EventEnvelope, None] | tuple[None, dict[str, str]]:
        if isinstance(item, EventEnvelope):
            envelope = item
        elif isinstance(item, Mapping):
            try:
                envelope = EventEnvelope.from_dict(dict(item), session_id=session_id)
            except KeyError as e:
                return None, {"field": str(e.args[0]), "reason": f"missing {e.args[0]}"}
            except (TypeError, ValueError) as e:
                return None, {"field": "receivedAt", "reason": f"invalid receivedAt: {e}"}
        else:
            return None, {"field": "envelope", "reason": "envelope must be an object"}

        if envelope.session_id != session_id:
            return None, {
                "field": "sessionId",
                "reason": f"sessionId {envelope.session_id!r} does not match {session_id!r}",
            }
        problem = sequence_problem(envelope.sequence)
        if problem is not None:
            return None, {"field": "sequence", "reason": problem}
        return envelope, None

    async def ingest(
        self, session_id: str, batch: Iterable[EventEnvelope | Mapping[str, Any]]
    ) -> IngestReceipt:
        """Accept one batch and return once it is durably written.

        Raises:
            InvalidInputError: If the batch fails validation (nothing written)
            WriteUnavailableError: If the batch could not be written; the
                caller may retry the same batch
        """
        if self._closed:
            raise WriteUnavailableError(session_id, "buffer closed")

        try:
            envelopes, size = self.validate(session_id, batch)
        except InvalidInputError:
            self._stats.rejected += 1
            raise

        self._stats.requests += 1
        if not envelopes:
            return IngestReceipt(session_id, 0, None)

        if self.config.policy == FlushPolicy.DIRECT:
            key = await self._write(session_id, envelopes)
            self._stats.envelopes += len(envelopes)
            return IngestReceipt(session_id, len(envelopes), key)

        key = await self._enqueue(session_id, envelopes, size)
        self._stats.envelopes += len(envelopes)
        return IngestReceipt(session_id, len(envelopes), key)

    async def _enqueue(self, session_id: str, envelopes: list[EventEnvelope], size: int) -> str | None:
        if size > self.config.max_pending_bytes:
            # Has to land in a single object however much is pending, so
            # waiting for room would never end
            logger.debug(
                "Writing %d bytes for session %s directly (above max_pending_bytes)",
                size,
                session_id,
            )
            return await self._write(session_id, envelopes)

        if self._pending_bytes + size > self.config.max_pending_bytes:
            # One attempt to drain before refusing
            await self.flush()
            if self._pending_bytes + size > self.config.max_pending_bytes:
                self._stats.backpressure_rejections += 1
                logger.warning(
                    "Backpressure: refusing %d bytes for session %s (%d pending)",
                    size,
                    session_id,
                    self._pending_bytes,
                )
                raise WriteUnavailableError(session_id, "backpressure")

        loop = asyncio.get_running_loop()
        future: asyncio.Future[str | None] = loop.create_future()
        future.add_done_callback(_retrieve_exception)
        self._pending.append(_PendingRequest(session_id, envelopes, size, future, loop.time()))
        self._pending_bytes += size
        self._pending_records += len(envelopes)

        if (
            self._closed
            or self._pending_bytes >= self.config.max_buffer_bytes
            or self._pending_records >= self.config.max_buffer_records
        ):
            self._spawn_flush()
        else:
            self.start()
            self._wakeup.set()

        # Shielded: a caller that stops waiting does not pull its batch back out
        return await asyncio.shield(future)

    # =========================================================================
    # Flushing
    # =========================================================================

    def _spawn_flush(self) -> None:
        task = asyncio.create_task(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_tasks.discard)

    async def flush(self) -> list[str]:
        """Write everything pending now, one object per session.

        Failures are delivered to the waiting callers of the affected
        session; other sessions are unaffected.

        Returns:
            Keys of the objects written
        """
        async with self._flush_lock:
            if not self._pending:
                return []

            pending = self._pending
            self._pending = []
            self._pending_bytes = 0
            self._pending_records = 0

            groups: dict[str, list[_PendingRequest]] = {}
            for request in pending:
                groups.setdefault(request.session_id, []).append(request)

            keys: list[str] = []
            remaining = list(groups.items())
            while remaining:
                session_id, requests = remaining[0]
                envelopes = [e for request in requests for e in request.envelopes]
                try:
                    key = await self._write(session_id, envelopes)
                except asyncio.CancelledError:
                    self._requeue([r for _, group in remaining for r in group])
                    raise
                except (WriteUnavailableError, InvalidInputError) as e:
                    self._fail(requests, e)
                except Exception as e:
                    logger.exception("Unexpected error flushing session %s", session_id)
                    self._fail(requests, WriteUnavailableError(session_id, "unexpected flush error", e))
                else:
                    keys.append(key)
                    for request in requests:
                        if not request.future.done():
                            request.future.set_result(key)
                remaining.pop(0)

            return keys

    @staticmethod
    def _fail(requests: list[_PendingRequest], error: Exception) -> None:
        for request in requests:
            if not request.future.done():
                request.future.set_exception(error)

    def _requeue(self, requests: list[_PendingRequest]) -> None:
        self._pending[:0] = requests
        self._pending_bytes += sum(r.size for r in requests)
        self._pending_records += sum(len(r.envelopes) for r in requests)
        self._wakeup.set()

    async def _write(self, session_id: str, envelopes: list[EventEnvelope]) -> str:
        """Hand one batch to the writer, retrying failed flushes.

        ``config.retry.total_timeout`` bounds the whole exchange, including
        a writer call that hangs.

        Raises:
            WriteUnavailableError: Once the retry budget is spent
        """
        cfg = self.config.retry
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = None if cfg.total_timeout is None else started + cfg.total_timeout
        attempt = 0
        while True:
            try:
                async with asyncio.timeout_at(deadline):
                    key = await self.writer.write_partition(session_id, envelopes)
            except (FlushFailedError, TimeoutError) as e:
                attempt += 1
                cause = e.cause if isinstance(e, FlushFailedError) else e
                retryable = cause is None or is_retryable(cause, cfg)
                delay = cfg.delay_for(attempt - 1)
                over_budget = deadline is not None and loop.time() + delay >= deadline
                if not retryable or attempt > cfg.max_retries or over_budget:
                    self._stats.failed_flushes += 1
                    logger.error(
                        "Giving up on %d envelopes for session %s after %d flush attempt(s)",
                        len(envelopes),
                        session_id,
                        attempt,
                    )
                    raise WriteUnavailableError(
                        session_id, f"flush failed after {attempt} attempt(s)", e
                    ) from e
                self._stats.flush_retries += 1
                logger.warning(
                    "Flush for session %s failed (attempt %d), retrying in %.2fs",
                    session_id,
                    attempt,
                    delay,
                )
                await asyncio.sleep(delay)
            else:
                self._stats.flushes += 1
                return key

    async def _run_timer(self) -> None:
        """Flush pending requests once the oldest reaches flush_interval."""
        loop = asyncio.get_running_loop()
        while not self._closed:
            await self._wakeup.wait()
            self._wakeup.clear()
            while self._pending and not self._closed:
                due = self._pending[0].enqueued_at + self.config.flush_interval
                delay = due - loop.time()
                if delay > 0:
                    await asyncio.sleep(delay)
                    continue
                await self.flush()

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def pending_bytes(self) -> int:
        return self._pending_bytes

    @property
    def pending_records(self) -> int:
        return self._pending_records

    def stats(self) -> dict[str, Any]:
        """Counters plus current buffer occupancy."""
        return {
            "policy": self.config.policy.value,
            "requests": self._stats.requests,
            "envelopes": self._stats.envelopes,
            "rejected": self._stats.rejected,
            "flushes": self._stats.flushes,
            "flush_retries": self._stats.flush_retries,
            "failed_flushes": self._stats.failed_flushes,
            "backpressure_rejections": self._stats.backpressure_rejections,
            "pending_requests": len(self._pending),
            "pending_bytes": self._pending_bytes,
            "pending_records": self._pending_records,
        }
