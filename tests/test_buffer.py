"""
Tests for the ingestion buffer.

Covers validation, both flush policies, durability acknowledgement,
backpressure and failure isolation between sessions.
"""

import asyncio

import pytest

from session_recording_storage.buffer import IngestionBuffer
from session_recording_storage.config import BufferConfig, FlushPolicy, WriterConfig
from session_recording_storage.envelope import EventEnvelope, decode_object
from session_recording_storage.exceptions import (
    ConfigurationError,
    InvalidInputError,
    WriteUnavailableError,
)
from session_recording_storage.resilience import RetryConfig
from session_recording_storage.stores import InMemoryObjectStore
from session_recording_storage.writer import PartitionedWriter

from .conftest import FlakyObjectStore, SlowObjectStore, envelopes, fast_retry


def make_buffer(store: InMemoryObjectStore, writer_retries: int = 1, **overrides) -> IngestionBuffer:
    settings = {"policy": FlushPolicy.COALESCED, "flush_interval": 60.0, "retry": fast_retry()}
    settings.update(overrides)
    writer = PartitionedWriter(store, WriterConfig(retry=fast_retry(writer_retries)))
    return IngestionBuffer(writer, BufferConfig(**settings))


class SessionFailingStore(InMemoryObjectStore):
    """Refuses every put for one session."""

    def __init__(self, failing_session: str) -> None:
        super().__init__(page_size=2)
        self.failing_prefix = f"sessionId={failing_session}/"

    async def put_object(self, key: str, data: bytes) -> None:
        if self.failing_prefix in key:
            raise ConnectionError("storage endpoint unreachable")
        await super().put_object(key, data)


class TestValidation:
    """Tests for batch validation."""

    def test_accepts_envelopes_and_mappings(self, store: FlakyObjectStore) -> None:
        """Test every accepted input shape."""
        buffer = make_buffer(store)
        batch = [
            EventEnvelope("s1", 0, {"type": 4}),
            {"sessionId": "s1", "sequence": 1, "payload": {"type": 2}},
            {"sequence": 2, "payload": {"type": 3}},
            {"session_id": "s1", "sequence": 3, "payload": None},
        ]

        result, size = buffer.validate("s1", batch)

        assert [e.sequence for e in result] == [0, 1, 2, 3]
        assert all(e.session_id == "s1" for e in result)
        assert size > 0

    def test_reports_every_bad_envelope(self, store: FlakyObjectStore) -> None:
        """Test the whole batch is checked and every offender listed."""
        buffer = make_buffer(store)
        batch = [
            {"sequence": 0, "payload": {}},
            {"sequence": -1, "payload": {}},
            {"sequence": 2, "payload": {}},
            {"sequence": 3},
            "not an envelope",
        ]

        with pytest.raises(InvalidInputError) as exc_info:
            buffer.validate("s1", batch)

        error = exc_info.value
        assert [e["index"] for e in error.errors] == [1, 3, 4]
        assert error.index == 1
        assert error.errors[0]["field"] == "sequence"
        assert error.errors[1]["field"] == "payload"

    def test_rejects_foreign_session(self, store: FlakyObjectStore) -> None:
        """Test an envelope of another session fails the batch."""
        buffer = make_buffer(store)

        with pytest.raises(InvalidInputError) as exc_info:
            buffer.validate("s1", [{"sessionId": "s2", "sequence": 0, "payload": {}}])

        assert exc_info.value.field == "sessionId"

    @pytest.mark.parametrize("session_id", ["", "a/b", None])
    def test_rejects_bad_session_id(self, store: FlakyObjectStore, session_id: object) -> None:
        """Test the request's session id is validated."""
        buffer = make_buffer(store)
        with pytest.raises(InvalidInputError):
            buffer.validate(session_id, [])  # type: ignore[arg-type]

    @pytest.mark.parametrize("batch", [None, {"sequence": 0, "payload": {}}, "[]", b"[]"])
    def test_rejects_non_list_batch(self, store: FlakyObjectStore, batch: object) -> None:
        """Test a batch must be a sequence of envelopes."""
        buffer = make_buffer(store)
        with pytest.raises(InvalidInputError) as exc_info:
            buffer.validate("s1", batch)  # type: ignore[arg-type]
        assert exc_info.value.field == "batch"

    def test_rejects_oversized_payload(self, store: FlakyObjectStore) -> None:
        """Test envelopes beyond max_payload_bytes are refused."""
        buffer = make_buffer(store, max_payload_bytes=200)
        batch = [{"sequence": 0, "payload": {"html": "x" * 500}}]

        with pytest.raises(InvalidInputError) as exc_info:
            buffer.validate("s1", batch)

        assert exc_info.value.field == "payload"

    def test_rejects_unserializable_payload(self, store: FlakyObjectStore) -> None:
        """Test payloads that cannot be encoded fail validation."""
        buffer = make_buffer(store)
        with pytest.raises(InvalidInputError):
            buffer.validate("s1", [{"sequence": 0, "payload": {1, 2}}])

    async def test_invalid_batch_writes_nothing(self, store: FlakyObjectStore) -> None:
        """Test a rejected batch is all-or-nothing."""
        buffer = make_buffer(store, policy=FlushPolicy.DIRECT)
        batch = [{"sequence": 0, "payload": {}}, {"sequence": "x", "payload": {}}]

        with pytest.raises(InvalidInputError):
            await buffer.ingest("s1", batch)

        assert len(store) == 0
        assert buffer.stats()["rejected"] == 1


class TestDirectPolicy:
    """Tests for the DIRECT flush policy."""

    async def test_one_object_per_request(self, store: FlakyObjectStore) -> None:
        """Test every request is written at once as its own object."""
        async with make_buffer(store, policy=FlushPolicy.DIRECT) as buffer:
            first = await buffer.ingest("s1", envelopes("s1", [0, 1]))
            second = await buffer.ingest("s1", envelopes("s1", [2]))

        assert first.partition_key != second.partition_key
        assert store.keys() == sorted([first.partition_key, second.partition_key])
        assert first.envelope_count == 2
        assert first.status == "accepted"

    async def test_empty_batch(self, store: FlakyObjectStore) -> None:
        """Test an empty batch is acknowledged without a write."""
        buffer = make_buffer(store, policy=FlushPolicy.DIRECT)

        receipt = await buffer.ingest("s1", [])

        assert receipt.envelope_count == 0
        assert receipt.partition_key is None
        assert len(store) == 0

    async def test_transient_flush_failure_recovers(self) -> None:
        """Test the buffer retries a flush the writer gave up on."""
        # Writer makes 2 puts per flush; the third put overall succeeds
        store = FlakyObjectStore(fail_puts=3)
        buffer = make_buffer(store, policy=FlushPolicy.DIRECT, retry=fast_retry(2))

        receipt = await buffer.ingest("s1", envelopes("s1", [0]))

        assert store.keys() == [receipt.partition_key]
        assert buffer.stats()["flush_retries"] == 1

    async def test_persistent_failure_raises_write_unavailable(self) -> None:
        """Test the caller learns the batch was not stored."""
        store = FlakyObjectStore(fail_puts=100)
        buffer = make_buffer(store, policy=FlushPolicy.DIRECT, retry=fast_retry(1))

        with pytest.raises(WriteUnavailableError) as exc_info:
            await buffer.ingest("s1", envelopes("s1", [0]))

        assert exc_info.value.session_id == "s1"
        assert store.put_calls == 4
        assert len(store) == 0
        stats = buffer.stats()
        assert stats["failed_flushes"] == 1
        assert stats["envelopes"] == 0

    async def test_hung_store_bounded_by_buffer_budget(self) -> None:
        """Test a writer call that never returns fails within the buffer's time budget."""
        store = SlowObjectStore()
        store.slow_puts = True
        retry = RetryConfig(max_retries=3, backoff_base=0.0, total_timeout=0.2)
        buffer = make_buffer(store, policy=FlushPolicy.DIRECT, retry=retry)
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(WriteUnavailableError) as exc_info:
            await asyncio.wait_for(buffer.ingest("s1", envelopes("s1", [0])), timeout=5)

        assert loop.time() - started < 1.0
        assert isinstance(exc_info.value.cause, TimeoutError)
        assert buffer.stats()["failed_flushes"] == 1
        assert len(store) == 0

    async def test_resubmitting_after_failure(self) -> None:
        """Test a failed batch can be sent again once storage recovers."""
        store = FlakyObjectStore(fail_puts=4)
        buffer = make_buffer(store, policy=FlushPolicy.DIRECT, retry=fast_retry(1))
        batch = envelopes("s1", [0, 1])

        with pytest.raises(WriteUnavailableError):
            await buffer.ingest("s1", batch)
        receipt = await buffer.ingest("s1", batch)

        assert store.keys() == [receipt.partition_key]


class TestCoalescedPolicy:
    """Tests for the COALESCED flush policy."""

    async def test_record_trigger_coalesces(self, store: FlakyObjectStore) -> None:
        """Test requests share one object once the record trigger fires."""
        async with make_buffer(store, max_buffer_records=3) as buffer:
            receipts = await asyncio.wait_for(
                asyncio.gather(
                    buffer.ingest("s1", envelopes("s1", [0])),
                    buffer.ingest("s1", envelopes("s1", [1])),
                    buffer.ingest("s1", envelopes("s1", [2])),
                ),
                timeout=5,
            )

        keys = {r.partition_key for r in receipts}
        assert len(keys) == 1
        assert store.keys() == list(keys)
        body = decode_object(await store.get_object(keys.pop()))
        assert [e.sequence for e in body.envelopes] == [0, 1, 2]

    async def test_byte_trigger(self, store: FlakyObjectStore) -> None:
        """Test the byte trigger flushes without waiting for the timer."""
        async with make_buffer(store, max_buffer_bytes=64, max_pending_bytes=4096) as buffer:
            receipt = await asyncio.wait_for(
                buffer.ingest("s1", envelopes("s1", [0, 1])), timeout=5
            )

        assert receipt.partition_key in store.keys()

    async def test_time_trigger(self, store: FlakyObjectStore) -> None:
        """Test a lone request is flushed once it reaches flush_interval."""
        async with make_buffer(store, flush_interval=0.05) as buffer:
            receipt = await asyncio.wait_for(buffer.ingest("s1", envelopes("s1", [0])), timeout=5)

        assert store.keys() == [receipt.partition_key]

    async def test_one_object_per_session(self, store: FlakyObjectStore) -> None:
        """Test a flush never mixes sessions in one object."""
        async with make_buffer(store, max_buffer_records=2) as buffer:
            a, b = await asyncio.wait_for(
                asyncio.gather(
                    buffer.ingest("a", envelopes("a", [0])),
                    buffer.ingest("b", envelopes("b", [0])),
                ),
                timeout=5,
            )

        assert a.partition_key != b.partition_key
        assert "sessionId=a/" in a.partition_key
        assert "sessionId=b/" in b.partition_key

    async def test_close_flushes_pending(self, store: FlakyObjectStore) -> None:
        """Test close writes everything still buffered."""
        buffer = make_buffer(store)
        buffer.start()
        task = asyncio.create_task(buffer.ingest("s1", envelopes("s1", [0, 1])))
        await asyncio.sleep(0.01)
        assert buffer.pending_records == 2
        assert len(store) == 0

        await buffer.close()
        receipt = await task

        assert store.keys() == [receipt.partition_key]
        assert buffer.pending_records == 0

    async def test_ingest_after_close_refused(self, store: FlakyObjectStore) -> None:
        """Test a closed buffer accepts nothing."""
        buffer = make_buffer(store)
        await buffer.close()

        assert buffer.closed
        with pytest.raises(WriteUnavailableError):
            await buffer.ingest("s1", envelopes("s1", [0]))
        with pytest.raises(RuntimeError):
            buffer.start()

    async def test_cancelled_caller_keeps_batch(self, store: FlakyObjectStore) -> None:
        """Test a caller that stops waiting does not withdraw its batch."""
        async with make_buffer(store) as buffer:
            task = asyncio.create_task(buffer.ingest("s1", envelopes("s1", [0])))
            await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

            keys = await buffer.flush()

        assert store.keys() == keys
        assert len(keys) == 1

    async def test_failure_isolated_to_session(self) -> None:
        """Test one session's storage failure does not fail another's requests."""
        store = SessionFailingStore("bad")
        async with make_buffer(store, max_buffer_records=2, retry=fast_retry(1)) as buffer:
            good, bad = await asyncio.wait_for(
                asyncio.gather(
                    buffer.ingest("good", envelopes("good", [0])),
                    buffer.ingest("bad", envelopes("bad", [0])),
                    return_exceptions=True,
                ),
                timeout=5,
            )

        assert isinstance(bad, WriteUnavailableError)
        assert bad.session_id == "bad"
        assert not isinstance(good, BaseException)
        assert store.keys() == [good.partition_key]

    async def test_request_above_pending_limit_written_directly(
        self, store: FlakyObjectStore
    ) -> None:
        """Test a request too large to ever queue is stored as one object, not refused."""
        async with make_buffer(store, max_buffer_bytes=100, max_pending_bytes=100) as buffer:
            receipt = await asyncio.wait_for(
                buffer.ingest("s1", envelopes("s1", [0, 1, 2])), timeout=5
            )
            stats = buffer.stats()

        assert store.keys() == [receipt.partition_key]
        stored = decode_object(await store.get_object(receipt.partition_key))
        assert [e.sequence for e in stored.envelopes] == [0, 1, 2]
        assert stats["backpressure_rejections"] == 0
        assert stats["flushes"] == 1

    async def test_stats(self, store: FlakyObjectStore) -> None:
        """Test counters after a coalesced flush."""
        async with make_buffer(store, max_buffer_records=2) as buffer:
            await asyncio.gather(
                buffer.ingest("s1", envelopes("s1", [0])),
                buffer.ingest("s1", envelopes("s1", [1])),
            )
            stats = buffer.stats()

        assert stats["policy"] == "coalesced"
        assert stats["requests"] == 2
        assert stats["envelopes"] == 2
        assert stats["flushes"] == 1
        assert stats["pending_requests"] == 0


class TestBufferConfig:
    """Tests for buffer configuration checks."""

    def test_rejects_non_positive_interval(self) -> None:
        """Test flush_interval must be positive."""
        with pytest.raises(ConfigurationError):
            BufferConfig(flush_interval=0)

    def test_rejects_pending_below_buffer(self) -> None:
        """Test the hard ceiling cannot be below the flush trigger."""
        with pytest.raises(ConfigurationError):
            BufferConfig(max_buffer_bytes=1000, max_pending_bytes=10)
