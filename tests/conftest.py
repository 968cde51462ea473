"""
Shared test configuration and fixtures.

Provides an in-memory store with small listing pages (so pagination is
always exercised), zero-delay retry policies, and store doubles that
inject failures:

1. FlakyObjectStore - fails a number of puts/gets, or listing
2. SlowObjectStore - hangs on selected gets (or all puts) to trigger timeouts
"""

import asyncio
from collections.abc import AsyncIterator

import pytest

from session_recording_storage.config import (
    BufferConfig,
    FlushPolicy,
    PipelineConfig,
    ReaderConfig,
    StoreBackend,
    StoreConfig,
    WriterConfig,
)
from session_recording_storage.envelope import EventEnvelope
from session_recording_storage.exceptions import StoreError
from session_recording_storage.resilience import RetryConfig
from session_recording_storage.stores import InMemoryObjectStore
from session_recording_storage.writer import PartitionedWriter


def fast_retry(max_retries: int = 2) -> RetryConfig:
    """Retry policy that never sleeps."""
    return RetryConfig(max_retries=max_retries, backoff_base=0.0, total_timeout=None)


def envelopes(session_id: str, sequences: list[int]) -> list[EventEnvelope]:
    """Envelopes whose payload records their own sequence."""
    return [
        EventEnvelope(session_id=session_id, sequence=seq, payload={"type": 3, "data": {"n": seq}})
        for seq in sequences
    ]


class FlakyObjectStore(InMemoryObjectStore):
    """
    In-memory store that fails on demand.

    ``fail_puts``/``fail_gets`` count down one failure per call.
    ``broken_keys`` fail every get; ``fail_listing`` breaks listing.
    """

    def __init__(
        self,
        page_size: int = 2,
        fail_puts: int = 0,
        fail_gets: int = 0,
        retryable: bool = True,
    ) -> None:
        super().__init__(page_size=page_size)
        self.fail_puts = fail_puts
        self.fail_gets = fail_gets
        self.retryable = retryable
        self.broken_keys: set[str] = set()
        self.fail_listing = False
        self.put_calls = 0
        self.get_calls = 0

    async def put_object(self, key: str, data: bytes) -> None:
        self.put_calls += 1
        if self.fail_puts > 0:
            self.fail_puts -= 1
            raise StoreError("put_object", key, status_code=503, retryable=self.retryable)
        await super().put_object(key, data)

    async def list_pages(self, prefix: str) -> AsyncIterator[list[str]]:
        pages = 0
        async for page in super().list_pages(prefix):
            # Fails after the first page when there is more than one
            if self.fail_listing and pages:
                raise StoreError("list_objects", prefix, status_code=500)
            pages += 1
            yield page
        if self.fail_listing:
            raise StoreError("list_objects", prefix, status_code=500)

    async def get_object(self, key: str) -> bytes:
        self.get_calls += 1
        if key in self.broken_keys:
            raise StoreError("get_object", key, status_code=500)
        if self.fail_gets > 0:
            self.fail_gets -= 1
            raise StoreError("get_object", key, status_code=503)
        return await super().get_object(key)

    def put_raw(self, key: str, data: bytes) -> None:
        """Place bytes under a key, bypassing the writer."""
        self._objects[key] = data


class SlowObjectStore(InMemoryObjectStore):
    """In-memory store whose gets of ``slow_keys`` never finish.

    ``slow_puts`` makes every put hang as well.
    """

    def __init__(self, page_size: int = 2) -> None:
        super().__init__(page_size=page_size)
        self.slow_keys: set[str] = set()
        self.slow_listing = False
        self.slow_puts = False
        self.put_calls = 0

    async def put_object(self, key: str, data: bytes) -> None:
        self.put_calls += 1
        if self.slow_puts:
            await asyncio.Event().wait()
        await super().put_object(key, data)

    async def list_pages(self, prefix: str) -> AsyncIterator[list[str]]:
        if self.slow_listing:
            await asyncio.Event().wait()
        async for page in super().list_pages(prefix):
            yield page

    async def get_object(self, key: str) -> bytes:
        if key in self.slow_keys:
            await asyncio.Event().wait()
        return await super().get_object(key)


@pytest.fixture
def store() -> FlakyObjectStore:
    """In-memory store with two keys per listing page and no failures."""
    return FlakyObjectStore(page_size=2)


@pytest.fixture
def writer_config() -> WriterConfig:
    return WriterConfig(retry=fast_retry())


@pytest.fixture
def writer(store: FlakyObjectStore, writer_config: WriterConfig) -> PartitionedWriter:
    return PartitionedWriter(store, writer_config)


@pytest.fixture
def reader_config() -> ReaderConfig:
    return ReaderConfig(max_concurrency=4, timeout=5.0, retry=fast_retry())


@pytest.fixture
def pipeline_config(writer_config: WriterConfig, reader_config: ReaderConfig) -> PipelineConfig:
    """DIRECT policy so every ingest lands immediately."""
    return PipelineConfig(
        store=StoreConfig(backend=StoreBackend.MEMORY, page_size=2),
        buffer=BufferConfig(policy=FlushPolicy.DIRECT, retry=fast_retry()),
        writer=writer_config,
        reader=reader_config,
    )
