"""
Session Recording Storage

Ingestion, session-partitioned storage and ordered retrieval of rrweb
session recordings.

Provides:
- A line-delimited codec for event envelopes
- An ingestion buffer with time and size triggered flushing
- A writer that lands each flush as one immutable, session-prefixed object
- A reader that lists, fetches, de-duplicates and orders a session's events
- Object store backends (memory, local filesystem, Azure Blob, S3)

Usage:

    >>> from session_recording_storage import PipelineConfig, RecordingPipeline
    >>> config = PipelineConfig.from_environment()
    >>> async with RecordingPipeline.from_config(config) as pipeline:
    ...     await pipeline.ingest("s1", [{"sequence": 0, "payload": {"type": 4}}])
    ...     stream = await pipeline.get_events("s1")
    ...     for envelope in stream:
    ...         print(envelope.sequence, envelope.payload)

Storage layout:

    rrweb/recordings/sessionId=<session_id>/<timestamp>-<uuid>.jsonl
"""

from .buffer import IngestionBuffer, IngestReceipt
from .config import (
    AzureAuthMethod,
    BufferConfig,
    FlushPolicy,
    PipelineConfig,
    ReaderConfig,
    StoreBackend,
    StoreConfig,
    WriterConfig,
)
from .envelope import EventEnvelope, decode, decode_object, encode
from .exceptions import (
    ConfigurationError,
    EnvelopeEncodeError,
    FlushFailedError,
    InvalidInputError,
    ObjectNotFoundError,
    ParseError,
    PartialReadFailure,
    RecordingStorageError,
    SessionUnavailableError,
    StoreError,
    WriteUnavailableError,
)
from .partitions import partition_key, session_prefix
from .pipeline import EVENTS_CONTENT_TYPE, RecordingPipeline
from .reader import PartitionReader, SessionEventStream
from .request_parsing import parse_ingest_body
from .resilience import RetryConfig
from .stores import InMemoryObjectStore, LocalObjectStore, ObjectStore, create_object_store
from .writer import PartitionedWriter

__all__ = [
    # Pipeline
    "RecordingPipeline",
    "EVENTS_CONTENT_TYPE",
    "IngestionBuffer",
    "IngestReceipt",
    "PartitionedWriter",
    "PartitionReader",
    "SessionEventStream",
    # Envelopes
    "EventEnvelope",
    "encode",
    "decode",
    "decode_object",
    "parse_ingest_body",
    "partition_key",
    "session_prefix",
    # Stores
    "ObjectStore",
    "InMemoryObjectStore",
    "LocalObjectStore",
    "create_object_store",
    # Configuration
    "PipelineConfig",
    "BufferConfig",
    "WriterConfig",
    "ReaderConfig",
    "StoreConfig",
    "StoreBackend",
    "AzureAuthMethod",
    "FlushPolicy",
    "RetryConfig",
    # Exceptions
    "RecordingStorageError",
    "InvalidInputError",
    "EnvelopeEncodeError",
    "ParseError",
    "StoreError",
    "ObjectNotFoundError",
    "FlushFailedError",
    "WriteUnavailableError",
    "SessionUnavailableError",
    "PartialReadFailure",
    "ConfigurationError",
]

__version__ = "0.1.0"
