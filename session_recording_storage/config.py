"""
Pipeline configuration.

All knobs are plain dataclasses with production defaults. A complete
``PipelineConfig`` can be built directly, from environment variables,
or from a YAML settings file:

```yaml
store:
  backend: local
  local_path: /var/lib/recordings
buffer:
  policy: coalesced
  flush_interval: 60
  max_buffer_bytes: 1048576
  retry:
    max_retries: 2
writer:
  root_prefix: rrweb/recordings
reader:
  max_concurrency: 16
  timeout: 30
```

Configuration is passed into components at construction time; nothing
reads a global endpoint.
"""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigurationError
from .resilience import RetryConfig
from .stores.base import DEFAULT_PAGE_SIZE

ENV_PREFIX = "RECORDING_"

DEFAULT_ROOT_PREFIX = "rrweb/recordings"

# Below the 1 MB per-record ceiling of managed streaming transports
DEFAULT_MAX_PAYLOAD_BYTES = 1_000_000


class StoreBackend(Enum):
    """Which object store implementation to use."""

    MEMORY = "memory"
    LOCAL = "local"
    AZURE_BLOB = "azure_blob"
    S3 = "s3"


class AzureAuthMethod(Enum):
    """Authentication method for Azure Blob Storage.

    CONNECTION_STRING: Account connection string (development only)
    DEFAULT_CREDENTIAL: Azure DefaultAzureCredential (recommended)
    MANAGED_IDENTITY: Azure Managed Identity explicitly
    """

    CONNECTION_STRING = "connection_string"
    DEFAULT_CREDENTIAL = "default_credential"
    MANAGED_IDENTITY = "managed_identity"


class FlushPolicy(Enum):
    """When the ingestion buffer hands batches to the writer.

    DIRECT: every request becomes its own partition object at once
    COALESCED: requests accumulate until a size or time trigger fires
    """

    DIRECT = "direct"
    COALESCED = "coalesced"


@dataclass
class StoreConfig:
    """Object store selection and connection settings.

    Attributes:
        backend: Which store implementation to build
        page_size: Keys per listing page (memory and local stores)
        local_path: Root directory for the local store

        azure_account_url: Blob service URL (https://<account>.blob.core.windows.net)
        azure_container: Blob container holding the recordings
        azure_auth_method: Authentication method (default: DEFAULT_CREDENTIAL)
        azure_connection_string: Only used with CONNECTION_STRING auth
        azure_client_id: User-assigned managed identity client id

        s3_bucket: Bucket holding the recordings
        s3_region: AWS region name
        s3_endpoint_url: Custom endpoint (e.g. localstack)
    """

    backend: StoreBackend = StoreBackend.LOCAL
    page_size: int = DEFAULT_PAGE_SIZE
    local_path: str | None = None

    azure_account_url: str | None = None
    azure_container: str = "recordings"
    azure_auth_method: AzureAuthMethod = AzureAuthMethod.DEFAULT_CREDENTIAL
    azure_connection_string: str | None = None
    azure_client_id: str | None = None

    s3_bucket: str | None = None
    s3_region: str | None = None
    s3_endpoint_url: str | None = None

    def resolved_local_path(self) -> Path:
        """Local store root, defaulting to ~/.session-recordings."""
        if self.local_path:
            return Path(self.local_path).expanduser()
        return Path.home() / ".session-recordings"


@dataclass
class BufferConfig:
    """Ingestion buffer policy.

    Attributes:
        policy: DIRECT or COALESCED flushing
        flush_interval: Max seconds a pending request waits (time trigger)
        max_buffer_bytes: Pending encoded bytes that trigger a flush
        max_buffer_records: Pending envelopes that trigger a flush
        max_pending_bytes: Hard ceiling; requests beyond it are refused
        max_payload_bytes: Largest accepted encoded envelope
        retry: Retry policy for failed flushes
    """

    policy: FlushPolicy = FlushPolicy.COALESCED
    flush_interval: float = 60.0
    max_buffer_bytes: int = 1024 * 1024
    max_buffer_records: int = 500
    max_pending_bytes: int = 8 * 1024 * 1024
    max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES
    retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(max_retries=2, backoff_base=0.5, total_timeout=10.0)
    )

    def __post_init__(self) -> None:
        if self.flush_interval <= 0:
            raise ConfigurationError("buffer.flush_interval", "must be positive")
        if self.max_buffer_bytes < 1 or self.max_buffer_records < 1:
            raise ConfigurationError("buffer", "size triggers must be at least 1")
        if self.max_pending_bytes < self.max_buffer_bytes:
            raise ConfigurationError(
                "buffer.max_pending_bytes", "must be at least max_buffer_bytes"
            )


@dataclass
class WriterConfig:
    """Partitioned writer settings.

    Attributes:
        root_prefix: Key root; partitions live under
            ``<root_prefix>/sessionId=<id>/``
        retry: Retry policy for object puts
    """

    root_prefix: str = DEFAULT_ROOT_PREFIX
    retry: RetryConfig = field(default_factory=RetryConfig)

    def __post_init__(self) -> None:
        self.root_prefix = self.root_prefix.strip("/")
        if not self.root_prefix:
            raise ConfigurationError("writer.root_prefix", "must not be empty")


@dataclass
class ReaderConfig:
    """Partition reader settings.

    Attributes:
        max_concurrency: Parallel object fetches per session read
        timeout: Default read timeout in seconds (None: no limit)
        retry: Retry policy for object gets
    """

    max_concurrency: int = 16
    timeout: float | None = 30.0
    retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(max_retries=2, backoff_base=0.1, total_timeout=5.0)
    )

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ConfigurationError("reader.max_concurrency", "must be at least 1")


@dataclass
class PipelineConfig:
    """Complete configuration for a recording pipeline."""

    store: StoreConfig = field(default_factory=StoreConfig)
    buffer: BufferConfig = field(default_factory=BufferConfig)
    writer: WriterConfig = field(default_factory=WriterConfig)
    reader: ReaderConfig = field(default_factory=ReaderConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineConfig:
        """Build configuration from a nested dictionary (e.g. parsed YAML).

        Unknown keys raise ConfigurationError; missing keys keep defaults.
        """
        return cls(
            store=_build(StoreConfig, data.get("store") or {}, "store"),
            buffer=_build(BufferConfig, data.get("buffer") or {}, "buffer"),
            writer=_build(WriterConfig, data.get("writer") or {}, "writer"),
            reader=_build(ReaderConfig, data.get("reader") or {}, "reader"),
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> PipelineConfig:
        """Load configuration from a YAML settings file."""
        config_path = Path(path).expanduser()
        try:
            content = config_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(str(config_path), f"cannot read: {e}") from e
        try:
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(str(config_path), f"invalid YAML: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(str(config_path), "top level must be a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_environment(cls, environ: dict[str, str] | None = None) -> PipelineConfig:
        """Create configuration from environment variables.

        Environment Variables:
            RECORDING_STORE_BACKEND: memory, local, azure_blob or s3 (default: local)
            RECORDING_LOCAL_PATH: Local store root
            RECORDING_AZURE_ACCOUNT_URL: Blob service URL
            RECORDING_AZURE_CONTAINER: Blob container (default: recordings)
            RECORDING_AZURE_AUTH_METHOD: connection_string, default_credential
                or managed_identity
            RECORDING_AZURE_CONNECTION_STRING: Connection string
            AZURE_CLIENT_ID: Managed identity client id
            RECORDING_S3_BUCKET / RECORDING_S3_REGION / RECORDING_S3_ENDPOINT_URL
            RECORDING_ROOT_PREFIX: Key root (default: rrweb/recordings)
            RECORDING_FLUSH_POLICY: direct or coalesced
            RECORDING_FLUSH_INTERVAL: Seconds
            RECORDING_MAX_BUFFER_BYTES / RECORDING_MAX_BUFFER_RECORDS
            RECORDING_MAX_PAYLOAD_BYTES
            RECORDING_READ_TIMEOUT: Seconds, or "none"
            RECORDING_READ_CONCURRENCY
        """
        env = os.environ if environ is None else environ

        def get(name: str, default: str | None = None) -> str | None:
            return env.get(ENV_PREFIX + name, default)

        store = StoreConfig(
            backend=_enum(StoreBackend, get("STORE_BACKEND", "local"), "STORE_BACKEND"),
            local_path=get("LOCAL_PATH"),
            azure_account_url=get("AZURE_ACCOUNT_URL"),
            azure_container=get("AZURE_CONTAINER", "recordings") or "recordings",
            azure_auth_method=_enum(
                AzureAuthMethod, get("AZURE_AUTH_METHOD", "default_credential"), "AZURE_AUTH_METHOD"
            ),
            azure_connection_string=get("AZURE_CONNECTION_STRING"),
            azure_client_id=env.get("AZURE_CLIENT_ID"),
            s3_bucket=get("S3_BUCKET"),
            s3_region=get("S3_REGION"),
            s3_endpoint_url=get("S3_ENDPOINT_URL"),
        )

        defaults = BufferConfig()
        buffer = BufferConfig(
            policy=_enum(FlushPolicy, get("FLUSH_POLICY", "coalesced"), "FLUSH_POLICY"),
            flush_interval=_number(float, get("FLUSH_INTERVAL"), defaults.flush_interval, "FLUSH_INTERVAL"),
            max_buffer_bytes=_number(int, get("MAX_BUFFER_BYTES"), defaults.max_buffer_bytes, "MAX_BUFFER_BYTES"),
            max_buffer_records=_number(
                int, get("MAX_BUFFER_RECORDS"), defaults.max_buffer_records, "MAX_BUFFER_RECORDS"
            ),
            max_pending_bytes=_number(
                int, get("MAX_PENDING_BYTES"), defaults.max_pending_bytes, "MAX_PENDING_BYTES"
            ),
            max_payload_bytes=_number(
                int, get("MAX_PAYLOAD_BYTES"), defaults.max_payload_bytes, "MAX_PAYLOAD_BYTES"
            ),
        )

        writer = WriterConfig(root_prefix=get("ROOT_PREFIX", DEFAULT_ROOT_PREFIX) or DEFAULT_ROOT_PREFIX)

        raw_timeout = get("READ_TIMEOUT")
        reader_defaults = ReaderConfig()
        if raw_timeout is not None and raw_timeout.strip().lower() == "none":
            timeout = None
        else:
            timeout = _number(float, raw_timeout, reader_defaults.timeout, "READ_TIMEOUT")
        reader = ReaderConfig(
            max_concurrency=_number(
                int, get("READ_CONCURRENCY"), reader_defaults.max_concurrency, "READ_CONCURRENCY"
            ),
            timeout=timeout,
        )

        return cls(store=store, buffer=buffer, writer=writer, reader=reader)


def _enum(enum_cls: type[Enum], value: Any, name: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as e:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(name, f"expected one of {allowed}, got {value!r}") from e


def _number(kind: type, raw: str | None, default: Any, name: str) -> Any:
    if raw is None or raw == "":
        return default
    try:
        return kind(raw)
    except ValueError as e:
        raise ConfigurationError(name, f"expected {kind.__name__}, got {raw!r}") from e


_ENUM_FIELDS: dict[str, type[Enum]] = {
    "backend": StoreBackend,
    "azure_auth_method": AzureAuthMethod,
    "policy": FlushPolicy,
}


def _build(cls: type, data: dict[str, Any], section: str) -> Any:
    """Instantiate a config dataclass from a mapping, converting enums and retry blocks."""
    if not isinstance(data, dict):
        raise ConfigurationError(section, "must be a mapping")

    known = {f.name for f in dataclasses.fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(section, f"unknown keys: {', '.join(sorted(unknown))}")

    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key in _ENUM_FIELDS:
            value = _enum(_ENUM_FIELDS[key], value, f"{section}.{key}")
        elif key == "retry":
            value = _build(RetryConfig, value or {}, f"{section}.retry")
        kwargs[key] = value

    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ConfigurationError(section, str(e)) from e
