"""
Object store backends.

Provides in-memory, local filesystem, Azure Blob Storage and S3
stores behind one interface. The cloud backends need their optional
dependencies (``pip install session-recording-storage[azure]`` or
``[s3]``).

Example:
    >>> from session_recording_storage.config import StoreBackend, StoreConfig
    >>> from session_recording_storage.stores import create_object_store
    >>> store = create_object_store(StoreConfig(backend=StoreBackend.LOCAL, local_path="/tmp/rec"))
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .base import DEFAULT_PAGE_SIZE, ObjectStore
from .local import LocalObjectStore
from .memory import InMemoryObjectStore

if TYPE_CHECKING:
    from ..config import StoreConfig


def create_object_store(config: StoreConfig) -> ObjectStore:
    """Build the object store selected by ``config.backend``.

    Raises:
        ConfigurationError: If the backend's settings are incomplete
        ImportError: If a cloud backend's optional dependency is missing
    """
    from ..config import StoreBackend

    if config.backend == StoreBackend.MEMORY:
        return InMemoryObjectStore(page_size=config.page_size)
    if config.backend == StoreBackend.LOCAL:
        return LocalObjectStore(config.resolved_local_path(), page_size=config.page_size)
    if config.backend == StoreBackend.AZURE_BLOB:
        from .azure_blob import AzureBlobObjectStore

        return AzureBlobObjectStore.from_config(config)
    if config.backend == StoreBackend.S3:
        from .s3 import S3ObjectStore

        return S3ObjectStore.from_config(config)
    raise ValueError(f"Unsupported store backend: {config.backend}")


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "ObjectStore",
    "InMemoryObjectStore",
    "LocalObjectStore",
    "create_object_store",
]
