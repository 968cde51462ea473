"""
Abstract object store interface.

The pipeline needs exactly three operations from durable storage:
whole-object put, prefix listing, and whole-object get. No update or
append-in-place is used, so any store with atomic puts qualifies.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any

DEFAULT_PAGE_SIZE = 1000


class ObjectStore(ABC):
    """Abstract interface for object storage backends.

    All backends (memory, local, azure, s3) implement this interface.
    Keys are ``/``-separated strings; listing is by plain string prefix.
    """

    @abstractmethod
    async def put_object(self, key: str, data: bytes) -> None:
        """Write a whole object.

        The object must become visible all at once or not at all.

        Raises:
            StoreError: If the write fails
        """
        ...

    @abstractmethod
    def list_pages(self, prefix: str) -> AsyncIterator[list[str]]:
        """Yield pages of keys starting with ``prefix``.

        Keys are yielded in ascending lexicographic order. Backends page
        internally and callers must consume every page.

        Raises:
            StoreError: If listing fails
        """
        ...

    @abstractmethod
    async def get_object(self, key: str) -> bytes:
        """Read a whole object.

        Raises:
            ObjectNotFoundError: If the key does not exist
            StoreError: If the read fails
        """
        ...

    async def list_objects(self, prefix: str) -> AsyncIterator[str]:
        """Yield every key starting with ``prefix``, across all pages."""
        async for page in self.list_pages(prefix):
            for key in page:
                yield key

    async def close(self) -> None:
        """Release connections held by the backend."""
        return None

    async def __aenter__(self) -> ObjectStore:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
