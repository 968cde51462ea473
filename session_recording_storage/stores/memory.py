"""
In-memory object store.

Used by tests and single-process deployments. Puts replace the stored
bytes in one assignment, so a reader never sees a half-written object.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from ..exceptions import ObjectNotFoundError
from .base import DEFAULT_PAGE_SIZE, ObjectStore


class InMemoryObjectStore(ObjectStore):
    """Dictionary-backed object store with paginated listing."""

    def __init__(self, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        """Initialize an empty store.

        Args:
            page_size: Keys per listing page
        """
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.page_size = page_size
        self._objects: dict[str, bytes] = {}

    async def put_object(self, key: str, data: bytes) -> None:
        await asyncio.sleep(0)
        self._objects[key] = bytes(data)

    async def list_pages(self, prefix: str) -> AsyncIterator[list[str]]:
        keys = sorted(k for k in self._objects if k.startswith(prefix))
        for start in range(0, len(keys), self.page_size):
            await asyncio.sleep(0)
            yield keys[start : start + self.page_size]

    async def get_object(self, key: str) -> bytes:
        await asyncio.sleep(0)
        try:
            return self._objects[key]
        except KeyError as e:
            raise ObjectNotFoundError(key, e) from e

    def __len__(self) -> int:
        return len(self._objects)

    def keys(self) -> list[str]:
        """All stored keys, sorted."""
        return sorted(self._objects)
