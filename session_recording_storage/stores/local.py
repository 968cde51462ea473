"""
Local filesystem object store.

Each key maps to a file below ``base_path``. Writes go to a temp file
in the target directory and are renamed into place, so an object is
either fully present or absent. Temp files are never listed.

Directory structure for the default key layout:
{base_path}/
  rrweb/recordings/
    sessionId={session_id}/
      {timestamp}-{uuid}.jsonl
"""

from __future__ import annotations

import os
import tempfile
from collections.abc import AsyncIterator
from pathlib import Path, PurePosixPath

import aiofiles
import aiofiles.os

from ..exceptions import ObjectNotFoundError, StoreError
from .base import DEFAULT_PAGE_SIZE, ObjectStore

TEMP_PREFIX = ".tmp_"


class LocalObjectStore(ObjectStore):
    """Filesystem-backed object store."""

    def __init__(self, base_path: str | Path, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        """Initialize local storage.

        Args:
            base_path: Root directory holding all objects
            page_size: Keys per listing page
        """
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.base_path = Path(base_path)
        self.page_size = page_size

    def _path_for(self, key: str) -> Path:
        """Map a key onto a path, refusing keys that escape base_path."""
        parts = key.split("/")
        if not key or any(p in ("", ".", "..") for p in parts):
            raise StoreError("resolve_key", key, retryable=False)
        if parts[-1].startswith(TEMP_PREFIX):
            raise StoreError("resolve_key", key, retryable=False)
        return self.base_path.joinpath(*parts)

    async def put_object(self, key: str, data: bytes) -> None:
        path = self._path_for(key)
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
        except OSError as e:
            raise StoreError("create_directory", key, e) from e

        fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=TEMP_PREFIX)
        try:
            os.close(fd)
            async with aiofiles.open(temp_path, "wb") as f:
                await f.write(data)
                await f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            await aiofiles.os.rename(temp_path, path)
        except OSError as e:
            try:
                await aiofiles.os.remove(temp_path)
            except OSError:
                pass
            raise StoreError("put_object", key, e) from e

    async def list_pages(self, prefix: str) -> AsyncIterator[list[str]]:
        try:
            keys = await aiofiles.os.wrap(self._scan)(prefix)
        except OSError as e:
            raise StoreError("list_objects", prefix, e) from e

        for start in range(0, len(keys), self.page_size):
            yield keys[start : start + self.page_size]

    def _scan(self, prefix: str) -> list[str]:
        """Collect matching keys; runs in a worker thread."""
        # Only the directory named by the prefix up to its last slash can hold matches
        directory = prefix.rsplit("/", 1)[0] if "/" in prefix else ""
        root = self.base_path.joinpath(*PurePosixPath(directory).parts) if directory else self.base_path
        if not root.is_dir():
            return []

        keys: list[str] = []
        for dirpath, _dirnames, filenames in os.walk(root):
            for name in filenames:
                if name.startswith(TEMP_PREFIX):
                    continue
                rel = Path(dirpath, name).relative_to(self.base_path)
                key = rel.as_posix()
                if key.startswith(prefix):
                    keys.append(key)
        keys.sort()
        return keys

    async def get_object(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            async with aiofiles.open(path, "rb") as f:
                return await f.read()
        except FileNotFoundError as e:
            raise ObjectNotFoundError(key, e) from e
        except OSError as e:
            raise StoreError("get_object", key, e) from e
