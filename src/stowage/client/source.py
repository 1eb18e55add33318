"""Byte sources the upload orchestrator can slice."""

import asyncio
import mimetypes
import os
from pathlib import Path
from typing import Protocol

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class UploadSource(Protocol):
    """A sized, randomly readable payload."""

    name: str
    size: int
    content_type: str

    async def read_range(self, start: int, end: int) -> bytes:
        """Return bytes ``[start, end)``."""
        ...


class FileSource:
    """An upload source backed by a local file.

    Each read opens the file, seeks and reads in a worker thread, so slices
    can be requested in any order and concurrently.
    """

    def __init__(self, path: str | os.PathLike, content_type: str | None = None) -> None:
        self.path = Path(path)
        self.name = self.path.name
        self.size = self.path.stat().st_size
        self.content_type = (
            content_type or mimetypes.guess_type(self.name)[0] or DEFAULT_CONTENT_TYPE
        )

    def _read(self, start: int, end: int) -> bytes:
        with open(self.path, "rb") as fh:
            fh.seek(start)
            return fh.read(end - start)

    async def read_range(self, start: int, end: int) -> bytes:
        return await asyncio.to_thread(self._read, start, end)


class BytesSource:
    """An in-memory upload source."""

    def __init__(self, data: bytes, name: str, content_type: str = DEFAULT_CONTENT_TYPE) -> None:
        self._data = data
        self.name = name
        self.size = len(data)
        self.content_type = content_type

    async def read_range(self, start: int, end: int) -> bytes:
        return self._data[start:end]
