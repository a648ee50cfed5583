"""Chunking utilities for streaming map-output files."""
from __future__ import annotations

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

from ..errors import TransferCancelledError


@dataclass(frozen=True)
class FileChunk:
    """Chunk metadata for a portion of a file."""

    path: Path
    offset: int
    length: int


def chunk_file(path: Path, chunk_size: int) -> Iterator[FileChunk]:
    """Yield ``FileChunk`` objects for *path* using *chunk_size* boundaries."""

    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    file_size = path.stat().st_size
    if file_size == 0:
        yield FileChunk(path=path, offset=0, length=0)
        return

    offset = 0
    while offset < file_size:
        length = min(chunk_size, file_size - offset)
        yield FileChunk(path=path, offset=offset, length=length)
        offset += length


class ChunkedFileReader:
    """File-like reader that streams *path* part by part.

    Each ``read`` returns at most ``read_size`` bytes and never crosses a part
    boundary, so transports that buffer per read see multipart sized pieces.
    The optional *cancel_event* is checked before every read.
    """

    def __init__(
        self,
        path: Path,
        *,
        part_size: int,
        read_size: int,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.path = Path(path)
        self.read_size = max(1, read_size)
        self.bytes_read = 0
        self.parts_completed = 0
        self._cancel_event = cancel_event
        self._chunks = chunk_file(self.path, part_size)
        self._current: Optional[FileChunk] = None
        self._remaining_in_part = 0
        self._fh: BinaryIO = open(self.path, "rb")

    def _advance(self) -> bool:
        if self._current is not None:
            self.parts_completed += 1
        self._current = next(self._chunks, None)
        if self._current is None or self._current.length == 0:
            self._current = None
            return False
        self._fh.seek(self._current.offset)
        self._remaining_in_part = self._current.length
        return True

    def read(self, size: int = -1) -> bytes:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise TransferCancelledError(f"upload of {self.path} cancelled")
        if self._remaining_in_part <= 0 and not self._advance():
            return b""
        limit = self.read_size if size is None or size < 0 else min(size, self.read_size)
        data = self._fh.read(min(limit, self._remaining_in_part))
        if not data:
            raise OSError(f"{self.path} shrank while being uploaded")
        self._remaining_in_part -= len(data)
        self.bytes_read += len(data)
        return data

    def close(self) -> None:
        self._fh.close()

    def __enter__(self) -> "ChunkedFileReader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


__all__ = ["FileChunk", "chunk_file", "ChunkedFileReader"]
