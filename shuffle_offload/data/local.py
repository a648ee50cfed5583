"""Filesystem transport for ``file://`` URIs and mounted distributed filesystems."""
from __future__ import annotations

import os
import shutil
import tempfile
from pathlib import Path
from typing import BinaryIO, Optional
from urllib.parse import unquote, urlparse

from .base import ByteRange, ObjectNotFoundError, StorageTransport, TransportError

_COPY_BUFFER_SIZE = 4 * 1024 * 1024


def uri_to_path(uri: str) -> Path:
    parsed = urlparse(uri)
    if parsed.scheme in ("", "file"):
        return Path(unquote(parsed.path if parsed.scheme else uri))
    raise TransportError(f"unsupported URI scheme for local transport: {uri}")


class _RangeReader:
    """Read-only view over ``[start, end)`` of an open file."""

    def __init__(self, fh: BinaryIO, byte_range: ByteRange) -> None:
        self._fh = fh
        self._fh.seek(byte_range.start)
        self._remaining = byte_range.length

    def read(self, size: int = -1) -> bytes:
        if self._remaining <= 0:
            return b""
        if size is None or size < 0 or size > self._remaining:
            size = self._remaining
        data = self._fh.read(size)
        self._remaining -= len(data)
        return data

    def close(self) -> None:
        self._fh.close()

    def __enter__(self) -> "_RangeReader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class LocalFileTransport(StorageTransport):
    """Stores objects as files; writes are atomic via rename."""

    def __init__(self, *, buffer_size: int = _COPY_BUFFER_SIZE) -> None:
        self.buffer_size = buffer_size

    def put_object(self, uri: str, stream: BinaryIO) -> None:  # type: ignore[override]
        dest = uri_to_path(uri)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", dir=dest.parent)
            try:
                with os.fdopen(fd, "wb") as out:
                    shutil.copyfileobj(stream, out, self.buffer_size)
                os.replace(tmp_name, dest)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as exc:
            raise TransportError(f"failed to write {uri}: {exc}") from exc

    def get_object(  # type: ignore[override]
        self, uri: str, byte_range: Optional[ByteRange] = None
    ) -> BinaryIO:
        path = uri_to_path(uri)
        try:
            fh = open(path, "rb")
        except FileNotFoundError as exc:
            raise ObjectNotFoundError(f"no such object: {uri}") from exc
        except OSError as exc:
            raise TransportError(f"failed to open {uri}: {exc}") from exc
        if byte_range is None:
            return fh
        return _RangeReader(fh, byte_range)  # type: ignore[return-value]


__all__ = ["LocalFileTransport", "uri_to_path"]
