"""Storage transport contract."""
from __future__ import annotations

from dataclasses import dataclass
from typing import BinaryIO, Optional, Protocol


@dataclass(frozen=True)
class ByteRange:
    """Half-open ``[start, end)`` range within a remote object."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < self.start:
            raise ValueError(f"invalid byte range [{self.start}, {self.end})")

    @property
    def length(self) -> int:
        return self.end - self.start


class StorageTransport(Protocol):
    """Minimal read/write contract against remote storage."""

    def put_object(self, uri: str, stream: BinaryIO) -> None:
        """Write the full contents of *stream* to *uri*."""

    def get_object(self, uri: str, byte_range: Optional[ByteRange] = None) -> BinaryIO:
        """Return a readable stream over *uri*, optionally restricted to *byte_range*."""


class TransportError(RuntimeError):
    """Transport specific I/O failure."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class ObjectNotFoundError(TransportError):
    """The requested remote object does not exist."""


__all__ = [
    "ByteRange",
    "StorageTransport",
    "TransportError",
    "ObjectNotFoundError",
]
