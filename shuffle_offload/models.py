"""Core value types shared by the transfer engine."""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Optional

MAP_OUTPUT_REDUCE_ID = -1


@dataclass(frozen=True)
class ShuffleBlockIdentity:
    """Logical address of one shuffle block.

    ``reduce_id == MAP_OUTPUT_REDUCE_ID`` addresses the whole map output.
    """

    shuffle_id: int
    map_id: int
    reduce_id: int
    attempt_id: int

    def map_output(self) -> "ShuffleBlockIdentity":
        if self.reduce_id == MAP_OUTPUT_REDUCE_ID:
            return self
        return replace(self, reduce_id=MAP_OUTPUT_REDUCE_ID)

    def __str__(self) -> str:
        return (
            f"shuffle_{self.shuffle_id}_{self.map_id}_{self.reduce_id}"
            f"@{self.attempt_id}"
        )


@dataclass(frozen=True)
class MapOutputHandle:
    """A locally materialized map-output file awaiting upload."""

    shuffle_id: int
    map_id: int
    attempt_id: int
    local_path: Path
    size_bytes: int
    index_path: Optional[Path] = None

    @classmethod
    def from_file(
        cls,
        shuffle_id: int,
        map_id: int,
        attempt_id: int,
        local_path: Path,
        index_path: Optional[Path] = None,
    ) -> "MapOutputHandle":
        local_path = Path(local_path)
        return cls(
            shuffle_id=shuffle_id,
            map_id=map_id,
            attempt_id=attempt_id,
            local_path=local_path,
            size_bytes=local_path.stat().st_size,
            index_path=Path(index_path) if index_path is not None else None,
        )

    @property
    def identity(self) -> ShuffleBlockIdentity:
        return ShuffleBlockIdentity(
            shuffle_id=self.shuffle_id,
            map_id=self.map_id,
            reduce_id=MAP_OUTPUT_REDUCE_ID,
            attempt_id=self.attempt_id,
        )


@dataclass(frozen=True)
class BlockLocationRef:
    """Pointer to the remote copy of a map output."""

    identity: ShuffleBlockIdentity
    remote_uri: str
    index_uri: str
    size_bytes: int
    # Wall-clock time; the location cache restamps it on every hit.
    last_access_time: float = field(default_factory=time.time, compare=False)


class TransferKind(str, Enum):
    UPLOAD = "UPLOAD"
    DOWNLOAD = "DOWNLOAD"


class TaskState(str, Enum):
    QUEUED = "QUEUED"
    SUBMITTED = "SUBMITTED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED, TaskState.CANCELLED)


@dataclass(eq=False)
class TransferTask:
    """One admitted unit of work.

    ``state`` and the timestamps are only mutated under the admission
    controller's lock.
    """

    kind: TransferKind
    identity: ShuffleBlockIdentity
    handle: Optional[MapOutputHandle] = None
    sink: Optional[BinaryIO] = None
    submitted_at: float = field(default_factory=time.monotonic)
    state: TaskState = TaskState.QUEUED
    dispatched_at: Optional[float] = None
    started_at: Optional[float] = None
    deadline: Optional[float] = None
    cancel_requested: threading.Event = field(default_factory=threading.Event)

    @property
    def key(self) -> tuple[TransferKind, ShuffleBlockIdentity]:
        return (self.kind, self.identity)


@dataclass(frozen=True)
class UploadResult:
    identity: ShuffleBlockIdentity
    location: BlockLocationRef
    bytes_uploaded: int
    duration_ms: int
    latency_ms: int


@dataclass
class DownloadResult:
    """Outcome of a block download.

    ``data`` is ``None`` when the bytes were streamed into a caller-supplied
    sink; otherwise it is positioned at offset zero and owned by the caller.
    """

    identity: ShuffleBlockIdentity
    location: BlockLocationRef
    bytes_downloaded: int
    duration_ms: int
    data: Optional[BinaryIO] = None
    spilled: bool = False
    source: str = "primary"

    def read(self) -> bytes:
        if self.data is None:
            raise ValueError("download was streamed into a caller supplied sink")
        return self.data.read()

    def close(self) -> None:
        if self.data is not None:
            self.data.close()


def millis_between(start: float, end: float) -> int:
    return max(0, int(round((end - start) * 1000)))


__all__ = [
    "MAP_OUTPUT_REDUCE_ID",
    "ShuffleBlockIdentity",
    "MapOutputHandle",
    "BlockLocationRef",
    "TransferKind",
    "TaskState",
    "TransferTask",
    "UploadResult",
    "DownloadResult",
    "millis_between",
]
