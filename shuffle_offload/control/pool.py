"""Bounded worker pools that execute uploads and downloads."""
from __future__ import annotations

import io
import tempfile
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Dict, Optional

from ..cache.index import LocalIndexCache
from ..cache.locations import BlockLocationCache
from ..common.chunker import ChunkedFileReader
from ..common.layout import RemoteLayout, block_range, decode_index, single_partition_index
from ..config import ShuffleClientConfig
from ..data.base import ByteRange, ObjectNotFoundError, StorageTransport
from ..data.routing import PRIMARY, ReadPath
from ..errors import (
    BlockNotFoundError,
    FatalTransportError,
    TransferCancelledError,
    TransientTransportError,
)
from ..logging_utils import log_event, setup_logging
from ..models import (
    MAP_OUTPUT_REDUCE_ID,
    BlockLocationRef,
    MapOutputHandle,
    ShuffleBlockIdentity,
    TransferKind,
    TransferTask,
)
from .resolvers import LocationResolver


@dataclass
class TransferOutcome:
    location: BlockLocationRef
    bytes_transferred: int
    data: Optional[BinaryIO] = None
    spilled: bool = False
    source: str = PRIMARY

    def discard(self) -> None:
        if self.data is not None:
            self.data.close()
            self.data = None


class TransferWorkerPool:
    """Runs transfer tasks against the storage transports.

    Each direction has its own fixed-size thread pool so uploads and
    downloads never starve each other. Workers do not retry; failures
    propagate to the admission controller unchanged.
    """

    def __init__(
        self,
        config: ShuffleClientConfig,
        *,
        layout: RemoteLayout,
        primary: StorageTransport,
        read_path: ReadPath,
        location_cache: BlockLocationCache,
        index_cache: LocalIndexCache,
        resolver: LocationResolver,
    ) -> None:
        self.config = config
        self.layout = layout
        self.primary = primary
        self.read_path = read_path
        self.location_cache = location_cache
        self.index_cache = index_cache
        self.resolver = resolver
        self._executors: Dict[TransferKind, ThreadPoolExecutor] = {
            TransferKind.UPLOAD: ThreadPoolExecutor(
                max_workers=config.upload_parallelism, thread_name_prefix="shuffle-upload"
            ),
            TransferKind.DOWNLOAD: ThreadPoolExecutor(
                max_workers=config.download_parallelism, thread_name_prefix="shuffle-download"
            ),
        }
        self._parallelism = {
            TransferKind.UPLOAD: config.upload_parallelism,
            TransferKind.DOWNLOAD: config.download_parallelism,
        }
        self._logger = setup_logging("shuffle_offload.pool")

    def parallelism(self, kind: TransferKind) -> int:
        return self._parallelism[kind]

    def submit(self, kind: TransferKind, fn: Callable[..., Any], *args: Any) -> Future:
        return self._executors[kind].submit(fn, *args)

    def shutdown(self, wait: bool = True) -> None:
        for executor in self._executors.values():
            executor.shutdown(wait=wait)

    def execute(self, task: TransferTask) -> TransferOutcome:
        if task.kind is TransferKind.UPLOAD:
            return self._upload(task)
        return self._download(task)

    # Upload path

    def _read_index_payload(self, handle: MapOutputHandle) -> bytes:
        if handle.index_path is None:
            return single_partition_index(handle.size_bytes)
        payload = handle.index_path.read_bytes()
        try:
            offsets = decode_index(payload)
        except ValueError as exc:
            raise FatalTransportError(f"invalid index file {handle.index_path}: {exc}") from exc
        if offsets[-1] != handle.size_bytes:
            raise FatalTransportError(
                f"index {handle.index_path} covers {offsets[-1]} bytes but data file has "
                f"{handle.size_bytes}"
            )
        return payload

    def _upload(self, task: TransferTask) -> TransferOutcome:
        handle = task.handle
        if handle is None:
            raise ValueError("upload task without a map output handle")
        identity = handle.identity
        data_uri = self.layout.data_uri(identity)
        index_uri = self.layout.index_uri(identity)
        index_payload = self._read_index_payload(handle)

        with ChunkedFileReader(
            handle.local_path,
            part_size=self.config.multipart_size_bytes,
            read_size=self.config.local_file_buffer_size,
            cancel_event=task.cancel_requested,
        ) as reader:
            self.primary.put_object(data_uri, reader)  # type: ignore[arg-type]
            uploaded = reader.bytes_read
            parts = reader.parts_completed
        if uploaded != handle.size_bytes:
            raise FatalTransportError(
                f"{handle.local_path} changed size during upload: expected "
                f"{handle.size_bytes} bytes, sent {uploaded}"
            )
        # The index is written last; its presence marks a complete upload.
        self.primary.put_object(index_uri, io.BytesIO(index_payload))

        ref = BlockLocationRef(
            identity=identity,
            remote_uri=data_uri,
            index_uri=index_uri,
            size_bytes=uploaded,
        )
        self.resolver.register(ref)
        self.location_cache.put(identity, ref)
        self.index_cache.put(identity, index_payload)
        log_event(
            self._logger,
            "uploaded map output",
            identity=str(identity),
            uri=data_uri,
            bytes=uploaded,
            parts=parts,
        )
        return TransferOutcome(location=ref, bytes_transferred=uploaded)

    # Download path

    def resolve_location(self, identity: ShuffleBlockIdentity) -> BlockLocationRef:
        ref = self.location_cache.get_or_resolve(identity.map_output(), self.resolver.resolve)
        if ref is None:
            raise BlockNotFoundError(f"no remote location for {identity}")
        return ref

    def _block_range(self, ref: BlockLocationRef, identity: ShuffleBlockIdentity) -> ByteRange:
        if identity.reduce_id == MAP_OUTPUT_REDUCE_ID:
            return ByteRange(0, ref.size_bytes)
        try:
            offsets = self.index_cache.get_offsets(ref)
            start, end = block_range(offsets, identity.reduce_id)
        except ObjectNotFoundError as exc:
            self._forget(ref.identity)
            raise BlockNotFoundError(f"index for {identity} vanished: {exc}") from exc
        except (ValueError, IndexError) as exc:
            raise FatalTransportError(f"cannot locate {identity} in index: {exc}") from exc
        return ByteRange(start, end)

    def _forget(self, identity: ShuffleBlockIdentity) -> None:
        self.location_cache.invalidate(identity)
        self.index_cache.invalidate(identity)

    def _open_buffer(self) -> BinaryIO:
        limit = self.config.download_shuffle_block_in_memory_max_size
        local_dir = self.config.resolved_local_dir
        local_dir.mkdir(parents=True, exist_ok=True)
        if limit == 0:
            return tempfile.TemporaryFile(dir=local_dir)  # type: ignore[return-value]
        return tempfile.SpooledTemporaryFile(max_size=limit, dir=local_dir)  # type: ignore[return-value]

    def _download(self, task: TransferTask) -> TransferOutcome:
        identity = task.identity
        ref = self.resolve_location(identity)
        byte_range = self._block_range(ref, identity)
        try:
            stream, source = self.read_path.open(ref.remote_uri, byte_range)
        except ObjectNotFoundError as exc:
            self._forget(ref.identity)
            raise BlockNotFoundError(f"data for {identity} vanished: {exc}") from exc

        sink = task.sink
        owned = sink is None
        buffer: BinaryIO = self._open_buffer() if owned else sink  # type: ignore[assignment]
        try:
            copied = self._copy(stream, buffer, task)
        except BaseException:
            if owned:
                buffer.close()
            raise
        finally:
            stream.close()
        if copied != byte_range.length:
            if owned:
                buffer.close()
            raise TransientTransportError(
                f"short read for {identity}: expected {byte_range.length} bytes, got {copied}"
            )
        spilled = False
        if owned:
            buffer.seek(0)
            limit = self.config.download_shuffle_block_in_memory_max_size
            spilled = limit == 0 or copied > limit
        return TransferOutcome(
            location=ref,
            bytes_transferred=copied,
            data=buffer if owned else None,
            spilled=spilled,
            source=source,
        )

    def _copy(self, stream: BinaryIO, sink: BinaryIO, task: TransferTask) -> int:
        buffer_size = self.config.download_shuffle_block_buffer_size
        copied = 0
        while True:
            if task.cancel_requested.is_set():
                raise TransferCancelledError(f"download of {task.identity} cancelled")
            data = stream.read(buffer_size)
            if not data:
                return copied
            sink.write(data)
            copied += len(data)


__all__ = ["TransferOutcome", "TransferWorkerPool"]
