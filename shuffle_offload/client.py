"""Public entry point for uploading map outputs and downloading shuffle blocks."""
from __future__ import annotations

import logging
from typing import Any, BinaryIO, Dict, Optional
from urllib.parse import urlparse

from .cache.index import LocalIndexCache
from .cache.locations import BlockLocationCache
from .config import ShuffleClientConfig
from .control.admission import AdmissionController, TransferFuture
from .control.pool import TransferWorkerPool
from .control.resolvers import LocationResolver, RedisLocationRegistry, TransportLocationResolver
from .data.base import StorageTransport
from .data.local import LocalFileTransport
from .data.routing import ReadPath
from .data.tcp import TCPTransport
from .errors import ConfigurationError
from .logging_utils import log_event, setup_logging
from .metrics.base import ShuffleClientMetrics
from .metrics.logging import LoggingShuffleClientMetrics
from .models import (
    BlockLocationRef,
    MapOutputHandle,
    ShuffleBlockIdentity,
    TransferKind,
    TransferTask,
)


def transport_for_uri(uri: str) -> StorageTransport:
    """Return the built-in transport able to serve *uri*."""

    scheme = urlparse(uri).scheme or "file"
    if scheme == "file":
        return LocalFileTransport()
    if scheme == "tcp":
        return TCPTransport()
    raise ConfigurationError(
        f"no built-in transport for scheme {scheme!r}; pass a transport explicitly"
    )


class TransferClient:
    """Facade combining admission control, the worker pool and both caches."""

    def __init__(
        self,
        config: ShuffleClientConfig,
        *,
        transport: StorageTransport,
        hadoop_transport: Optional[StorageTransport] = None,
        metrics: Optional[ShuffleClientMetrics] = None,
        resolver: Optional[LocationResolver] = None,
    ) -> None:
        if config.layout is None:
            raise ConfigurationError("base.uri must be configured to create a transfer client")
        self.config = config
        self._logger = setup_logging("shuffle_offload.client")
        self.metrics: ShuffleClientMetrics = metrics or LoggingShuffleClientMetrics(config.app_name)
        if config.prefer_download_from_hadoop and hadoop_transport is None:
            log_event(
                self._logger,
                "prefer.download.from.hadoop is set but no hadoop transport is configured",
                level=logging.WARNING,
            )
        if hadoop_transport is not None and not config.hadoop_base_uri:
            raise ConfigurationError("hadoop.base.uri is required when a hadoop transport is used")
        self.read_path = ReadPath.build(
            config.layout,
            transport,
            hadoop=hadoop_transport,
            hadoop_base_uri=config.hadoop_base_uri,
            prefer_hadoop=config.prefer_download_from_hadoop,
        )
        self.location_cache = BlockLocationCache(
            config.driver_ref_cache_size, config.driver_ref_cache_expiration_millis
        )
        self.index_cache = LocalIndexCache(
            config.cache_index_files_locally,
            config.resolved_local_dir,
            fetcher=self._fetch_index,
        )
        self.resolver = resolver or self._default_resolver()
        self.pool = TransferWorkerPool(
            config,
            layout=config.layout,
            primary=transport,
            read_path=self.read_path,
            location_cache=self.location_cache,
            index_cache=self.index_cache,
            resolver=self.resolver,
        )
        self.admission = AdmissionController(config, self.pool, self.metrics)

    @classmethod
    def from_config(
        cls,
        config: ShuffleClientConfig,
        *,
        metrics: Optional[ShuffleClientMetrics] = None,
    ) -> "TransferClient":
        """Build a client using the built-in transports for the configured URIs."""

        if not config.base_uri:
            raise ConfigurationError("base.uri must be configured to create a transfer client")
        hadoop = transport_for_uri(config.hadoop_base_uri) if config.hadoop_base_uri else None
        return cls(
            config,
            transport=transport_for_uri(config.base_uri),
            hadoop_transport=hadoop,
            metrics=metrics,
        )

    def _default_resolver(self) -> LocationResolver:
        assert self.config.layout is not None
        if self.config.location_registry == "redis":
            return RedisLocationRegistry.from_config(
                self.config.redis, namespace=f"shuffle_offload:{self.config.app_name}"
            )
        return TransportLocationResolver(self.config.layout, self.read_path)

    def _fetch_index(self, ref: BlockLocationRef) -> bytes:
        return self.read_path.read_all(ref.index_uri)

    def upload_map_output(self, handle: MapOutputHandle) -> TransferFuture:
        """Queue *handle* for upload; the future resolves to an ``UploadResult``."""

        task = TransferTask(kind=TransferKind.UPLOAD, identity=handle.identity, handle=handle)
        return self.admission.submit(task)

    def download_block(
        self, identity: ShuffleBlockIdentity, *, sink: Optional[BinaryIO] = None
    ) -> TransferFuture:
        """Queue a block download; the future resolves to a ``DownloadResult``.

        With *sink* the bytes are written into it; otherwise they are buffered
        in memory up to the configured limit and spilled to local disk beyond.
        """

        task = TransferTask(kind=TransferKind.DOWNLOAD, identity=identity, sink=sink)
        return self.admission.submit(task)

    def cached_location(self, identity: ShuffleBlockIdentity) -> Optional[BlockLocationRef]:
        return self.location_cache.get(identity.map_output())

    @property
    def num_running_or_pending_uploads(self) -> int:
        return self.admission.running_or_pending(TransferKind.UPLOAD)

    @property
    def num_running_or_pending_downloads(self) -> int:
        return self.admission.running_or_pending(TransferKind.DOWNLOAD)

    def status(self) -> Dict[str, Any]:
        stats = self.location_cache.stats()
        return {
            "app_name": self.config.app_name,
            "lanes": {
                kind.value.lower(): self.admission.lane_snapshot(kind) for kind in TransferKind
            },
            "location_cache": stats,
            "index_cache": {
                "enabled": self.index_cache.enabled,
                "local_hits": self.index_cache.local_hits,
                "remote_fetches": self.index_cache.remote_fetches,
            },
        }

    def close(self, *, wait: bool = True) -> None:
        self.admission.close(wait=wait)
        self.index_cache.close()

    def __enter__(self) -> "TransferClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


__all__ = ["TransferClient", "transport_for_uri"]
