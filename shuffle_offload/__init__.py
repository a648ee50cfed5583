"""Asynchronous offload of shuffle files to remote storage."""
from .client import TransferClient
from .config import ShuffleClientConfig, load_config
from .errors import (
    BlockNotFoundError,
    CacheConsistencyError,
    ConfigurationError,
    DuplicateTransferError,
    FatalTransportError,
    QueueFullError,
    ShuffleTransferError,
    TransferCancelledError,
    TransferTimeoutError,
    TransientTransportError,
)
from .models import (
    BlockLocationRef,
    DownloadResult,
    MapOutputHandle,
    ShuffleBlockIdentity,
    TaskState,
    TransferKind,
    UploadResult,
)

__all__ = [
    "TransferClient",
    "ShuffleClientConfig",
    "load_config",
    "BlockNotFoundError",
    "CacheConsistencyError",
    "ConfigurationError",
    "DuplicateTransferError",
    "FatalTransportError",
    "QueueFullError",
    "ShuffleTransferError",
    "TransferCancelledError",
    "TransferTimeoutError",
    "TransientTransportError",
    "BlockLocationRef",
    "DownloadResult",
    "MapOutputHandle",
    "ShuffleBlockIdentity",
    "TaskState",
    "TransferKind",
    "UploadResult",
]
