"""Error taxonomy for shuffle transfers."""
from __future__ import annotations

import socket

from .data.base import TransportError


class ShuffleTransferError(RuntimeError):
    """Base class for every error surfaced by the transfer engine."""


class ConfigurationError(ShuffleTransferError):
    """Fatal misconfiguration detected while building the client."""


class TransientTransportError(ShuffleTransferError):
    """Retryable transport failure such as a timeout or throttling response."""


class FatalTransportError(ShuffleTransferError):
    """Transport failure that retrying will not fix."""


class BlockNotFoundError(ShuffleTransferError):
    """No remote location is known for the requested block."""


class QueueFullError(ShuffleTransferError):
    """The bounded admission queue rejected a request."""


class TransferTimeoutError(ShuffleTransferError, TimeoutError):
    """A transfer exceeded its configured deadline."""


class TransferCancelledError(ShuffleTransferError):
    """A running transfer observed a cancellation request."""


class DuplicateTransferError(ShuffleTransferError, ValueError):
    """The same (identity, kind) pair was submitted while still in flight."""


class CacheConsistencyError(ShuffleTransferError, AssertionError):
    """Internal invariant violation in one of the caches."""


_TRANSIENT_OS_ERRORS = (socket.timeout, TimeoutError, ConnectionError)


def classify_error(exc: BaseException) -> ShuffleTransferError:
    """Map an arbitrary exception raised by a transfer onto the taxonomy."""

    if isinstance(exc, ShuffleTransferError):
        return exc
    if isinstance(exc, TransportError):
        if exc.transient:
            return TransientTransportError(str(exc))
        return FatalTransportError(str(exc))
    if isinstance(exc, _TRANSIENT_OS_ERRORS):
        return TransientTransportError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, OSError):
        return FatalTransportError(f"{type(exc).__name__}: {exc}")
    return FatalTransportError(f"unexpected {type(exc).__name__}: {exc}")


__all__ = [
    "ShuffleTransferError",
    "ConfigurationError",
    "TransientTransportError",
    "FatalTransportError",
    "BlockNotFoundError",
    "QueueFullError",
    "TransferTimeoutError",
    "TransferCancelledError",
    "DuplicateTransferError",
    "CacheConsistencyError",
    "classify_error",
]
