"""Storage transports."""
from .base import ByteRange, ObjectNotFoundError, StorageTransport, TransportError
from .local import LocalFileTransport
from .tcp import TCPObjectServer, TCPTransport

__all__ = [
    "ByteRange",
    "ObjectNotFoundError",
    "StorageTransport",
    "TransportError",
    "LocalFileTransport",
    "TCPObjectServer",
    "TCPTransport",
]
