"""TCP object transport and a matching object server."""
from __future__ import annotations

import json
import os
import socket
import struct
import tempfile
from contextlib import closing
from pathlib import Path
from threading import Thread
from typing import Any, BinaryIO, Dict, Optional, Tuple
from urllib.parse import urlparse

from ..logging_utils import setup_logging
from .base import ByteRange, ObjectNotFoundError, StorageTransport, TransportError

_HEADER_STRUCT = struct.Struct("!I")
_BUFFER_SIZE = 4 * 1024 * 1024
_LOGGER = setup_logging(__name__)


def parse_tcp_uri(uri: str) -> Tuple[str, int, str]:
    parsed = urlparse(uri)
    if parsed.scheme != "tcp" or not parsed.hostname or parsed.port is None:
        raise TransportError(f"expected tcp://host:port/key, got {uri}")
    key = parsed.path.lstrip("/")
    if not key:
        raise TransportError(f"missing object key in {uri}")
    return parsed.hostname, parsed.port, key


def _send_header(sock: socket.socket, header: Dict[str, Any]) -> None:
    header_bytes = json.dumps(header).encode("utf-8")
    sock.sendall(_HEADER_STRUCT.pack(len(header_bytes)))
    sock.sendall(header_bytes)


def _recv_header(sock: socket.socket) -> Optional[Dict[str, Any]]:
    header_len_bytes = _recv_exact(sock, _HEADER_STRUCT.size)
    if not header_len_bytes:
        return None
    (header_len,) = _HEADER_STRUCT.unpack(header_len_bytes)
    header_bytes = _recv_exact(sock, header_len)
    if not header_bytes:
        return None
    return json.loads(header_bytes.decode("utf-8"))


class TCPObjectServer(Thread):
    """Serves ``put``/``get`` requests for objects stored under *root*."""

    def __init__(self, host: str, port: int, root: Path, *, backlog: int = 128) -> None:
        super().__init__(daemon=True)
        self.host = host
        self.port = port
        self.root = Path(root)
        self.backlog = backlog
        self._sock: Optional[socket.socket] = None
        self._running = False

    def run(self) -> None:  # type: ignore[override]
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server_sock:
            server_sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server_sock.bind((self.host, self.port))
            if self.port == 0:
                self.port = server_sock.getsockname()[1]
            server_sock.listen(self.backlog)
            self._sock = server_sock
            self._running = True
            _LOGGER.info(
                "object server listening",
                extra={"_shuffle_host": self.host, "_shuffle_port": self.port},
            )
            while self._running:
                try:
                    conn, _ = server_sock.accept()
                except OSError:
                    break
                Thread(target=self._handle_connection, args=(conn,), daemon=True).start()

    def close(self) -> None:
        self._running = False
        if self._sock:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            self._sock.close()

    def _object_path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise TransportError(f"object key escapes server root: {key}")
        return path

    def _handle_connection(self, conn: socket.socket) -> None:
        with closing(conn) as sock:
            header = _recv_header(sock)
            if header is None:
                return
            try:
                path = self._object_path(str(header["key"]))
                if header.get("op") == "put":
                    self._handle_put(sock, path)
                elif header.get("op") == "get":
                    self._handle_get(sock, path, header)
                else:
                    raise TransportError(f"unknown op {header.get('op')!r}")
            except FileNotFoundError:
                _send_header(sock, {"status": "not_found", "message": header.get("key")})
            except (TransportError, OSError, ValueError) as exc:
                _LOGGER.warning(
                    "object request failed",
                    extra={"_shuffle_key": header.get("key"), "_shuffle_detail": str(exc)},
                )
                try:
                    _send_header(sock, {"status": "error", "message": str(exc)})
                except OSError:
                    pass

    def _handle_put(self, sock: socket.socket, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        written = 0
        try:
            with os.fdopen(fd, "wb") as out:
                while True:
                    frame_len_bytes = _recv_exact(sock, _HEADER_STRUCT.size)
                    if not frame_len_bytes:
                        raise TransportError("unexpected EOF from sender")
                    (frame_len,) = _HEADER_STRUCT.unpack(frame_len_bytes)
                    if frame_len == 0:
                        break
                    frame = _recv_exact(sock, frame_len)
                    if not frame:
                        raise TransportError("unexpected EOF from sender")
                    out.write(frame)
                    written += frame_len
            os.replace(tmp_name, path)
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
        _send_header(sock, {"status": "ok", "length": written})

    def _handle_get(self, sock: socket.socket, path: Path, header: Dict[str, Any]) -> None:
        size = path.stat().st_size
        start = int(header.get("start") or 0)
        end = header.get("end")
        end = size if end is None else min(int(end), size)
        if start > end:
            raise ValueError(f"range start {start} beyond object end {end}")
        with open(path, "rb", buffering=0) as fh:
            _send_header(sock, {"status": "ok", "length": end - start})
            fh.seek(start)
            remaining = end - start
            while remaining > 0:
                data = fh.read(min(_BUFFER_SIZE, remaining))
                if not data:
                    raise TransportError("object truncated while serving")
                sock.sendall(data)
                remaining -= len(data)


class _SocketReader:
    """Reads exactly ``length`` payload bytes from a connected socket."""

    def __init__(self, sock: socket.socket, length: int) -> None:
        self._sock = sock
        self._remaining = length

    def read(self, size: int = -1) -> bytes:
        if self._remaining <= 0:
            return b""
        if size is None or size < 0 or size > self._remaining:
            size = self._remaining
        try:
            data = _recv_exact(self._sock, size)
        except OSError as exc:
            raise TransportError(f"TCP read failed: {exc}", transient=True) from exc
        if not data:
            raise TransportError("connection closed mid-object", transient=True)
        self._remaining -= len(data)
        return data

    def close(self) -> None:
        self._sock.close()

    def __enter__(self) -> "_SocketReader":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class TCPTransport(StorageTransport):
    """Client for :class:`TCPObjectServer` using per-object connections."""

    def __init__(self, *, connect_timeout: float = 30.0, buffer_size: int = _BUFFER_SIZE) -> None:
        self.connect_timeout = connect_timeout
        self.buffer_size = buffer_size

    def _connect(self, host: str, port: int) -> socket.socket:
        try:
            return socket.create_connection((host, port), timeout=self.connect_timeout)
        except OSError as exc:
            raise TransportError(f"TCP connect to {host}:{port} failed: {exc}", transient=True) from exc

    @staticmethod
    def _check_reply(reply: Optional[Dict[str, Any]], uri: str) -> Dict[str, Any]:
        if reply is None:
            raise TransportError(f"no reply from server for {uri}", transient=True)
        status = reply.get("status")
        if status == "not_found":
            raise ObjectNotFoundError(f"no such object: {uri}")
        if status != "ok":
            raise TransportError(f"server rejected request for {uri}: {reply.get('message')}")
        return reply

    def put_object(self, uri: str, stream: BinaryIO) -> None:  # type: ignore[override]
        host, port, key = parse_tcp_uri(uri)
        with closing(self._connect(host, port)) as sock:
            try:
                _send_header(sock, {"op": "put", "key": key})
                while True:
                    data = stream.read(self.buffer_size)
                    if not data:
                        break
                    sock.sendall(_HEADER_STRUCT.pack(len(data)))
                    sock.sendall(data)
                sock.sendall(_HEADER_STRUCT.pack(0))
                reply = _recv_header(sock)
            except OSError as exc:
                raise TransportError(f"TCP upload of {uri} failed: {exc}", transient=True) from exc
            self._check_reply(reply, uri)

    def get_object(  # type: ignore[override]
        self, uri: str, byte_range: Optional[ByteRange] = None
    ) -> BinaryIO:
        host, port, key = parse_tcp_uri(uri)
        sock = self._connect(host, port)
        try:
            header: Dict[str, Any] = {"op": "get", "key": key}
            if byte_range is not None:
                header["start"] = byte_range.start
                header["end"] = byte_range.end
            _send_header(sock, header)
            reply = self._check_reply(_recv_header(sock), uri)
        except OSError as exc:
            sock.close()
            raise TransportError(f"TCP download of {uri} failed: {exc}", transient=True) from exc
        except TransportError:
            sock.close()
            raise
        return _SocketReader(sock, int(reply.get("length", 0)))  # type: ignore[return-value]


def _recv_exact(sock: socket.socket, size: int) -> bytes:
    view = memoryview(bytearray(size))
    remaining = size
    offset = 0
    while remaining:
        n = sock.recv_into(view[offset:], remaining)
        if n == 0:
            return b""
        offset += n
        remaining -= n
    return view.tobytes()


__all__ = ["TCPObjectServer", "TCPTransport", "parse_tcp_uri"]
