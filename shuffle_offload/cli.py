"""Command line entry point for the shuffle offload tools."""
from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from .client import TransferClient
from .config import load_config
from .data.tcp import TCPObjectServer
from .errors import ShuffleTransferError
from .logging_utils import log_event, set_default_level, set_default_stream, setup_logging
from .models import MapOutputHandle, ShuffleBlockIdentity


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Offload shuffle files to remote storage")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging level for the process",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve-objects", help="Serve objects over TCP from a directory")
    serve.add_argument("--root", type=Path, required=True, help="Directory holding the objects")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=50061)

    upload = sub.add_parser("upload", help="Upload one map output file")
    upload.add_argument("--config", required=True, help="Path to the YAML client configuration")
    upload.add_argument("--shuffle-id", type=int, required=True)
    upload.add_argument("--map-id", type=int, required=True)
    upload.add_argument("--attempt-id", type=int, default=0)
    upload.add_argument("--index", type=Path, default=None, help="Optional index file")
    upload.add_argument("data", type=Path, help="Map output data file")

    download = sub.add_parser("download", help="Download one shuffle block")
    download.add_argument("--config", required=True, help="Path to the YAML client configuration")
    download.add_argument("--shuffle-id", type=int, required=True)
    download.add_argument("--map-id", type=int, required=True)
    download.add_argument("--reduce-id", type=int, default=-1)
    download.add_argument("--attempt-id", type=int, default=0)
    download.add_argument("--output", type=Path, required=True, help="Destination file")
    return parser.parse_args(argv)


def _serve_objects(args: argparse.Namespace) -> int:
    args.root.mkdir(parents=True, exist_ok=True)
    server = TCPObjectServer(args.host, args.port, args.root)
    stop = threading.Event()

    def _shutdown(signum, frame):  # pragma: no cover - signal handling
        log_event(_logger(), "shutting down object server", signal=signum)
        stop.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)
    server.start()
    try:
        stop.wait()
    finally:
        server.close()
        server.join(timeout=5)
    return 0


def _upload(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    handle = MapOutputHandle.from_file(
        args.shuffle_id, args.map_id, args.attempt_id, args.data, index_path=args.index
    )
    with TransferClient.from_config(config) as client:
        result = client.upload_map_output(handle).result()
    print(
        json.dumps(
            {
                "identity": str(result.identity),
                "remote_uri": result.location.remote_uri,
                "bytes_uploaded": result.bytes_uploaded,
                "duration_ms": result.duration_ms,
            }
        )
    )
    return 0


def _download(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    identity = ShuffleBlockIdentity(args.shuffle_id, args.map_id, args.reduce_id, args.attempt_id)
    args.output.parent.mkdir(parents=True, exist_ok=True)
    with TransferClient.from_config(config) as client, args.output.open("wb") as out:
        result = client.download_block(identity, sink=out).result()
    print(
        json.dumps(
            {
                "identity": str(result.identity),
                "output": str(args.output),
                "bytes_downloaded": result.bytes_downloaded,
                "source": result.source,
                "duration_ms": result.duration_ms,
            }
        )
    )
    return 0


_COMMANDS = {
    "serve-objects": _serve_objects,
    "upload": _upload,
    "download": _download,
}


def _logger() -> logging.Logger:
    return setup_logging("shuffle_offload.cli")


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    set_default_level(getattr(logging, args.log_level))
    # Logs go to stderr so stdout carries only the command's JSON summary.
    previous_stream = set_default_stream(sys.stderr)
    try:
        return _COMMANDS[args.command](args)
    except (ShuffleTransferError, FileNotFoundError) as exc:
        log_event(
            _logger(),
            f"{args.command} failed",
            level=logging.ERROR,
            error_type=type(exc).__name__,
            detail=str(exc),
        )
        return 1
    finally:
        set_default_stream(previous_stream)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    sys.exit(main())
