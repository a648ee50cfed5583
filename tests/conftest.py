import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from shuffle_offload.client import TransferClient
from shuffle_offload.common.layout import encode_index
from shuffle_offload.config import ShuffleClientConfig
from shuffle_offload.data.base import TransportError
from shuffle_offload.data.local import LocalFileTransport
from shuffle_offload.models import MapOutputHandle, TransferKind


class RecordingMetrics:
    """Metrics sink stub that keeps every event in order.

    When ``probe`` is set it is called with the transfer kind at each event
    that carries a running-or-pending count, so tests can compare the
    reported number with the controller's own bookkeeping at that instant.
    """

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.probe: Optional[Callable[[TransferKind], int]] = None
        self._lock = threading.Lock()

    def _record(self, name: str, kind: Optional[TransferKind] = None, **fields: Any) -> None:
        if kind is not None and self.probe is not None:
            fields["actual"] = self.probe(kind)
        with self._lock:
            self.events.append((name, fields))

    def named(self, name: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [fields for event, fields in self.events if event == name]

    def for_map(self, map_id: int) -> List[str]:
        with self._lock:
            return [event for event, fields in self.events if fields["map_id"] == map_id]

    def mark_download_requested(self, shuffle_id, map_id, reduce_id, attempt_id, num_running_or_pending_downloads):
        self._record(
            "download_requested",
            TransferKind.DOWNLOAD,
            shuffle_id=shuffle_id,
            map_id=map_id,
            reduce_id=reduce_id,
            attempt_id=attempt_id,
            count=num_running_or_pending_downloads,
        )

    def mark_download_started(self, shuffle_id, map_id, reduce_id, attempt_id):
        self._record(
            "download_started", shuffle_id=shuffle_id, map_id=map_id, reduce_id=reduce_id, attempt_id=attempt_id
        )

    def mark_download_completed(self, shuffle_id, map_id, reduce_id, attempt_id, duration_millis):
        self._record(
            "download_completed",
            shuffle_id=shuffle_id,
            map_id=map_id,
            reduce_id=reduce_id,
            attempt_id=attempt_id,
            duration_millis=duration_millis,
        )

    def mark_download_failed(self, shuffle_id, map_id, reduce_id, attempt_id, num_running_or_pending_downloads):
        self._record(
            "download_failed",
            TransferKind.DOWNLOAD,
            shuffle_id=shuffle_id,
            map_id=map_id,
            reduce_id=reduce_id,
            attempt_id=attempt_id,
            count=num_running_or_pending_downloads,
        )

    def mark_upload_requested(self, shuffle_id, map_id, attempt_id, num_running_or_pending_uploads):
        self._record(
            "upload_requested",
            TransferKind.UPLOAD,
            shuffle_id=shuffle_id,
            map_id=map_id,
            attempt_id=attempt_id,
            count=num_running_or_pending_uploads,
        )

    def mark_upload_request_submitted(self, shuffle_id, map_id, attempt_id, request_submission_latency_millis):
        self._record(
            "upload_submitted",
            shuffle_id=shuffle_id,
            map_id=map_id,
            attempt_id=attempt_id,
            latency_millis=request_submission_latency_millis,
        )

    def mark_upload_started(self, shuffle_id, map_id, attempt_id):
        self._record("upload_started", shuffle_id=shuffle_id, map_id=map_id, attempt_id=attempt_id)

    def mark_upload_failed(self, shuffle_id, map_id, attempt_id, num_running_or_pending_uploads):
        self._record(
            "upload_failed",
            TransferKind.UPLOAD,
            shuffle_id=shuffle_id,
            map_id=map_id,
            attempt_id=attempt_id,
            count=num_running_or_pending_uploads,
        )

    def mark_upload_completed(
        self,
        shuffle_id,
        map_id,
        attempt_id,
        duration_millis,
        bytes_uploaded,
        latency_millis,
        num_running_or_pending_uploads,
    ):
        self._record(
            "upload_completed",
            TransferKind.UPLOAD,
            shuffle_id=shuffle_id,
            map_id=map_id,
            attempt_id=attempt_id,
            duration_millis=duration_millis,
            bytes_uploaded=bytes_uploaded,
            latency_millis=latency_millis,
            count=num_running_or_pending_uploads,
        )


class GatedTransport(LocalFileTransport):
    """Local transport whose data transfers can be held on a gate or made to fail.

    ``gate`` holds uploads of ``.data`` objects and ``get_gate`` holds reads
    of them; index objects always pass straight through.
    """

    def __init__(
        self,
        *,
        gate: Optional[threading.Event] = None,
        get_gate: Optional[threading.Event] = None,
        fail_on_put=(),
    ) -> None:
        super().__init__()
        self.gate = gate
        self.get_gate = get_gate
        self.fail_on_put = set(fail_on_put)
        self.data_puts = 0
        self.active_puts = 0
        self.max_active_puts = 0
        self.active_gets = 0
        self.max_active_gets = 0
        self.get_calls: List[str] = []
        self._arrived = threading.Semaphore(0)
        self._gets_arrived = threading.Semaphore(0)
        self._lock = threading.Lock()

    def put_object(self, uri, stream):
        if not uri.endswith(".data"):
            return super().put_object(uri, stream)
        with self._lock:
            self.data_puts += 1
            sequence = self.data_puts
            self.active_puts += 1
            self.max_active_puts = max(self.max_active_puts, self.active_puts)
        self._arrived.release()
        try:
            if self.gate is not None and not self.gate.wait(10):
                raise TransportError("gate never opened", transient=True)
            if sequence in self.fail_on_put:
                raise TransportError(f"injected failure for {uri}", transient=True)
            return super().put_object(uri, stream)
        finally:
            with self._lock:
                self.active_puts -= 1

    def get_object(self, uri, byte_range=None):
        with self._lock:
            self.get_calls.append(uri)
        if self.get_gate is None or not uri.endswith(".data"):
            return super().get_object(uri, byte_range)
        with self._lock:
            self.active_gets += 1
            self.max_active_gets = max(self.max_active_gets, self.active_gets)
        self._gets_arrived.release()
        try:
            if not self.get_gate.wait(10):
                raise TransportError("gate never opened", transient=True)
            return super().get_object(uri, byte_range)
        finally:
            with self._lock:
                self.active_gets -= 1

    def wait_for_puts(self, count: int, timeout: float = 5.0) -> bool:
        """Block until *count* more data uploads have reached the transport."""

        return all(self._arrived.acquire(timeout=timeout) for _ in range(count))

    def wait_for_gets(self, count: int, timeout: float = 5.0) -> bool:
        return all(self._gets_arrived.acquire(timeout=timeout) for _ in range(count))


class CountingResolver:
    def __init__(self, inner) -> None:
        self.inner = inner
        self.resolve_calls = 0
        self.registered = []

    def resolve(self, identity):
        self.resolve_calls += 1
        return self.inner.resolve(identity)

    def register(self, ref):
        self.registered.append(ref)
        self.inner.register(ref)


@pytest.fixture
def recording_metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
def gated_transport():
    return GatedTransport


@pytest.fixture
def counting_resolver():
    return CountingResolver


@pytest.fixture
def make_config(tmp_path: Path):
    def _make(**overrides: Any) -> ShuffleClientConfig:
        values: Dict[str, Any] = {
            "base_uri": (tmp_path / "remote").as_uri(),
            "local_dir": str(tmp_path / "local"),
            "app_name": "test-app",
        }
        values.update(overrides)
        return ShuffleClientConfig(**values)

    return _make


@pytest.fixture
def write_map_output(tmp_path: Path):
    def _write(
        shuffle_id: int,
        map_id: int,
        payload: bytes,
        *,
        attempt_id: int = 0,
        offsets=None,
    ) -> MapOutputHandle:
        out_dir = tmp_path / "map-outputs"
        out_dir.mkdir(exist_ok=True)
        data_path = out_dir / f"shuffle_{shuffle_id}_{map_id}_{attempt_id}.data"
        data_path.write_bytes(payload)
        index_path = None
        if offsets is not None:
            index_path = data_path.with_suffix(".index")
            index_path.write_bytes(encode_index(offsets))
        return MapOutputHandle.from_file(shuffle_id, map_id, attempt_id, data_path, index_path=index_path)

    return _write


@pytest.fixture
def make_client(recording_metrics: RecordingMetrics):
    clients: List[Tuple[TransferClient, Any]] = []

    def _make(config: ShuffleClientConfig, *, transport=None, metrics=None, **kwargs: Any) -> TransferClient:
        transport = transport if transport is not None else GatedTransport()
        metrics = metrics if metrics is not None else recording_metrics
        client = TransferClient(config, transport=transport, metrics=metrics, **kwargs)
        if isinstance(metrics, RecordingMetrics) and metrics.probe is None:
            metrics.probe = client.admission.running_or_pending
        clients.append((client, transport))
        return client

    yield _make

    for client, transport in clients:
        for name in ("gate", "get_gate"):
            gate = getattr(transport, name, None)
            if gate is not None:
                gate.set()
        client.close()
