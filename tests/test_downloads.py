import io
import shutil
import threading
from pathlib import Path

import pytest

from shuffle_offload.control.resolvers import TransportLocationResolver
from shuffle_offload.data.routing import HADOOP, PRIMARY, ReadPath
from shuffle_offload.errors import BlockNotFoundError, TransferTimeoutError
from shuffle_offload.metrics.base import NoOpShuffleClientMetrics
from shuffle_offload.models import ShuffleBlockIdentity, TransferKind

PAYLOAD = bytes(range(100))
OFFSETS = (0, 30, 30, 100)


def test_download_slices_blocks_out_of_multi_partition_output(
    make_config, make_client, write_map_output, gated_transport, counting_resolver
) -> None:
    config = make_config()
    transport = gated_transport()
    writer = make_client(config, transport=transport)
    writer.upload_map_output(write_map_output(1, 0, PAYLOAD, offsets=OFFSETS)).result(timeout=5)

    resolver = counting_resolver(TransportLocationResolver(config.layout, ReadPath.build(config.layout, transport)))
    reader = make_client(config, transport=transport, metrics=NoOpShuffleClientMetrics(), resolver=resolver)

    first = reader.download_block(ShuffleBlockIdentity(1, 0, 0, 0)).result(timeout=5)
    empty = reader.download_block(ShuffleBlockIdentity(1, 0, 1, 0)).result(timeout=5)
    last = reader.download_block(ShuffleBlockIdentity(1, 0, 2, 0)).result(timeout=5)

    assert first.read() == PAYLOAD[:30]
    assert empty.bytes_downloaded == 0
    assert last.read() == PAYLOAD[30:]
    assert resolver.resolve_calls == 1
    assert reader.index_cache.remote_fetches == 1
    assert reader.index_cache.local_hits == 2
    for result in (first, empty, last):
        result.close()


def test_concurrent_downloads_resolve_location_once(
    make_config, make_client, write_map_output, gated_transport, counting_resolver
) -> None:
    config = make_config()
    transport = gated_transport()
    writer = make_client(config, transport=transport)
    writer.upload_map_output(write_map_output(2, 0, PAYLOAD, offsets=OFFSETS)).result(timeout=5)

    resolver = counting_resolver(TransportLocationResolver(config.layout, ReadPath.build(config.layout, transport)))
    reader = make_client(config, transport=transport, metrics=NoOpShuffleClientMetrics(), resolver=resolver)
    futures = [reader.download_block(ShuffleBlockIdentity(2, 0, reduce_id, 0)) for reduce_id in range(3)]
    sizes = [future.result(timeout=5).bytes_downloaded for future in futures]

    assert sizes == [30, 0, 70]
    assert resolver.resolve_calls == 1


def test_download_into_caller_sink(make_config, make_client, write_map_output) -> None:
    client = make_client(make_config())
    client.upload_map_output(write_map_output(3, 0, PAYLOAD, offsets=OFFSETS)).result(timeout=5)
    sink = io.BytesIO()

    result = client.download_block(ShuffleBlockIdentity(3, 0, 2, 0), sink=sink).result(timeout=5)

    assert result.data is None
    assert result.bytes_downloaded == 70
    assert sink.getvalue() == PAYLOAD[30:]
    with pytest.raises(ValueError):
        result.read()


@pytest.mark.parametrize(
    "limit, spilled",
    [(8 * 1024 * 1024, False), (16, True), (0, True)],
)
def test_download_spills_past_in_memory_limit(make_config, make_client, write_map_output, limit, spilled) -> None:
    client = make_client(make_config(download_shuffle_block_in_memory_max_size=limit))
    client.upload_map_output(write_map_output(4, 0, PAYLOAD)).result(timeout=5)

    result = client.download_block(ShuffleBlockIdentity(4, 0, -1, 0)).result(timeout=5)

    assert result.spilled is spilled
    assert result.read() == PAYLOAD
    result.close()


def test_download_of_unknown_block_fails_with_count(make_config, make_client, recording_metrics) -> None:
    client = make_client(make_config())

    future = client.download_block(ShuffleBlockIdentity(99, 1, 0, 0))

    with pytest.raises(BlockNotFoundError):
        future.result(timeout=5)
    failed = recording_metrics.named("download_failed")
    assert len(failed) == 1
    assert failed[0]["count"] == failed[0]["actual"] == 0
    assert recording_metrics.named("download_completed") == []
    assert client.num_running_or_pending_downloads == 0


def test_download_of_vanished_object_invalidates_cached_location(
    tmp_path: Path, make_config, make_client, write_map_output
) -> None:
    client = make_client(make_config())
    result = client.upload_map_output(write_map_output(5, 0, PAYLOAD)).result(timeout=5)
    shutil.rmtree(tmp_path / "remote")

    with pytest.raises(BlockNotFoundError):
        client.download_block(ShuffleBlockIdentity(5, 0, -1, 0)).result(timeout=5)
    assert client.cached_location(result.identity) is None


def test_prefer_hadoop_reads_from_hadoop_path_then_falls_back(
    tmp_path: Path, make_config, make_client, write_map_output, gated_transport
) -> None:
    config = make_config(
        hadoop_base_uri=(tmp_path / "hadoop").as_uri(),
        prefer_download_from_hadoop=True,
    )
    primary = gated_transport()
    hadoop = gated_transport()
    client = make_client(config, transport=primary, hadoop_transport=hadoop)

    client.upload_map_output(write_map_output(6, 0, PAYLOAD)).result(timeout=5)
    assert hadoop.data_puts == 0
    assert not (tmp_path / "hadoop").exists()

    shutil.copytree(tmp_path / "remote", tmp_path / "hadoop")
    client.upload_map_output(write_map_output(6, 1, PAYLOAD[:10])).result(timeout=5)

    mirrored = client.download_block(ShuffleBlockIdentity(6, 0, -1, 0)).result(timeout=5)
    fallback = client.download_block(ShuffleBlockIdentity(6, 1, -1, 0)).result(timeout=5)

    assert mirrored.source == HADOOP
    assert mirrored.read() == PAYLOAD
    assert fallback.source == PRIMARY
    assert fallback.read() == PAYLOAD[:10]
    assert len(hadoop.get_calls) == 2
    mirrored.close()
    fallback.close()


def test_primary_is_tried_first_without_preference(
    tmp_path: Path, make_config, make_client, write_map_output, gated_transport
) -> None:
    config = make_config(hadoop_base_uri=(tmp_path / "hadoop").as_uri())
    hadoop = gated_transport()
    client = make_client(config, hadoop_transport=hadoop)
    client.upload_map_output(write_map_output(7, 0, PAYLOAD)).result(timeout=5)

    result = client.download_block(ShuffleBlockIdentity(7, 0, -1, 0)).result(timeout=5)

    assert result.source == PRIMARY
    assert hadoop.get_calls == []
    result.close()


def _download_events(metrics, map_id: int):
    return [name for name in metrics.for_map(map_id) if name.startswith("download")]


def test_download_parallelism_bounds_running_downloads(
    make_config, make_client, write_map_output, recording_metrics, gated_transport
) -> None:
    gate = threading.Event()
    transport = gated_transport(get_gate=gate)
    config = make_config(download_parallelism=2)
    writer = make_client(config, transport=transport, metrics=NoOpShuffleClientMetrics())
    for map_id in range(4):
        writer.upload_map_output(write_map_output(20, map_id, bytes([map_id]) * 16)).result(timeout=5)

    reader = make_client(config, transport=transport)
    futures = {map_id: reader.download_block(ShuffleBlockIdentity(20, map_id, -1, 0)) for map_id in (0, 1, 2, 3, 9)}
    assert transport.wait_for_gets(2)

    lane = reader.admission.lane_snapshot(TransferKind.DOWNLOAD)
    assert (lane.running, lane.queued) == (2, 3)
    assert reader.num_running_or_pending_downloads == 5
    assert futures[3].cancel()
    assert reader.num_running_or_pending_downloads == 4

    gate.set()
    for map_id in (0, 1, 2):
        result = futures[map_id].result(timeout=5)
        assert result.read() == bytes([map_id]) * 16
        result.close()
    with pytest.raises(BlockNotFoundError):
        futures[9].result(timeout=5)

    assert futures[3].cancelled()
    assert transport.max_active_gets == 2
    assert reader.admission.lane_snapshot(TransferKind.DOWNLOAD).peak_running == 2
    assert reader.num_running_or_pending_downloads == 0
    assert _download_events(recording_metrics, 3) == ["download_requested"]
    assert len(recording_metrics.named("download_completed")) == 3
    failed = recording_metrics.named("download_failed")
    assert [fields["map_id"] for fields in failed] == [9]
    for name in ("download_requested", "download_failed"):
        for fields in recording_metrics.named(name):
            assert fields["count"] == fields["actual"]


def test_download_timeout_fails_once_and_frees_slot(
    make_config, make_client, write_map_output, recording_metrics, gated_transport
) -> None:
    gate = threading.Event()
    transport = gated_transport(get_gate=gate)
    client = make_client(make_config(download_parallelism=1, transfer_timeout=0.2), transport=transport)
    for map_id in range(2):
        client.upload_map_output(write_map_output(21, map_id, PAYLOAD)).result(timeout=5)

    slow = client.download_block(ShuffleBlockIdentity(21, 0, -1, 0))
    with pytest.raises(TransferTimeoutError):
        slow.result(timeout=5)
    assert client.num_running_or_pending_downloads == 0

    waiting = client.download_block(ShuffleBlockIdentity(21, 1, -1, 0))
    lane = client.admission.lane_snapshot(TransferKind.DOWNLOAD)
    assert (lane.queued, lane.stranded_workers) == (1, 1)

    gate.set()
    result = waiting.result(timeout=5)
    assert result.read() == PAYLOAD
    result.close()
    assert _download_events(recording_metrics, 0) == [
        "download_requested",
        "download_started",
        "download_failed",
    ]
    failed = recording_metrics.named("download_failed")[0]
    assert failed["count"] == failed["actual"] == 0
    assert client.admission.lane_snapshot(TransferKind.DOWNLOAD).stranded_workers == 0
