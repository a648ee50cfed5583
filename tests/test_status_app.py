import threading

import pytest
from fastapi.testclient import TestClient

from shuffle_offload import status
from shuffle_offload.models import TransferKind


@pytest.fixture
def api():
    with TestClient(status.app) as client:
        yield client
    status.reset_client()


def test_status_without_registered_client(api) -> None:
    status.reset_client()

    response = api.get("/status")

    assert response.status_code == 503


def test_status_reports_lanes_and_cache(api, make_config, make_client, write_map_output) -> None:
    client = make_client(make_config(upload_parallelism=2))
    client.upload_map_output(write_map_output(1, 0, b"q" * 20)).result(timeout=5)
    status.register_client(client)

    response = api.get("/status")

    assert response.status_code == 200
    body = response.json()
    assert body["app_name"] == "test-app"
    assert body["lanes"]["upload"]["parallelism"] == 2
    assert body["lanes"]["upload"]["running_or_pending"] == 0
    assert body["lanes"]["upload"]["peak_running"] == 1
    assert body["location_cache"]["size"] == 1
    assert body["index_cache"]["enabled"] is True


def test_transfers_lists_in_flight_tasks(api, make_config, make_client, write_map_output, gated_transport) -> None:
    gate = threading.Event()
    transport = gated_transport(gate=gate)
    client = make_client(make_config(upload_parallelism=1), transport=transport)
    status.register_client(client)

    client.upload_map_output(write_map_output(2, 0, b"r"))
    assert transport.wait_for_puts(1)
    client.upload_map_output(write_map_output(2, 1, b"s"))

    response = api.get("/transfers")
    gate.set()

    assert response.status_code == 200
    transfers = sorted(response.json(), key=lambda item: item["map_id"])
    assert [item["state"] for item in transfers] == ["RUNNING", "QUEUED"]
    assert all(item["kind"] == TransferKind.UPLOAD.value for item in transfers)
    assert transfers[0]["reduce_id"] == -1


def test_location_lookup(api, make_config, make_client, write_map_output) -> None:
    client = make_client(make_config())
    result = client.upload_map_output(write_map_output(3, 0, b"t" * 5)).result(timeout=5)
    status.register_client(client)

    found = api.get("/locations/3/0/0")
    missing = api.get("/locations/3/1/0")

    assert found.status_code == 200
    assert found.json() == {
        "remote_uri": result.location.remote_uri,
        "index_uri": result.location.index_uri,
        "size_bytes": 5,
    }
    assert missing.status_code == 404


def test_create_status_app_binds_given_client(make_config, make_client) -> None:
    client = make_client(make_config(download_parallelism=3))
    status.reset_client()

    with TestClient(status.create_status_app(client)) as bound:
        response = bound.get("/status")

    assert response.status_code == 200
    assert response.json()["lanes"]["download"]["parallelism"] == 3
