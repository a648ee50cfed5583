import io
import json
import logging
from pathlib import Path

from shuffle_offload.logging_utils import JsonFormatter, log_event, setup_logging
from shuffle_offload.metrics import (
    LoggingShuffleClientMetrics,
    NoOpShuffleClientMetrics,
    ShuffleClientMetrics,
)


def _capture_logger(name: str):
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    logger = logging.getLogger(name)
    logger.handlers = [handler]
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger, stream


def _records(stream: io.StringIO):
    return [json.loads(line) for line in stream.getvalue().splitlines()]


def test_sinks_satisfy_metrics_protocol(recording_metrics) -> None:
    assert isinstance(NoOpShuffleClientMetrics(), ShuffleClientMetrics)
    assert isinstance(LoggingShuffleClientMetrics("app"), ShuffleClientMetrics)
    assert isinstance(recording_metrics, ShuffleClientMetrics)


def test_upload_completed_is_logged_with_all_fields() -> None:
    logger, stream = _capture_logger("tests.metrics.upload")
    sink = LoggingShuffleClientMetrics("etl-app", logger=logger)

    sink.mark_upload_completed(1, 2, 0, 15, 100, 22, 3)

    (record,) = _records(stream)
    assert record["message"] == "Finished uploading shuffle map output file."
    assert record["level"] == "INFO"
    assert record["app_name"] == "etl-app"
    assert record["shuffle_id"] == 1
    assert record["map_id"] == 2
    assert record["attempt_id"] == 0
    assert record["duration_millis"] == 15
    assert record["bytes_uploaded"] == 100
    assert record["latency_millis"] == 22
    assert record["num_running_or_pending_uploads"] == 3


def test_every_lifecycle_transition_produces_one_line() -> None:
    logger, stream = _capture_logger("tests.metrics.all")
    sink = LoggingShuffleClientMetrics("etl-app", logger=logger)

    sink.mark_upload_requested(1, 2, 0, 1)
    sink.mark_upload_request_submitted(1, 2, 0, 4)
    sink.mark_upload_started(1, 2, 0)
    sink.mark_upload_failed(1, 2, 0, 0)
    sink.mark_download_requested(1, 2, 3, 0, 1)
    sink.mark_download_started(1, 2, 3, 0)
    sink.mark_download_completed(1, 2, 3, 0, 9)
    sink.mark_download_failed(1, 2, 3, 0, 0)

    records = _records(stream)
    assert len(records) == 8
    assert records[1]["request_submission_latency_millis"] == 4
    assert records[3]["num_running_or_pending_uploads"] == 0
    assert records[4]["reduce_id"] == 3
    assert records[6]["duration_millis"] == 9


def test_setup_logging_writes_json_file_and_drops_none_fields(tmp_path: Path) -> None:
    log_file = tmp_path / "shuffle.log"
    logger = setup_logging("tests.setup_logging", log_file=str(log_file))

    log_event(logger, "uploaded map output", identity="shuffle_1_2_-1@0", parts=None, bytes=10)
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)

    (record,) = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
    assert record["message"] == "uploaded map output"
    assert record["logger"] == "tests.setup_logging"
    assert record["identity"] == "shuffle_1_2_-1@0"
    assert record["bytes"] == 10
    assert "parts" not in record


def test_setup_logging_is_idempotent() -> None:
    first = setup_logging("tests.idempotent")
    second = setup_logging("tests.idempotent")

    assert first is second
    assert len(second.handlers) == 1
