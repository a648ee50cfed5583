"""Metrics sink that writes every lifecycle transition as a structured log line."""
from __future__ import annotations

import logging
from typing import Optional

from ..logging_utils import log_event, setup_logging


class LoggingShuffleClientMetrics:
    def __init__(self, app_name: str, *, logger: Optional[logging.Logger] = None) -> None:
        self.app_name = app_name
        self._logger = logger or setup_logging("shuffle_offload.metrics")

    def _log(self, message: str, **fields) -> None:
        log_event(self._logger, message, app_name=self.app_name, **fields)

    def mark_download_requested(
        self,
        shuffle_id: int,
        map_id: int,
        reduce_id: int,
        attempt_id: int,
        num_running_or_pending_downloads: int,
    ) -> None:
        self._log(
            "Requested to download shuffle block from remote storage.",
            shuffle_id=shuffle_id,
            map_id=map_id,
            reduce_id=reduce_id,
            attempt_id=attempt_id,
            num_running_or_pending_downloads=num_running_or_pending_downloads,
        )

    def mark_download_started(
        self, shuffle_id: int, map_id: int, reduce_id: int, attempt_id: int
    ) -> None:
        self._log(
            "Starting to download shuffle block from remote storage.",
            shuffle_id=shuffle_id,
            map_id=map_id,
            reduce_id=reduce_id,
            attempt_id=attempt_id,
        )

    def mark_download_completed(
        self,
        shuffle_id: int,
        map_id: int,
        reduce_id: int,
        attempt_id: int,
        duration_millis: int,
    ) -> None:
        self._log(
            "Finished downloading shuffle block from remote storage.",
            shuffle_id=shuffle_id,
            map_id=map_id,
            reduce_id=reduce_id,
            attempt_id=attempt_id,
            duration_millis=duration_millis,
        )

    def mark_download_failed(
        self,
        shuffle_id: int,
        map_id: int,
        reduce_id: int,
        attempt_id: int,
        num_running_or_pending_downloads: int,
    ) -> None:
        self._log(
            "Failed to download shuffle block from remote storage.",
            shuffle_id=shuffle_id,
            map_id=map_id,
            reduce_id=reduce_id,
            attempt_id=attempt_id,
            num_running_or_pending_downloads=num_running_or_pending_downloads,
        )

    def mark_upload_requested(
        self, shuffle_id: int, map_id: int, attempt_id: int, num_running_or_pending_uploads: int
    ) -> None:
        self._log(
            "Requested to upload map output file.",
            shuffle_id=shuffle_id,
            map_id=map_id,
            attempt_id=attempt_id,
            num_running_or_pending_uploads=num_running_or_pending_uploads,
        )

    def mark_upload_request_submitted(
        self, shuffle_id: int, map_id: int, attempt_id: int, request_submission_latency_millis: int
    ) -> None:
        self._log(
            "Requested upload of map output file was submitted to the worker pool.",
            shuffle_id=shuffle_id,
            map_id=map_id,
            attempt_id=attempt_id,
            request_submission_latency_millis=request_submission_latency_millis,
        )

    def mark_upload_started(self, shuffle_id: int, map_id: int, attempt_id: int) -> None:
        self._log(
            "Beginning to upload shuffle file.",
            shuffle_id=shuffle_id,
            map_id=map_id,
            attempt_id=attempt_id,
        )

    def mark_upload_failed(
        self, shuffle_id: int, map_id: int, attempt_id: int, num_running_or_pending_uploads: int
    ) -> None:
        self._log(
            "Failed to upload shuffle file.",
            shuffle_id=shuffle_id,
            map_id=map_id,
            attempt_id=attempt_id,
            num_running_or_pending_uploads=num_running_or_pending_uploads,
        )

    def mark_upload_completed(
        self,
        shuffle_id: int,
        map_id: int,
        attempt_id: int,
        duration_millis: int,
        bytes_uploaded: int,
        latency_millis: int,
        num_running_or_pending_uploads: int,
    ) -> None:
        self._log(
            "Finished uploading shuffle map output file.",
            shuffle_id=shuffle_id,
            map_id=map_id,
            attempt_id=attempt_id,
            duration_millis=duration_millis,
            bytes_uploaded=bytes_uploaded,
            latency_millis=latency_millis,
            num_running_or_pending_uploads=num_running_or_pending_uploads,
        )


__all__ = ["LoggingShuffleClientMetrics"]
