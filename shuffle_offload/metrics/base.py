"""Lifecycle event sink contract."""
from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class ShuffleClientMetrics(Protocol):
    """Receives one call per transfer lifecycle transition.

    Calls are made synchronously on the transition path and must return
    quickly.
    """

    def mark_download_requested(
        self,
        shuffle_id: int,
        map_id: int,
        reduce_id: int,
        attempt_id: int,
        num_running_or_pending_downloads: int,
    ) -> None: ...

    def mark_download_started(
        self, shuffle_id: int, map_id: int, reduce_id: int, attempt_id: int
    ) -> None: ...

    def mark_download_completed(
        self,
        shuffle_id: int,
        map_id: int,
        reduce_id: int,
        attempt_id: int,
        duration_millis: int,
    ) -> None: ...

    def mark_download_failed(
        self,
        shuffle_id: int,
        map_id: int,
        reduce_id: int,
        attempt_id: int,
        num_running_or_pending_downloads: int,
    ) -> None: ...

    def mark_upload_requested(
        self, shuffle_id: int, map_id: int, attempt_id: int, num_running_or_pending_uploads: int
    ) -> None: ...

    def mark_upload_request_submitted(
        self, shuffle_id: int, map_id: int, attempt_id: int, request_submission_latency_millis: int
    ) -> None: ...

    def mark_upload_started(self, shuffle_id: int, map_id: int, attempt_id: int) -> None: ...

    def mark_upload_failed(
        self, shuffle_id: int, map_id: int, attempt_id: int, num_running_or_pending_uploads: int
    ) -> None: ...

    def mark_upload_completed(
        self,
        shuffle_id: int,
        map_id: int,
        attempt_id: int,
        duration_millis: int,
        bytes_uploaded: int,
        latency_millis: int,
        num_running_or_pending_uploads: int,
    ) -> None: ...


class NoOpShuffleClientMetrics:
    """Discards every event."""

    def mark_download_requested(self, *args, **kwargs) -> None:
        pass

    def mark_download_started(self, *args, **kwargs) -> None:
        pass

    def mark_download_completed(self, *args, **kwargs) -> None:
        pass

    def mark_download_failed(self, *args, **kwargs) -> None:
        pass

    def mark_upload_requested(self, *args, **kwargs) -> None:
        pass

    def mark_upload_request_submitted(self, *args, **kwargs) -> None:
        pass

    def mark_upload_started(self, *args, **kwargs) -> None:
        pass

    def mark_upload_failed(self, *args, **kwargs) -> None:
        pass

    def mark_upload_completed(self, *args, **kwargs) -> None:
        pass


__all__ = ["ShuffleClientMetrics", "NoOpShuffleClientMetrics"]
