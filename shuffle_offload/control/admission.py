"""Admission control, task state tracking and lifecycle event emission."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional, Set, Tuple

from ..config import QueueFullPolicy, ShuffleClientConfig
from ..errors import (
    DuplicateTransferError,
    QueueFullError,
    ShuffleTransferError,
    TransferCancelledError,
    TransferTimeoutError,
    classify_error,
)
from ..logging_utils import log_event, setup_logging
from ..metrics.base import ShuffleClientMetrics
from ..models import (
    DownloadResult,
    ShuffleBlockIdentity,
    TaskState,
    TransferKind,
    TransferTask,
    UploadResult,
    millis_between,
)
from .pool import TransferOutcome, TransferWorkerPool


class TransferFuture(Future):
    """Future handed back to callers for one admitted task.

    ``cancel()`` removes a task that has not started running. For a running
    task it only raises the cancellation flag the worker polls between
    chunks and returns ``False``; remote side effects that already happened
    are not rolled back.
    """

    def __init__(self, task: TransferTask) -> None:
        super().__init__()
        self.task = task

    def cancel(self) -> bool:
        if super().cancel():
            return True
        if not self.done():
            self.task.cancel_requested.set()
        return False


@dataclass
class _Lane:
    kind: TransferKind
    parallelism: int
    max_depth: Optional[int]
    policy: QueueFullPolicy
    not_full: threading.Condition
    pending: Deque[TransferTask]
    active: int = 0
    running: int = 0
    peak_running: int = 0
    # Timed-out tasks whose worker thread is still inside the transport call.
    stranded: int = 0

    @property
    def running_or_pending(self) -> int:
        return len(self.pending) + self.active

    @property
    def has_free_worker(self) -> bool:
        return self.active + self.stranded < self.parallelism


@dataclass(frozen=True)
class LaneSnapshot:
    kind: TransferKind
    parallelism: int
    queued: int
    submitted: int
    running: int
    peak_running: int
    stranded_workers: int = 0

    @property
    def running_or_pending(self) -> int:
        return self.queued + self.submitted + self.running


@dataclass(frozen=True)
class TaskSnapshot:
    kind: TransferKind
    identity: ShuffleBlockIdentity
    state: TaskState
    age_millis: int


class AdmissionController:
    """Admits transfer tasks and drives them through their lifecycle.

    Per direction, at most ``parallelism`` tasks are handed to the worker
    pool at a time; the rest wait in a FIFO queue whose depth is optionally
    bounded. Lifecycle events are emitted while holding the controller lock,
    so the running-or-pending counts they carry are exact.
    """

    def __init__(
        self,
        config: ShuffleClientConfig,
        pool: TransferWorkerPool,
        metrics: ShuffleClientMetrics,
    ) -> None:
        self.config = config
        self.pool = pool
        self.metrics = metrics
        self._lock = threading.RLock()
        self._lanes: Dict[TransferKind, _Lane] = {
            TransferKind.UPLOAD: self._new_lane(
                TransferKind.UPLOAD,
                config.upload_parallelism,
                config.upload_queue_max_depth,
                config.upload_queue_full_policy,
            ),
            TransferKind.DOWNLOAD: self._new_lane(
                TransferKind.DOWNLOAD,
                config.download_parallelism,
                config.download_queue_max_depth,
                config.download_queue_full_policy,
            ),
        }
        self._in_flight: Dict[Tuple[TransferKind, ShuffleBlockIdentity], TransferFuture] = {}
        self._timers: Dict[int, threading.Timer] = {}
        self._stranded: Set[int] = set()
        self._closed = False
        self._logger = setup_logging("shuffle_offload.admission")

    def _new_lane(
        self,
        kind: TransferKind,
        parallelism: int,
        max_depth: Optional[int],
        policy: QueueFullPolicy,
    ) -> _Lane:
        return _Lane(
            kind=kind,
            parallelism=parallelism,
            max_depth=max_depth,
            policy=policy,
            not_full=threading.Condition(self._lock),
            pending=deque(),
        )

    # Introspection

    def running_or_pending(self, kind: TransferKind) -> int:
        with self._lock:
            return self._lanes[kind].running_or_pending

    def lane_snapshot(self, kind: TransferKind) -> LaneSnapshot:
        with self._lock:
            lane = self._lanes[kind]
            return LaneSnapshot(
                kind=kind,
                parallelism=lane.parallelism,
                queued=len(lane.pending),
                submitted=lane.active - lane.running,
                running=lane.running,
                peak_running=lane.peak_running,
                stranded_workers=lane.stranded,
            )

    def snapshot(self) -> List[TaskSnapshot]:
        now = time.monotonic()
        with self._lock:
            return [
                TaskSnapshot(
                    kind=future.task.kind,
                    identity=future.task.identity,
                    state=future.task.state,
                    age_millis=millis_between(future.task.submitted_at, now),
                )
                for future in self._in_flight.values()
            ]

    # Admission

    def submit(self, task: TransferTask) -> TransferFuture:
        """Admit *task* and return its future without waiting for any I/O."""

        lane = self._lanes[task.kind]
        future = TransferFuture(task)
        with self._lock:
            self._check_admissible(task)
            if lane.max_depth is not None and len(lane.pending) >= lane.max_depth:
                self._wait_for_capacity(lane, task)
                self._check_admissible(task)
            task.state = TaskState.QUEUED
            task.submitted_at = time.monotonic()
            future.add_done_callback(self._on_future_done)
            self._in_flight[task.key] = future
            lane.pending.append(task)
            self._emit_requested(task, lane.running_or_pending)
        self._dispatch(task.kind)
        return future

    def _check_admissible(self, task: TransferTask) -> None:
        if self._closed:
            raise ShuffleTransferError("transfer client is closed")
        if task.key in self._in_flight:
            raise DuplicateTransferError(
                f"{task.kind.value.lower()} of {task.identity} is already in flight"
            )

    def _wait_for_capacity(self, lane: _Lane, task: TransferTask) -> None:
        assert lane.max_depth is not None
        if lane.policy is QueueFullPolicy.REJECT:
            raise QueueFullError(
                f"{lane.kind.value.lower()} queue is full ({lane.max_depth} pending); "
                f"rejected {task.identity}"
            )
        timeout = self.config.admission_block_timeout
        deadline = None if timeout is None else time.monotonic() + timeout
        while len(lane.pending) >= lane.max_depth and not self._closed:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                raise QueueFullError(
                    f"{lane.kind.value.lower()} queue stayed full for {timeout}s; "
                    f"rejected {task.identity}"
                )
            lane.not_full.wait(remaining)

    def _dispatch(self, kind: TransferKind) -> None:
        lane = self._lanes[kind]
        dispatched: List[TransferTask] = []
        with self._lock:
            while lane.pending and lane.has_free_worker and not self._closed:
                task = lane.pending.popleft()
                lane.not_full.notify()
                task.state = TaskState.SUBMITTED
                task.dispatched_at = time.monotonic()
                lane.active += 1
                self._emit_submitted(task)
                dispatched.append(task)
        for task in dispatched:
            try:
                self.pool.submit(kind, self._run, task)
            except RuntimeError as exc:
                self._finish(task, error=ShuffleTransferError(f"worker pool unavailable: {exc}"))

    # Execution

    def _run(self, task: TransferTask) -> None:
        with self._lock:
            future = self._in_flight.get(task.key)
        if future is None or future.task is not task:
            return
        if not future.set_running_or_notify_cancel():
            return
        lane = self._lanes[task.kind]
        with self._lock:
            task.state = TaskState.RUNNING
            task.started_at = time.monotonic()
            lane.running += 1
            lane.peak_running = max(lane.peak_running, lane.running)
            if self.config.transfer_timeout is not None:
                task.deadline = task.started_at + self.config.transfer_timeout
                timer = threading.Timer(self.config.transfer_timeout, self._on_deadline, args=(task,))
                timer.daemon = True
                self._timers[id(task)] = timer
                timer.start()
            self._emit_started(task)

        try:
            outcome = self.pool.execute(task)
        except BaseException as exc:  # noqa: BLE001 - every failure becomes a typed task error
            error = classify_error(exc)
            if error is not exc:
                error.__cause__ = exc
            self._finish(task, error=error)
            if not isinstance(exc, Exception):
                raise
            return
        if task.cancel_requested.is_set():
            outcome.discard()
            self._finish(task, error=TransferCancelledError(f"{task.identity} was cancelled"))
            return
        self._finish(task, outcome=outcome)

    def _on_deadline(self, task: TransferTask) -> None:
        task.cancel_requested.set()
        self._finish(
            task,
            error=TransferTimeoutError(
                f"{task.kind.value.lower()} of {task.identity} exceeded "
                f"{self.config.transfer_timeout}s"
            ),
            stranded=True,
        )

    def _finish(
        self,
        task: TransferTask,
        *,
        outcome: Optional[TransferOutcome] = None,
        error: Optional[BaseException] = None,
        stranded: bool = False,
    ) -> None:
        lane = self._lanes[task.kind]
        result: Any = None
        with self._lock:
            if task.state.terminal:
                # Lost the race against the deadline; the caller already has an error.
                if outcome is not None:
                    outcome.discard()
                if id(task) not in self._stranded:
                    return
                # The worker thread is back, so its slot can take new work.
                self._stranded.discard(id(task))
                lane.stranded -= 1
                future = None
            else:
                was_running = task.state is TaskState.RUNNING
                task.state = TaskState.FAILED if error is not None else TaskState.COMPLETED
                lane.active -= 1
                if was_running:
                    lane.running -= 1
                    if stranded:
                        self._stranded.add(id(task))
                        lane.stranded += 1
                future = self._in_flight.pop(task.key)
                timer = self._timers.pop(id(task), None)
                if timer is not None:
                    timer.cancel()
                now = time.monotonic()
                if error is not None:
                    self._emit_failed(task, lane.running_or_pending, error)
                else:
                    assert outcome is not None
                    result = self._build_result(task, outcome, now)
                    self._emit_completed(task, outcome, now, lane.running_or_pending)

        if future is not None:
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(result)
        self._dispatch(task.kind)

    def _build_result(self, task: TransferTask, outcome: TransferOutcome, now: float) -> Any:
        started = task.started_at or now
        if task.kind is TransferKind.UPLOAD:
            return UploadResult(
                identity=task.identity,
                location=outcome.location,
                bytes_uploaded=outcome.bytes_transferred,
                duration_ms=millis_between(started, now),
                latency_ms=millis_between(task.submitted_at, now),
            )
        return DownloadResult(
            identity=task.identity,
            location=outcome.location,
            bytes_downloaded=outcome.bytes_transferred,
            duration_ms=millis_between(started, now),
            data=outcome.data,
            spilled=outcome.spilled,
            source=outcome.source,
        )

    def _on_future_done(self, future: Future) -> None:
        if not future.cancelled():
            return
        task: TransferTask = future.task  # type: ignore[attr-defined]
        lane = self._lanes[task.kind]
        with self._lock:
            if task.state is TaskState.QUEUED:
                lane.pending.remove(task)
                lane.not_full.notify()
            elif task.state is TaskState.SUBMITTED:
                lane.active -= 1
            else:
                return
            task.state = TaskState.CANCELLED
            self._in_flight.pop(task.key, None)
            log_event(
                self._logger,
                "transfer cancelled before running",
                kind=task.kind.value,
                identity=str(task.identity),
                running_or_pending=lane.running_or_pending,
            )
        self._dispatch(task.kind)

    def close(self, *, wait: bool = True) -> None:
        """Cancel every queued task and stop the worker pool."""

        with self._lock:
            self._closed = True
            queued = [future for future in self._in_flight.values() if future.task.state is TaskState.QUEUED]
            for lane in self._lanes.values():
                lane.not_full.notify_all()
        for future in queued:
            future.cancel()
        self.pool.shutdown(wait=wait)
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    # Lifecycle events

    def _emit(self, method: str, *args: Any) -> None:
        try:
            getattr(self.metrics, method)(*args)
        except Exception:  # noqa: BLE001 - a broken sink must not fail transfers
            self._logger.exception("metrics sink %s failed", method)

    def _emit_requested(self, task: TransferTask, count: int) -> None:
        ident = task.identity
        if task.kind is TransferKind.UPLOAD:
            self._emit("mark_upload_requested", ident.shuffle_id, ident.map_id, ident.attempt_id, count)
        else:
            self._emit(
                "mark_download_requested",
                ident.shuffle_id,
                ident.map_id,
                ident.reduce_id,
                ident.attempt_id,
                count,
            )

    def _emit_submitted(self, task: TransferTask) -> None:
        ident = task.identity
        latency = millis_between(task.submitted_at, task.dispatched_at or task.submitted_at)
        if task.kind is TransferKind.UPLOAD:
            self._emit(
                "mark_upload_request_submitted",
                ident.shuffle_id,
                ident.map_id,
                ident.attempt_id,
                latency,
            )
        else:
            log_event(
                self._logger,
                "download submitted to worker pool",
                level=logging.DEBUG,
                identity=str(ident),
                queue_latency_millis=latency,
            )

    def _emit_started(self, task: TransferTask) -> None:
        ident = task.identity
        if task.kind is TransferKind.UPLOAD:
            self._emit("mark_upload_started", ident.shuffle_id, ident.map_id, ident.attempt_id)
        else:
            self._emit(
                "mark_download_started",
                ident.shuffle_id,
                ident.map_id,
                ident.reduce_id,
                ident.attempt_id,
            )

    def _emit_failed(self, task: TransferTask, count: int, error: BaseException) -> None:
        ident = task.identity
        log_event(
            self._logger,
            "transfer failed",
            level=logging.WARNING,
            kind=task.kind.value,
            identity=str(ident),
            error_type=type(error).__name__,
            detail=str(error),
        )
        if task.kind is TransferKind.UPLOAD:
            self._emit("mark_upload_failed", ident.shuffle_id, ident.map_id, ident.attempt_id, count)
        else:
            self._emit(
                "mark_download_failed",
                ident.shuffle_id,
                ident.map_id,
                ident.reduce_id,
                ident.attempt_id,
                count,
            )

    def _emit_completed(
        self, task: TransferTask, outcome: TransferOutcome, now: float, count: int
    ) -> None:
        ident = task.identity
        duration = millis_between(task.started_at or now, now)
        if task.kind is TransferKind.UPLOAD:
            self._emit(
                "mark_upload_completed",
                ident.shuffle_id,
                ident.map_id,
                ident.attempt_id,
                duration,
                outcome.bytes_transferred,
                millis_between(task.submitted_at, now),
                count,
            )
        else:
            self._emit(
                "mark_download_completed",
                ident.shuffle_id,
                ident.map_id,
                ident.reduce_id,
                ident.attempt_id,
                duration,
            )


__all__ = [
    "AdmissionController",
    "TransferFuture",
    "LaneSnapshot",
    "TaskSnapshot",
]
