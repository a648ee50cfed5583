"""Caller-side retry helper for transfer operations.

Workers never retry on their own; callers that want retries wrap the
future-returning client call with :func:`call_with_retries`.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from ..errors import QueueFullError, TransferTimeoutError, TransientTransportError
from ..logging_utils import log_event, setup_logging

T = TypeVar("T")

_LOGGER = setup_logging("shuffle_offload.retry")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff: float = 0.5
    max_backoff: float = 10.0
    multiplier: float = 2.0
    retry_on: Tuple[Type[BaseException], ...] = (
        TransientTransportError,
        TransferTimeoutError,
        QueueFullError,
    )

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.initial_backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff values must be non-negative")

    def backoff(self, attempt: int) -> float:
        """Delay before attempt ``attempt + 1`` (attempts are 1-based)."""

        return min(self.max_backoff, self.initial_backoff * self.multiplier ** (attempt - 1))


def call_with_retries(
    operation: Callable[[], "Future[T]"],
    policy: RetryPolicy = RetryPolicy(),
    *,
    timeout: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Invoke *operation* until its future succeeds or a non-retryable error occurs.

    Errors raised by *operation* itself, such as an admission-time
    ``QueueFullError``, are retried under the same policy as failed futures.
    """

    attempt = 1
    while True:
        try:
            return operation().result(timeout=timeout)
        except policy.retry_on as exc:
            if attempt >= policy.max_attempts:
                raise
            delay = policy.backoff(attempt)
            log_event(
                _LOGGER,
                "retrying transfer",
                level=logging.WARNING,
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=delay,
                error_type=type(exc).__name__,
                detail=str(exc),
            )
            sleep(delay)
            attempt += 1


__all__ = ["RetryPolicy", "call_with_retries"]
