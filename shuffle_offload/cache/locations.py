"""Bounded, time-expiring cache of block location references."""
from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from concurrent.futures import Future
from dataclasses import dataclass, replace
from typing import Callable, Deque, Dict, Optional, Tuple

from ..errors import CacheConsistencyError
from ..logging_utils import log_event, setup_logging
from ..models import BlockLocationRef, ShuffleBlockIdentity

Resolver = Callable[[ShuffleBlockIdentity], Optional[BlockLocationRef]]


@dataclass
class _Entry:
    ref: BlockLocationRef
    expires_at: float


@dataclass(frozen=True)
class CacheStats:
    size: int
    hits: int
    misses: int
    resolutions: int
    evictions: int
    expirations: int


class BlockLocationCache:
    """LRU cache with write-time expiry and single-flight resolution.

    Entries older than ``expiration_millis`` are dropped whether or not they
    were recently read. A hit stamps the returned ref's ``last_access_time``
    with the wall clock. A miss resolved through :meth:`get_or_resolve` runs
    the resolver at most once per identity at a time; concurrent callers for
    the same identity wait on the in-flight resolution.
    """

    def __init__(
        self,
        max_size: int,
        expiration_millis: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        if expiration_millis <= 0:
            raise ValueError("expiration_millis must be positive")
        self.max_size = max_size
        self.ttl_seconds = expiration_millis / 1000.0
        self._clock = clock
        self._wall_clock = wall_clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[ShuffleBlockIdentity, _Entry]" = OrderedDict()
        self._expiry_queue: Deque[Tuple[float, ShuffleBlockIdentity]] = deque()
        self._in_flight: Dict[ShuffleBlockIdentity, Future] = {}
        self._hits = 0
        self._misses = 0
        self._resolutions = 0
        self._evictions = 0
        self._expirations = 0
        self._logger = setup_logging("shuffle_offload.cache.locations")

    def __len__(self) -> int:
        with self._lock:
            self._expire_locked(self._clock())
            return len(self._entries)

    def _expire_locked(self, now: float) -> None:
        while self._expiry_queue and self._expiry_queue[0][0] <= now:
            expires_at, identity = self._expiry_queue.popleft()
            entry = self._entries.get(identity)
            if entry is not None and entry.expires_at == expires_at:
                del self._entries[identity]
                self._expirations += 1

    def _lookup_locked(self, identity: ShuffleBlockIdentity, now: float) -> Optional[BlockLocationRef]:
        self._expire_locked(now)
        entry = self._entries.get(identity)
        if entry is None or entry.expires_at <= now:
            self._misses += 1
            return None
        entry.ref = replace(entry.ref, last_access_time=self._wall_clock())
        self._entries.move_to_end(identity)
        self._hits += 1
        return entry.ref

    def get(self, identity: ShuffleBlockIdentity) -> Optional[BlockLocationRef]:
        with self._lock:
            return self._lookup_locked(identity, self._clock())

    def put(self, identity: ShuffleBlockIdentity, ref: BlockLocationRef) -> None:
        if ref.identity != identity:
            raise CacheConsistencyError(
                f"location for {ref.identity} cannot be cached under {identity}"
            )
        with self._lock:
            self._put_locked(identity, ref)

    def _put_locked(self, identity: ShuffleBlockIdentity, ref: BlockLocationRef) -> None:
        now = self._clock()
        self._expire_locked(now)
        expires_at = now + self.ttl_seconds
        self._entries[identity] = _Entry(ref=ref, expires_at=expires_at)
        self._entries.move_to_end(identity)
        self._expiry_queue.append((expires_at, identity))
        while len(self._entries) > self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            self._evictions += 1
            log_event(
                self._logger,
                "evicted block location",
                level=logging.DEBUG,
                identity=str(evicted),
            )

    def invalidate(self, identity: ShuffleBlockIdentity) -> None:
        with self._lock:
            self._entries.pop(identity, None)

    def get_or_resolve(
        self, identity: ShuffleBlockIdentity, resolver: Resolver
    ) -> Optional[BlockLocationRef]:
        """Return the cached ref or resolve it, joining any in-flight resolution."""

        with self._lock:
            ref = self._lookup_locked(identity, self._clock())
            if ref is not None:
                return ref
            future = self._in_flight.get(identity)
            owner = future is None
            if owner:
                future = Future()
                self._in_flight[identity] = future

        assert future is not None
        if not owner:
            return future.result()

        try:
            with self._lock:
                self._resolutions += 1
            ref = resolver(identity)
            if ref is not None:
                self.put(identity, ref)
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(ref)
            return ref
        finally:
            with self._lock:
                registered = self._in_flight.pop(identity, None)
            if registered is not future:
                raise CacheConsistencyError(
                    f"in-flight resolution for {identity} was replaced concurrently"
                )

    def stats(self) -> CacheStats:
        with self._lock:
            self._expire_locked(self._clock())
            return CacheStats(
                size=len(self._entries),
                hits=self._hits,
                misses=self._misses,
                resolutions=self._resolutions,
                evictions=self._evictions,
                expirations=self._expirations,
            )


__all__ = ["BlockLocationCache", "CacheStats", "Resolver"]
