import threading
import time
from dataclasses import replace

import pytest

from shuffle_offload.cache.locations import BlockLocationCache
from shuffle_offload.errors import CacheConsistencyError
from shuffle_offload.models import BlockLocationRef, ShuffleBlockIdentity


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _identity(map_id: int) -> ShuffleBlockIdentity:
    return ShuffleBlockIdentity(0, map_id, -1, 0)


def _ref(map_id: int) -> BlockLocationRef:
    identity = _identity(map_id)
    return BlockLocationRef(
        identity=identity,
        remote_uri=f"file:///remote/map_{map_id}.data",
        index_uri=f"file:///remote/map_{map_id}.index",
        size_bytes=map_id * 10,
    )


def test_hit_returns_ref_and_counts() -> None:
    cache = BlockLocationCache(10, 1000)
    ref = _ref(1)
    cache.put(ref.identity, ref)

    assert cache.get(_identity(1)) == ref
    assert cache.get(_identity(2)) is None
    stats = cache.stats()
    assert (stats.size, stats.hits, stats.misses) == (1, 1, 1)


def test_hit_stamps_last_access_time() -> None:
    wall = FakeClock()
    cache = BlockLocationCache(10, 60_000, wall_clock=wall)
    ref = replace(_ref(1), last_access_time=0.0)
    cache.put(ref.identity, ref)

    wall.advance(30)
    first = cache.get(_identity(1))
    wall.advance(5)
    second = cache.get(_identity(1))

    assert first.last_access_time == 1030.0
    assert second.last_access_time == 1035.0
    assert second.remote_uri == ref.remote_uri
    assert ref.last_access_time == 0.0


def test_entries_expire_after_write_even_when_read() -> None:
    clock = FakeClock()
    cache = BlockLocationCache(10, 1000, clock=clock)
    cache.put(_identity(1), _ref(1))

    clock.advance(0.6)
    assert cache.get(_identity(1)) is not None
    clock.advance(0.6)
    assert cache.get(_identity(1)) is None
    assert cache.stats().expirations == 1
    assert len(cache) == 0


def test_rewrite_restarts_expiry() -> None:
    clock = FakeClock()
    cache = BlockLocationCache(10, 1000, clock=clock)
    cache.put(_identity(1), _ref(1))
    clock.advance(0.8)
    cache.put(_identity(1), _ref(1))
    clock.advance(0.8)

    assert cache.get(_identity(1)) is not None


def test_capacity_evicts_least_recently_used() -> None:
    cache = BlockLocationCache(2, 60_000)
    cache.put(_identity(1), _ref(1))
    cache.put(_identity(2), _ref(2))
    cache.get(_identity(1))
    cache.put(_identity(3), _ref(3))

    assert cache.get(_identity(1)) is not None
    assert cache.get(_identity(2)) is None
    assert cache.get(_identity(3)) is not None
    assert cache.stats().evictions == 1


def test_put_under_wrong_identity_is_rejected() -> None:
    cache = BlockLocationCache(2, 60_000)

    with pytest.raises(CacheConsistencyError):
        cache.put(_identity(2), _ref(1))


def test_invalidate_drops_entry() -> None:
    cache = BlockLocationCache(2, 60_000)
    cache.put(_identity(1), _ref(1))
    cache.invalidate(_identity(1))

    assert cache.get(_identity(1)) is None


def test_concurrent_misses_resolve_once() -> None:
    cache = BlockLocationCache(10, 60_000)
    release = threading.Event()
    calls = []

    def resolver(identity: ShuffleBlockIdentity) -> BlockLocationRef:
        calls.append(identity)
        release.wait(5)
        return _ref(identity.map_id)

    results = []
    threads = [
        threading.Thread(target=lambda: results.append(cache.get_or_resolve(_identity(4), resolver)))
        for _ in range(8)
    ]
    for thread in threads:
        thread.start()
    time.sleep(0.1)
    release.set()
    for thread in threads:
        thread.join(timeout=5)

    assert len(calls) == 1
    assert len(results) == 8
    assert all(result == results[0] for result in results)
    assert cache.stats().resolutions == 1


def test_failed_resolution_reaches_waiters_and_is_not_cached() -> None:
    cache = BlockLocationCache(10, 60_000)

    def broken(identity: ShuffleBlockIdentity) -> BlockLocationRef:
        raise RuntimeError("registry down")

    with pytest.raises(RuntimeError):
        cache.get_or_resolve(_identity(5), broken)

    assert cache.get_or_resolve(_identity(5), lambda identity: _ref(5)) == _ref(5)


def test_unknown_location_is_not_cached() -> None:
    cache = BlockLocationCache(10, 60_000)
    calls = []

    def resolver(identity: ShuffleBlockIdentity):
        calls.append(identity)
        return None

    assert cache.get_or_resolve(_identity(6), resolver) is None
    assert cache.get_or_resolve(_identity(6), resolver) is None
    assert len(calls) == 2


@pytest.mark.parametrize("max_size, expiration", [(0, 10), (10, 0)])
def test_rejects_non_positive_limits(max_size: int, expiration: int) -> None:
    with pytest.raises(ValueError):
        BlockLocationCache(max_size, expiration)
