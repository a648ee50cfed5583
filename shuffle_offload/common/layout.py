"""Remote object naming and the map-output index codec."""
from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Sequence, Tuple

from ..models import MAP_OUTPUT_REDUCE_ID, ShuffleBlockIdentity

_OFFSET_STRUCT = struct.Struct(">q")


class ShuffleStorageStrategy(str, Enum):
    # One data object and one index object per map attempt.
    BASIC = "basic"
    # Several map outputs batched into shared remote objects.
    MERGING = "merging"


SUPPORTED_STORAGE_STRATEGIES = frozenset({ShuffleStorageStrategy.BASIC})


@dataclass(frozen=True)
class RemoteLayout:
    """Maps map-output identities onto remote object URIs."""

    base_uri: str
    app_name: str
    strategy: ShuffleStorageStrategy = ShuffleStorageStrategy.BASIC

    def __post_init__(self) -> None:
        strategy = ShuffleStorageStrategy(self.strategy)
        if strategy not in SUPPORTED_STORAGE_STRATEGIES:
            raise ValueError(f"no remote layout for the {strategy.value!r} storage strategy")
        object.__setattr__(self, "strategy", strategy)

    def _prefix(self, identity: ShuffleBlockIdentity) -> str:
        return (
            f"{self.base_uri.rstrip('/')}/{self.app_name}/shuffle_{identity.shuffle_id}"
            f"/map_{identity.map_id}/attempt_{identity.attempt_id}"
        )

    def data_uri(self, identity: ShuffleBlockIdentity) -> str:
        return self._prefix(identity) + ".data"

    def index_uri(self, identity: ShuffleBlockIdentity) -> str:
        return self._prefix(identity) + ".index"

    def rebase(self, uri: str, other_base: str) -> str:
        """Return *uri* re-rooted from this layout's base onto *other_base*."""

        base = self.base_uri.rstrip("/") + "/"
        if not uri.startswith(base):
            raise ValueError(f"{uri} is not under {self.base_uri}")
        return other_base.rstrip("/") + "/" + uri[len(base):]


def encode_index(offsets: Iterable[int]) -> bytes:
    return b"".join(_OFFSET_STRUCT.pack(offset) for offset in offsets)


def decode_index(payload: bytes) -> Tuple[int, ...]:
    if len(payload) % _OFFSET_STRUCT.size or len(payload) < 2 * _OFFSET_STRUCT.size:
        raise ValueError(f"malformed index file of {len(payload)} bytes")
    offsets = tuple(
        _OFFSET_STRUCT.unpack_from(payload, pos)[0]
        for pos in range(0, len(payload), _OFFSET_STRUCT.size)
    )
    if offsets[0] != 0 or any(b < a for a, b in zip(offsets, offsets[1:])):
        raise ValueError("index offsets must start at zero and be non-decreasing")
    return offsets


def single_partition_index(size_bytes: int) -> bytes:
    return encode_index((0, size_bytes))


def block_range(offsets: Sequence[int], reduce_id: int) -> Tuple[int, int]:
    """Return the ``(start, end)`` byte range of *reduce_id* within the data file."""

    if reduce_id == MAP_OUTPUT_REDUCE_ID:
        return offsets[0], offsets[-1]
    if not 0 <= reduce_id < len(offsets) - 1:
        raise IndexError(
            f"reduce id {reduce_id} out of range for {len(offsets) - 1} partitions"
        )
    return offsets[reduce_id], offsets[reduce_id + 1]


__all__ = [
    "RemoteLayout",
    "ShuffleStorageStrategy",
    "SUPPORTED_STORAGE_STRATEGIES",
    "encode_index",
    "decode_index",
    "single_partition_index",
    "block_range",
]
