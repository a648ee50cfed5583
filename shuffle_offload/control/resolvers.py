"""Remote location resolution used on block location cache misses."""
from __future__ import annotations

import json
from typing import Any, Dict, Optional, Protocol

from redis import Redis

from ..common.layout import RemoteLayout, decode_index
from ..config import RedisConfig
from ..data.base import ObjectNotFoundError
from ..data.routing import ReadPath
from ..models import MAP_OUTPUT_REDUCE_ID, BlockLocationRef, ShuffleBlockIdentity


class LocationResolver(Protocol):
    def resolve(self, identity: ShuffleBlockIdentity) -> Optional[BlockLocationRef]:
        """Look up the remote location of a map output, or ``None`` if unknown."""

    def register(self, ref: BlockLocationRef) -> None:
        """Record a freshly uploaded location."""


class TransportLocationResolver:
    """Resolves locations by probing the remote index object of the map output."""

    def __init__(self, layout: RemoteLayout, read_path: ReadPath) -> None:
        self.layout = layout
        self.read_path = read_path

    def resolve(self, identity: ShuffleBlockIdentity) -> Optional[BlockLocationRef]:
        identity = identity.map_output()
        index_uri = self.layout.index_uri(identity)
        try:
            offsets = decode_index(self.read_path.read_all(index_uri))
        except ObjectNotFoundError:
            return None
        return BlockLocationRef(
            identity=identity,
            remote_uri=self.layout.data_uri(identity),
            index_uri=index_uri,
            size_bytes=offsets[-1],
        )

    def register(self, ref: BlockLocationRef) -> None:
        # The uploaded index object is the registration.
        return None


class RedisLocationRegistry:
    """JSON location records shared between executors through Redis."""

    def __init__(
        self,
        client: Redis,
        namespace: str = "shuffle_offload",
        expiry_seconds: Optional[int] = None,
    ) -> None:
        self._client = client
        self._namespace = namespace
        self._expiry_seconds = expiry_seconds

    @classmethod
    def from_config(
        cls, config: RedisConfig, namespace: str = "shuffle_offload"
    ) -> "RedisLocationRegistry":
        client = Redis(
            host=config.host,
            port=config.port,
            db=config.db,
            encoding="utf-8",
            decode_responses=True,
        )
        return cls(client, namespace=namespace, expiry_seconds=config.expiry_seconds)

    def _key(self, identity: ShuffleBlockIdentity) -> str:
        identity = identity.map_output()
        return (
            f"{self._namespace}:locations:{identity.shuffle_id}:"
            f"{identity.map_id}:{identity.attempt_id}"
        )

    def register(self, ref: BlockLocationRef) -> None:
        self._client.set(self._key(ref.identity), self._dump(ref), ex=self._expiry_seconds)

    def resolve(self, identity: ShuffleBlockIdentity) -> Optional[BlockLocationRef]:
        raw = self._client.get(self._key(identity))
        if raw is None:
            return None
        return self._load(raw)

    def forget(self, identity: ShuffleBlockIdentity) -> None:
        self._client.delete(self._key(identity))

    def health_check(self) -> None:
        self._client.ping()

    @staticmethod
    def _dump(ref: BlockLocationRef) -> str:
        payload: Dict[str, Any] = {
            "shuffle_id": ref.identity.shuffle_id,
            "map_id": ref.identity.map_id,
            "attempt_id": ref.identity.attempt_id,
            "remote_uri": ref.remote_uri,
            "index_uri": ref.index_uri,
            "size_bytes": ref.size_bytes,
            "last_access_time": ref.last_access_time,
        }
        return json.dumps(payload)

    @staticmethod
    def _load(raw: Any) -> BlockLocationRef:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
        identity = ShuffleBlockIdentity(
            shuffle_id=int(data["shuffle_id"]),
            map_id=int(data["map_id"]),
            reduce_id=MAP_OUTPUT_REDUCE_ID,
            attempt_id=int(data["attempt_id"]),
        )
        return BlockLocationRef(
            identity=identity,
            remote_uri=data["remote_uri"],
            index_uri=data["index_uri"],
            size_bytes=int(data["size_bytes"]),
            last_access_time=float(data.get("last_access_time", 0.0)),
        )


__all__ = ["LocationResolver", "TransportLocationResolver", "RedisLocationRegistry"]
