"""Optional on-disk cache of map-output index files."""
from __future__ import annotations

import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Callable, Optional, Tuple

from ..common.layout import decode_index
from ..logging_utils import log_event, setup_logging
from ..models import BlockLocationRef, ShuffleBlockIdentity

IndexFetcher = Callable[[BlockLocationRef], bytes]


class LocalIndexCache:
    """Serves index offsets from local disk after the first remote fetch.

    Every instance writes into its own fresh directory, so nothing survives a
    process restart. When disabled, every lookup goes to *fetcher*.
    """

    def __init__(self, enabled: bool, local_dir: Path, fetcher: IndexFetcher) -> None:
        self.enabled = enabled
        self._fetcher = fetcher
        self._lock = threading.Lock()
        self._local_hits = 0
        self._remote_fetches = 0
        self._logger = setup_logging("shuffle_offload.cache.index")
        self._dir: Optional[Path] = None
        if enabled:
            local_dir = Path(local_dir)
            local_dir.mkdir(parents=True, exist_ok=True)
            self._dir = Path(tempfile.mkdtemp(prefix="shuffle-index-cache-", dir=local_dir))

    @property
    def directory(self) -> Optional[Path]:
        return self._dir

    def _path(self, identity: ShuffleBlockIdentity) -> Path:
        assert self._dir is not None
        identity = identity.map_output()
        return self._dir / (
            f"shuffle_{identity.shuffle_id}_{identity.map_id}_{identity.attempt_id}.index"
        )

    def get_offsets(self, ref: BlockLocationRef) -> Tuple[int, ...]:
        if self._dir is not None:
            path = self._path(ref.identity)
            try:
                payload = path.read_bytes()
            except FileNotFoundError:
                pass
            else:
                with self._lock:
                    self._local_hits += 1
                return decode_index(payload)

        payload = self._fetcher(ref)
        offsets = decode_index(payload)
        with self._lock:
            self._remote_fetches += 1
        if self._dir is not None:
            self.put(ref.identity, payload)
        return offsets

    def put(self, identity: ShuffleBlockIdentity, payload: bytes) -> None:
        """Persist *payload* for *identity*; a no-op when the cache is disabled."""

        if self._dir is None:
            return
        path = self._path(identity)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=self._dir)
        try:
            with os.fdopen(fd, "wb") as out:
                out.write(payload)
            os.replace(tmp_name, path)
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def invalidate(self, identity: ShuffleBlockIdentity) -> None:
        if self._dir is None:
            return
        try:
            self._path(identity).unlink()
        except FileNotFoundError:
            pass

    def contains(self, identity: ShuffleBlockIdentity) -> bool:
        return self._dir is not None and self._path(identity).exists()

    @property
    def local_hits(self) -> int:
        return self._local_hits

    @property
    def remote_fetches(self) -> int:
        return self._remote_fetches

    def close(self) -> None:
        if self._dir is not None:
            shutil.rmtree(self._dir, ignore_errors=True)
            log_event(self._logger, "removed local index cache", directory=str(self._dir))
            self._dir = None


__all__ = ["LocalIndexCache", "IndexFetcher"]
