"""Ordered read path across the primary store and the Hadoop filesystem path."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import BinaryIO, List, Optional, Sequence, Tuple

from ..common.layout import RemoteLayout
from ..logging_utils import log_event, setup_logging
from .base import ByteRange, StorageTransport, TransportError

PRIMARY = "primary"
HADOOP = "hadoop"


@dataclass(frozen=True)
class ReadRoute:
    """A transport plus the base URI under which it sees the shuffle layout."""

    name: str
    transport: StorageTransport
    base_uri: Optional[str] = None


class ReadPath:
    """Opens remote objects by trying each route in order.

    A route whose transport fails is skipped in favour of the next one; the
    last failure is raised once every route has failed.
    """

    def __init__(self, layout: RemoteLayout, routes: Sequence[ReadRoute]) -> None:
        if not routes:
            raise ValueError("at least one read route is required")
        self.layout = layout
        self.routes: List[ReadRoute] = list(routes)
        self._logger = setup_logging("shuffle_offload.data.routing")

    @classmethod
    def build(
        cls,
        layout: RemoteLayout,
        primary: StorageTransport,
        *,
        hadoop: Optional[StorageTransport] = None,
        hadoop_base_uri: Optional[str] = None,
        prefer_hadoop: bool = False,
    ) -> "ReadPath":
        routes = [ReadRoute(PRIMARY, primary)]
        if hadoop is not None:
            hadoop_route = ReadRoute(HADOOP, hadoop, hadoop_base_uri)
            if prefer_hadoop:
                routes.insert(0, hadoop_route)
            else:
                routes.append(hadoop_route)
        return cls(layout, routes)

    def _route_uri(self, route: ReadRoute, uri: str) -> str:
        if route.base_uri is None:
            return uri
        return self.layout.rebase(uri, route.base_uri)

    def open(self, uri: str, byte_range: Optional[ByteRange] = None) -> Tuple[BinaryIO, str]:
        """Return ``(stream, route_name)`` for the first route that can serve *uri*."""

        last_error: Optional[TransportError] = None
        for route in self.routes:
            try:
                stream = route.transport.get_object(self._route_uri(route, uri), byte_range)
            except TransportError as exc:
                last_error = exc
                log_event(
                    self._logger,
                    "read route failed",
                    level=logging.WARNING,
                    route=route.name,
                    uri=uri,
                    detail=str(exc),
                )
                continue
            return stream, route.name
        assert last_error is not None
        raise last_error

    def read_all(self, uri: str) -> bytes:
        stream, _ = self.open(uri)
        try:
            return stream.read()
        finally:
            stream.close()


__all__ = ["ReadPath", "ReadRoute", "PRIMARY", "HADOOP"]
