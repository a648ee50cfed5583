"""FastAPI status surface exposing backpressure and in-flight transfers."""
from __future__ import annotations

from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException
from pydantic import BaseModel, Field

from .client import TransferClient
from .models import MAP_OUTPUT_REDUCE_ID, ShuffleBlockIdentity, TransferKind


class LaneStatus(BaseModel):
    parallelism: int
    queued: int
    submitted: int
    running: int
    running_or_pending: int
    peak_running: int
    stranded_workers: int = 0


class LocationCacheStatus(BaseModel):
    size: int
    hits: int
    misses: int
    resolutions: int
    evictions: int
    expirations: int


class IndexCacheStatus(BaseModel):
    enabled: bool
    local_hits: int
    remote_fetches: int


class ClientStatus(BaseModel):
    app_name: str
    lanes: Dict[str, LaneStatus]
    location_cache: LocationCacheStatus
    index_cache: IndexCacheStatus


class TransferStatus(BaseModel):
    kind: TransferKind
    shuffle_id: int
    map_id: int
    reduce_id: int
    attempt_id: int
    state: str
    age_millis: int = Field(..., ge=0)


class LocationStatus(BaseModel):
    remote_uri: str
    index_uri: str
    size_bytes: int


_CLIENT_INSTANCE: Optional[TransferClient] = None


def register_client(client: TransferClient) -> None:
    global _CLIENT_INSTANCE
    _CLIENT_INSTANCE = client


def reset_client() -> None:
    global _CLIENT_INSTANCE
    _CLIENT_INSTANCE = None


def client_dependency() -> TransferClient:
    if _CLIENT_INSTANCE is None:
        raise HTTPException(status_code=503, detail="no transfer client registered")
    return _CLIENT_INSTANCE


router = APIRouter()


@router.get("/status", response_model=ClientStatus)
async def get_status(client: TransferClient = Depends(client_dependency)) -> ClientStatus:
    raw = client.status()
    lanes = {
        name: LaneStatus(
            parallelism=lane.parallelism,
            queued=lane.queued,
            submitted=lane.submitted,
            running=lane.running,
            running_or_pending=lane.running_or_pending,
            peak_running=lane.peak_running,
            stranded_workers=lane.stranded_workers,
        )
        for name, lane in raw["lanes"].items()
    }
    stats = raw["location_cache"]
    return ClientStatus(
        app_name=raw["app_name"],
        lanes=lanes,
        location_cache=LocationCacheStatus(
            size=stats.size,
            hits=stats.hits,
            misses=stats.misses,
            resolutions=stats.resolutions,
            evictions=stats.evictions,
            expirations=stats.expirations,
        ),
        index_cache=IndexCacheStatus(**raw["index_cache"]),
    )


@router.get("/transfers", response_model=List[TransferStatus])
async def list_transfers(
    client: TransferClient = Depends(client_dependency),
) -> List[TransferStatus]:
    return [
        TransferStatus(
            kind=task.kind,
            shuffle_id=task.identity.shuffle_id,
            map_id=task.identity.map_id,
            reduce_id=task.identity.reduce_id,
            attempt_id=task.identity.attempt_id,
            state=task.state.value,
            age_millis=task.age_millis,
        )
        for task in client.admission.snapshot()
    ]


@router.get("/locations/{shuffle_id}/{map_id}/{attempt_id}", response_model=LocationStatus)
async def get_location(
    shuffle_id: int,
    map_id: int,
    attempt_id: int,
    client: TransferClient = Depends(client_dependency),
) -> LocationStatus:
    identity = ShuffleBlockIdentity(shuffle_id, map_id, MAP_OUTPUT_REDUCE_ID, attempt_id)
    ref = client.cached_location(identity)
    if ref is None:
        raise HTTPException(status_code=404, detail="location not cached")
    return LocationStatus(remote_uri=ref.remote_uri, index_uri=ref.index_uri, size_bytes=ref.size_bytes)



def create_status_app(client: Optional[TransferClient] = None) -> FastAPI:
    """Build a status application, bound to *client* when one is given."""

    status_app = FastAPI(title="Shuffle Offload Status", version="0.1.0")
    status_app.include_router(router)
    if client is not None:
        status_app.dependency_overrides[client_dependency] = lambda: client
    return status_app


app = create_status_app()

__all__ = ["app", "create_status_app", "register_client", "reset_client", "client_dependency"]
