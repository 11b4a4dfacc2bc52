import asyncio
from datetime import date
from functools import lru_cache
from typing import Optional

from loguru import logger
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from mapwatch.db import get_engine
from mapwatch.errors import IngestError, IngestStage, NotFound, StoreError
from mapwatch.models.schemas import Quadrant
from mapwatch.service import MapwatchService
from mapwatch.snapshot_store import SnapshotStore

router = APIRouter()

_INGEST_STATUS = {
    IngestStage.FETCH: 502,
    IngestStage.PARSE: 422,
    IngestStage.STORE: 500,
}


class IngestRequest(BaseModel):
    url: str
    snapshot_date: Optional[date] = None


@lru_cache(maxsize=1)
def get_service() -> MapwatchService:
    store = SnapshotStore(get_engine())
    store.init_schema()
    return MapwatchService(store)


def _http_error(e: NotFound | IngestError | StoreError | ValueError) -> HTTPException:
    """Map engine failures onto status codes."""
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, IngestError):
        return HTTPException(status_code=_INGEST_STATUS[e.stage], detail=str(e))
    if isinstance(e, StoreError):
        logger.error("Store failure: {}", e)
        return HTTPException(status_code=500, detail="Snapshot store unavailable")
    return HTTPException(status_code=422, detail=str(e))


async def _call(fn, *args):
    try:
        return await asyncio.to_thread(fn, *args)
    except (NotFound, StoreError, ValueError) as e:
        raise _http_error(e) from e


@router.post("/servers/{server_id}/ingest")
async def ingest(server_id: int, body: IngestRequest, service: MapwatchService = Depends(get_service)):
    """Fetch the server's dump now and store it as the day's snapshot."""
    try:
        return await service.ingest(server_id, body.url, body.snapshot_date)
    except IngestError as e:
        raise _http_error(e) from e


@router.get("/servers/{server_id}/snapshots")
async def list_snapshots(
    server_id: int,
    limit: int = Query(10, ge=1, le=100),
    service: MapwatchService = Depends(get_service),
):
    """Available snapshot days with settlement counts, newest first."""
    snapshots = await _call(service.snapshots, server_id, limit)
    return {"server_id": server_id, "snapshots": snapshots}


@router.get("/servers/{server_id}/snapshot")
async def get_snapshot(
    server_id: int,
    day: Optional[date] = Query(None, alias="date"),
    service: MapwatchService = Depends(get_service),
):
    return await _call(service.get_snapshot, server_id, day)


@router.get("/servers/{server_id}/villages/near")
async def villages_near(
    server_id: int,
    x: int,
    y: int,
    radius: int = Query(10, ge=0, le=400),
    service: MapwatchService = Depends(get_service),
):
    return await _call(service.nearby, server_id, x, y, radius)


@router.get("/servers/{server_id}/growth")
async def growth(
    server_id: int,
    quadrant: Quadrant = Query(Quadrant.NE),
    days: int = Query(3, ge=1, le=30),
    service: MapwatchService = Depends(get_service),
):
    """Settlements in a quadrant with no population growth for `days` snapshots."""
    villages = await _call(service.growth, server_id, quadrant, days)
    return {"quadrant": quadrant, "days": days, "villages": villages}


@router.get("/servers/{server_id}/world-info")
async def world_info(
    server_id: int,
    top_n: int = Query(10, ge=1, le=100),
    service: MapwatchService = Depends(get_service),
):
    return await _call(service.world_info, server_id, top_n)


@router.get("/servers/{server_id}/alliances")
async def alliance_info(
    server_id: int,
    top_n: int = Query(10, ge=1, le=100),
    service: MapwatchService = Depends(get_service),
):
    alliances = await _call(service.alliance_info, server_id, top_n)
    return {"server_id": server_id, "alliances": alliances}


@router.delete("/servers/{server_id}/snapshots")
async def remove_server_snapshots(server_id: int, service: MapwatchService = Depends(get_service)):
    """Drop all history of a server the outer system removed."""
    removed = await _call(service.remove_server, server_id)
    logger.info("Snapshots removed for server {} ({})", server_id, removed)
    return {"server_id": server_id, "removed": removed}
