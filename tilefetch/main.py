from __future__ import annotations

import asyncio
import logging
from functools import lru_cache
from typing import Any, Callable, Dict, List

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel
from sqlmodel import Session

from .database import get_session, init_db
from .services.credentials import auth_state_from_env
from .services.errors import GeometryError, ImageryError, UnsupportedApiError
from .services.geometry import WEB_MERCATOR_CRS, BoundingBox, TileCoordinate
from .services.imagery import ImageryClient
from .services.layers import LayerCatalog, LayerDescriptor, load_layer_catalog
from .services.orchestrator import (
    FetchOutcome,
    FetchStatus,
    PendingFetch,
    TileFetchOrchestrator,
)
from .services.usage import usage_summary

app = FastAPI(title="Imagery Tile Fetcher", version="0.1.0")

logger = logging.getLogger(__name__)


class CancelFetchRequest(BaseModel):
    fetch_id: str


class ExportRequest(BaseModel):
    layer_id: str
    west: float
    south: float
    east: float
    north: float
    width: int
    height: int
    crs: str = WEB_MERCATOR_CRS


_imagery_client: ImageryClient | None = None
_orchestrator: TileFetchOrchestrator | None = None

_active_fetches: Dict[str, PendingFetch] = {}
_fetch_lock = asyncio.Lock()


@lru_cache
def get_catalog() -> LayerCatalog:
    return load_layer_catalog()


def get_orchestrator() -> TileFetchOrchestrator:
    if _orchestrator is None:
        raise HTTPException(status_code=503, detail="Imagery client is not running")
    return _orchestrator


def _resolve_layer(catalog: LayerCatalog, layer_id: str) -> LayerDescriptor:
    try:
        return catalog.get(layer_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown layer: {layer_id}") from exc


def _status_for_error(error: ImageryError | None) -> int:
    if isinstance(error, (GeometryError, UnsupportedApiError)):
        return 422
    return 502


def _outcome_response(outcome: FetchOutcome) -> Response:
    if outcome.status is FetchStatus.DISCARDED:
        return Response(status_code=204)
    if outcome.status is FetchStatus.FAILED or outcome.handle is None:
        detail = str(outcome.error) if outcome.error else "Imagery fetch failed"
        raise HTTPException(status_code=_status_for_error(outcome.error), detail=detail)

    with outcome.handle as handle:
        content = handle.read()
        media_type = handle.content_type
    return Response(content=content, media_type=media_type)


async def _await_registered(
    fetch_id: str | None, start: Callable[[], PendingFetch]
) -> FetchOutcome:
    fetch_id = (fetch_id or "").strip()
    if not fetch_id:
        return await start().outcome()

    async with _fetch_lock:
        if fetch_id in _active_fetches:
            raise HTTPException(status_code=409, detail="Fetch already in progress")
        pending = start()
        _active_fetches[fetch_id] = pending

    try:
        return await pending.outcome()
    finally:
        async with _fetch_lock:
            _active_fetches.pop(fetch_id, None)


@app.on_event("startup")
async def on_startup() -> None:
    global _imagery_client, _orchestrator
    init_db()
    _imagery_client = ImageryClient()
    await _imagery_client.open()
    _orchestrator = TileFetchOrchestrator(_imagery_client, auth_state_from_env)


@app.on_event("shutdown")
async def on_shutdown() -> None:
    global _imagery_client, _orchestrator
    client, _imagery_client = _imagery_client, None
    _orchestrator = None
    if client is not None:
        await client.close()


@app.get("/tiles/{layer_id}/{z}/{x}/{y}")
async def get_tile(
    layer_id: str,
    z: int,
    x: int,
    y: int,
    fetch_id: str | None = Query(None, description="Client identifier used to cancel this fetch"),
    orchestrator: TileFetchOrchestrator = Depends(get_orchestrator),
    catalog: LayerCatalog = Depends(get_catalog),
) -> Response:
    layer = _resolve_layer(catalog, layer_id)
    coord = TileCoordinate(col=x, row=y, zoom=z)
    outcome = await _await_registered(fetch_id, lambda: orchestrator.start_tile(coord, layer))
    return _outcome_response(outcome)


@app.post("/tiles/cancel")
async def cancel_fetch(request: CancelFetchRequest) -> Dict[str, str]:
    fetch_id = request.fetch_id.strip()
    if not fetch_id:
        raise HTTPException(status_code=400, detail="fetch_id is required")

    async with _fetch_lock:
        pending = _active_fetches.get(fetch_id)
    if pending is None:
        return {"status": "not_found"}

    pending.cancel()
    return {"status": "cancelling"}


@app.post("/export")
async def export_image(
    request: ExportRequest,
    fetch_id: str | None = Query(None),
    orchestrator: TileFetchOrchestrator = Depends(get_orchestrator),
    catalog: LayerCatalog = Depends(get_catalog),
) -> Response:
    layer = _resolve_layer(catalog, request.layer_id)
    bbox = BoundingBox(
        west=request.west,
        south=request.south,
        east=request.east,
        north=request.north,
        crs=request.crs,
    )
    outcome = await _await_registered(
        fetch_id,
        lambda: orchestrator.start_export(layer, bbox, request.width, request.height),
    )
    return _outcome_response(outcome)


@app.get("/api/layers")
def list_layers(catalog: LayerCatalog = Depends(get_catalog)) -> List[Dict[str, Any]]:
    return catalog.describe()


@app.get("/api/usage")
def list_usage(session: Session = Depends(get_session)) -> List[Dict[str, Any]]:
    return usage_summary(session)
