from __future__ import annotations

import asyncio
import io
import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict

import httpx
from PIL import Image

from .credentials import Credential
from .errors import AuthorizationError, NetworkFailure
from .geometry import WGS84_CRS, BoundingBox, TileCoordinate
from .layers import ApiType, LayerDescriptor
from .usage import record_api_usage

logger = logging.getLogger(__name__)

BASE_URL_ENV = "TILEFETCH_BASE_URL"
DEFAULT_BASE_URL = "https://services.sentinel-hub.com"
REQUEST_TIMEOUT_ENV = "TILEFETCH_REQUEST_TIMEOUT"
DEFAULT_REQUEST_TIMEOUT = 60.0
MAX_CONCURRENT_REQUESTS_ENV = "TILEFETCH_MAX_CONCURRENT_REQUESTS"
DEFAULT_MAX_CONCURRENT_REQUESTS = 8

PROCESS_API_PATH = "/api/v1/process"
WMTS_PATH = "/ogc/wmts"
WMS_PATH = "/ogc/wms"
WMTS_TILE_MATRIX_SET = "PopularWebMercator512"
CRS_URL_PREFIX = "http://www.opengis.net/def/crs/EPSG/0/"

UsageRecorder = Callable[..., None]


@dataclass(frozen=True)
class RequestSpec:
    """Fully resolved description of one remote call."""

    api_type: ApiType
    layer: LayerDescriptor
    bbox: BoundingBox
    width: int
    height: int
    credential: Credential
    evalscript: str | None = None
    tile: TileCoordinate | None = None

    @property
    def content_type(self) -> str:
        return self.layer.content_type


@dataclass(frozen=True)
class ImageResult:
    """Binary payload returned for one request or merged from a chunk plan."""

    content: bytes = field(repr=False)
    content_type: str
    width: int
    height: int
    result_id: str = field(default_factory=lambda: uuid.uuid4().hex)


def _base_url() -> str:
    value = os.getenv(BASE_URL_ENV, "").strip()
    return (value or DEFAULT_BASE_URL).rstrip("/")


def _request_timeout() -> httpx.Timeout:
    raw_value = os.getenv(REQUEST_TIMEOUT_ENV, "").strip()
    if not raw_value:
        return httpx.Timeout(DEFAULT_REQUEST_TIMEOUT)
    try:
        seconds = float(raw_value)
    except ValueError:
        return httpx.Timeout(DEFAULT_REQUEST_TIMEOUT)
    if seconds <= 0:
        return httpx.Timeout(DEFAULT_REQUEST_TIMEOUT)
    return httpx.Timeout(seconds)


def _max_concurrent_requests() -> int:
    raw_value = os.getenv(MAX_CONCURRENT_REQUESTS_ENV, "").strip()
    if not raw_value:
        return DEFAULT_MAX_CONCURRENT_REQUESTS
    try:
        limit = int(raw_value)
    except ValueError:
        return DEFAULT_MAX_CONCURRENT_REQUESTS
    return max(1, limit)


class ImageryClient:
    """Network layer issuing resolved requests against the remote processing service.

    The client owns one ``httpx.AsyncClient`` for its lifetime and must be
    entered with ``async with`` before use. Cancelling the awaiting task
    cancels the in-flight HTTP call.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout: httpx.Timeout | None = None,
        max_concurrency: int | None = None,
        usage_recorder: UsageRecorder | None = record_api_usage,
    ) -> None:
        self.base_url = (base_url or _base_url()).rstrip("/")
        self._timeout = timeout or _request_timeout()
        self._semaphore = asyncio.Semaphore(max_concurrency or _max_concurrent_requests())
        self._usage_recorder = usage_recorder
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "ImageryClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def fetch(self, spec: RequestSpec) -> ImageResult:
        """Issue ``spec`` and return the decoded image payload.

        Raises ``AuthorizationError`` when the credential is rejected and
        ``NetworkFailure`` for every other failure to obtain an image.
        """

        if self._client is None:
            raise RuntimeError("ImageryClient must be opened before fetching imagery.")

        async with self._semaphore:
            try:
                response = await self._send(self._client, spec)
            except httpx.RequestError as exc:
                logger.warning("%s imagery request error: %s", spec.api_type.value, exc)
                raise NetworkFailure(f"{spec.api_type.value} request error: {exc}") from exc

        if response.status_code in (401, 403):
            detail = _short_error_detail(response.text)
            logger.warning(
                "%s imagery request rejected the %s credential with status %s: %s",
                spec.api_type.value,
                spec.credential.kind.value,
                response.status_code,
                detail,
            )
            raise AuthorizationError(
                f"{response.status_code} {detail}", status_code=response.status_code
            )

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = _short_error_detail(exc.response.text)
            logger.warning(
                "%s imagery request failed with status %s: %s",
                spec.api_type.value,
                exc.response.status_code,
                detail,
            )
            raise NetworkFailure(
                f"{exc.response.status_code} {detail}", status_code=exc.response.status_code
            ) from exc

        if not _is_image_response(response):
            content_type = response.headers.get("Content-Type", "unknown")
            detail = _short_error_detail(response.text)
            logger.warning(
                "%s imagery request returned non-image payload (%s): %s",
                spec.api_type.value,
                content_type,
                detail,
            )
            raise NetworkFailure(f"unexpected payload ({content_type}): {detail}")

        width, height = _decoded_size(response.content)
        if self._usage_recorder is not None:
            self._usage_recorder(spec.api_type.value, increment=1)

        content_type = response.headers.get("Content-Type", spec.content_type).split(";")[0].strip()
        return ImageResult(
            content=response.content,
            content_type=content_type,
            width=width,
            height=height,
        )

    async def _send(self, client: httpx.AsyncClient, spec: RequestSpec) -> httpx.Response:
        headers = spec.credential.headers()
        if spec.api_type == ApiType.PROCESSING:
            url = f"{self.base_url}{PROCESS_API_PATH}"
            headers["Accept"] = spec.content_type
            logger.debug("POST %s (%sx%s)", url, spec.width, spec.height)
            return await client.post(url, json=build_process_payload(spec), headers=headers)
        if spec.api_type == ApiType.PRE_TILED:
            url = f"{self.base_url}{WMTS_PATH}/{spec.layer.instance_id}"
            logger.debug("GET %s", url)
            return await client.get(url, params=build_wmts_params(spec), headers=headers)
        if spec.api_type == ApiType.LEGACY_IMAGE:
            url = f"{self.base_url}{WMS_PATH}/{spec.layer.instance_id}"
            logger.debug("GET %s (%sx%s)", url, spec.width, spec.height)
            return await client.get(url, params=build_wms_params(spec), headers=headers)

        raise ValueError(f"Unsupported API type: {spec.api_type}")


def build_process_payload(spec: RequestSpec) -> Dict[str, Any]:
    layer = spec.layer
    data_filter: Dict[str, Any] = {}
    time_range = _time_range(layer)
    if time_range is not None:
        data_filter["timeRange"] = time_range
    if layer.mosaicking_order:
        data_filter["mosaickingOrder"] = layer.mosaicking_order

    return {
        "input": {
            "bounds": {
                "bbox": spec.bbox.as_list(),
                "properties": {"crs": _crs_url(spec.bbox.crs)},
            },
            "data": [{"type": layer.dataset, "dataFilter": data_filter}],
        },
        "output": {
            "width": spec.width,
            "height": spec.height,
            "responses": [
                {"identifier": "default", "format": {"type": spec.content_type}},
            ],
        },
        "evalscript": spec.evalscript,
    }


def build_wmts_params(spec: RequestSpec) -> Dict[str, Any]:
    if spec.tile is None:
        raise ValueError("Pre-tiled requests require a tile coordinate.")
    params: Dict[str, Any] = {
        "SERVICE": "WMTS",
        "REQUEST": "GetTile",
        "VERSION": "1.0.0",
        "LAYER": spec.layer.layer_id,
        "STYLE": "default",
        "FORMAT": spec.content_type,
        "TILEMATRIXSET": WMTS_TILE_MATRIX_SET,
        "TILEMATRIX": spec.tile.zoom,
        "TILEROW": spec.tile.row,
        "TILECOL": spec.tile.col,
    }
    time_param = _time_parameter(spec.layer)
    if time_param:
        params["TIME"] = time_param
    return params


def build_wms_params(spec: RequestSpec) -> Dict[str, Any]:
    bbox = spec.bbox
    # WMS 1.3.0 uses latitude/longitude axis order for EPSG:4326.
    if bbox.crs == WGS84_CRS:
        bbox_value = f"{bbox.south:.6f},{bbox.west:.6f},{bbox.north:.6f},{bbox.east:.6f}"
    else:
        bbox_value = f"{bbox.west:.6f},{bbox.south:.6f},{bbox.east:.6f},{bbox.north:.6f}"

    params: Dict[str, Any] = {
        "SERVICE": "WMS",
        "REQUEST": "GetMap",
        "VERSION": "1.3.0",
        "FORMAT": spec.content_type,
        "STYLES": "",
        "LAYERS": spec.layer.layer_id,
        "WIDTH": spec.width,
        "HEIGHT": spec.height,
        "CRS": bbox.crs,
        "BBOX": bbox_value,
    }
    time_param = _time_parameter(spec.layer)
    if time_param:
        params["TIME"] = time_param
    return params


def _time_range(layer: LayerDescriptor) -> Dict[str, str] | None:
    if not layer.time_from and not layer.time_to:
        return None
    time_range: Dict[str, str] = {}
    if layer.time_from:
        time_range["from"] = layer.time_from
    if layer.time_to:
        time_range["to"] = layer.time_to
    return time_range


def _time_parameter(layer: LayerDescriptor) -> str | None:
    if layer.time_from and layer.time_to:
        return f"{layer.time_from}/{layer.time_to}"
    return layer.time_to or layer.time_from


def _crs_url(crs: str) -> str:
    code = crs.split(":")[-1]
    return f"{CRS_URL_PREFIX}{code}"


def _decoded_size(content: bytes) -> tuple[int, int]:
    try:
        with Image.open(io.BytesIO(content)) as image:
            image.load()
            return image.size
    except Exception as exc:
        raise NetworkFailure(f"unable to decode image payload: {exc}") from exc


def _short_error_detail(detail: str) -> str:
    detail = detail.strip()
    if len(detail) > 160:
        return f"{detail[:157]}..."
    return detail or "(no detail)"


def _is_image_response(response: httpx.Response) -> bool:
    content_type = response.headers.get("Content-Type", "")
    return "image" in content_type.lower()
