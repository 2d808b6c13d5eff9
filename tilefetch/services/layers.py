from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterable, Iterator, List, Tuple

from .errors import UnsupportedApiError

logger = logging.getLogger(__name__)

LAYERS_FILE_ENV = "TILEFETCH_LAYERS_FILE"
DEFAULT_CONTENT_TYPE = "image/png"


class ApiType(str, Enum):
    """Remote interfaces able to render a layer."""

    PROCESSING = "processing"
    PRE_TILED = "pre-tiled"
    LEGACY_IMAGE = "legacy-image"


API_PRIORITY: Tuple[ApiType, ...] = (
    ApiType.PROCESSING,
    ApiType.PRE_TILED,
    ApiType.LEGACY_IMAGE,
)


def select_api(
    capabilities: Iterable[ApiType],
    *,
    requires_processing: bool = False,
    allow_pre_tiled: bool = True,
) -> ApiType:
    """Pick the remote interface for a layer, first match in priority order wins.

    The empty capability set falls through to the legacy image service. A
    computed visualization cannot be expressed with raw bands alone, so a
    layer that ``requires_processing`` must declare the processing interface.
    """

    declared = frozenset(capabilities)
    if requires_processing and ApiType.PROCESSING not in declared:
        raise UnsupportedApiError(
            "Layer renders a computed visualization but does not support the processing API."
        )

    if ApiType.PROCESSING in declared:
        return ApiType.PROCESSING
    if allow_pre_tiled and ApiType.PRE_TILED in declared:
        return ApiType.PRE_TILED
    return ApiType.LEGACY_IMAGE


def parse_capabilities(values: Iterable[str]) -> FrozenSet[ApiType]:
    parsed = set()
    for value in values:
        token = str(value).strip().lower()
        try:
            parsed.add(ApiType(token))
        except ValueError as exc:
            raise UnsupportedApiError(f"Unknown API capability: {value!r}") from exc
    return frozenset(parsed)


@dataclass(frozen=True)
class LayerDescriptor:
    """Read-only description of one visualization offered by the remote service."""

    layer_id: str
    dataset: str
    title: str = ""
    capabilities: FrozenSet[ApiType] = field(default_factory=frozenset)
    evalscript: str | None = None
    requires_processing: bool = False
    instance_id: str | None = None
    time_from: str | None = None
    time_to: str | None = None
    mosaicking_order: str | None = None
    content_type: str = DEFAULT_CONTENT_TYPE

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "LayerDescriptor":
        layer_id = str(payload.get("layer_id") or payload.get("id") or "").strip()
        dataset = str(payload.get("dataset") or "").strip()
        if not layer_id:
            raise ValueError("Layer definition requires an 'id'.")
        if not dataset:
            raise ValueError(f"Layer {layer_id} requires a 'dataset'.")

        return cls(
            layer_id=layer_id,
            dataset=dataset,
            title=str(payload.get("title") or layer_id),
            capabilities=parse_capabilities(payload.get("capabilities") or ()),
            evalscript=payload.get("evalscript") or None,
            requires_processing=bool(payload.get("requires_processing", False)),
            instance_id=payload.get("instance_id") or None,
            time_from=payload.get("time_from") or None,
            time_to=payload.get("time_to") or None,
            mosaicking_order=payload.get("mosaicking_order") or None,
            content_type=str(payload.get("content_type") or DEFAULT_CONTENT_TYPE),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.layer_id,
            "dataset": self.dataset,
            "title": self.title,
            "capabilities": sorted(api_type.value for api_type in self.capabilities),
            "requires_processing": self.requires_processing,
            "time_from": self.time_from,
            "time_to": self.time_to,
            "mosaicking_order": self.mosaicking_order,
            "content_type": self.content_type,
        }


TRUE_COLOR_EVALSCRIPT = """//VERSION=3
function setup() {
  return { input: ["B02", "B03", "B04", "dataMask"], output: { bands: 4 } };
}
function evaluatePixel(sample) {
  return [2.5 * sample.B04, 2.5 * sample.B03, 2.5 * sample.B02, sample.dataMask];
}
"""

NDVI_EVALSCRIPT = """//VERSION=3
function setup() {
  return { input: ["B04", "B08", "dataMask"], output: { bands: 4 } };
}
function evaluatePixel(sample) {
  let ndvi = (sample.B08 - sample.B04) / (sample.B08 + sample.B04);
  return colorBlend(ndvi, [-0.2, 0, 0.5, 1.0],
    [[0.05, 0.05, 0.05, sample.dataMask], [0.75, 0.75, 0.75, sample.dataMask],
     [0.4, 0.7, 0.2, sample.dataMask], [0.0, 0.4, 0.0, sample.dataMask]]);
}
"""

DEFAULT_LAYERS: Tuple[LayerDescriptor, ...] = (
    LayerDescriptor(
        layer_id="TRUE-COLOR",
        dataset="sentinel-2-l2a",
        title="Sentinel-2 L2A true color",
        capabilities=frozenset(API_PRIORITY),
        evalscript=TRUE_COLOR_EVALSCRIPT,
        mosaicking_order="leastCC",
    ),
    LayerDescriptor(
        layer_id="NDVI",
        dataset="sentinel-2-l2a",
        title="Sentinel-2 L2A NDVI",
        capabilities=frozenset({ApiType.PROCESSING}),
        evalscript=NDVI_EVALSCRIPT,
        requires_processing=True,
        mosaicking_order="leastCC",
    ),
)


class LayerCatalog:
    """In-memory lookup of the layers a viewing session may activate."""

    def __init__(self, layers: Iterable[LayerDescriptor]) -> None:
        self._layers: Dict[str, LayerDescriptor] = {}
        for layer in layers:
            if layer.layer_id in self._layers:
                raise ValueError(f"Duplicate layer id: {layer.layer_id}")
            self._layers[layer.layer_id] = layer

    @classmethod
    def from_file(cls, path: Path) -> "LayerCatalog":
        payload = json.loads(Path(path).read_text())
        if isinstance(payload, dict):
            payload = payload.get("layers", [])
        if not isinstance(payload, list):
            raise ValueError(f"Layer file {path} must contain a list of layer definitions.")
        return cls(LayerDescriptor.from_dict(item) for item in payload)

    def get(self, layer_id: str) -> LayerDescriptor:
        try:
            return self._layers[layer_id]
        except KeyError:
            raise KeyError(f"Unknown layer: {layer_id}") from None

    def __contains__(self, layer_id: object) -> bool:
        return layer_id in self._layers

    def __iter__(self) -> Iterator[LayerDescriptor]:
        return iter(self._layers.values())

    def __len__(self) -> int:
        return len(self._layers)

    def describe(self) -> List[Dict[str, Any]]:
        return [layer.to_dict() for layer in self]


def load_layer_catalog() -> LayerCatalog:
    override = os.getenv(LAYERS_FILE_ENV, "").strip()
    if override:
        path = Path(override).expanduser()
        logger.info("Loading layer definitions from %s", path)
        return LayerCatalog.from_file(path)
    return LayerCatalog(DEFAULT_LAYERS)


def ensure_servable(layer: LayerDescriptor, api_type: ApiType) -> None:
    """Raise when ``layer`` lacks what the chosen interface needs to build a request."""

    if api_type is ApiType.PROCESSING and not layer.evalscript:
        raise UnsupportedApiError(
            f"Layer {layer.layer_id} selects the processing API but has no processing script."
        )
    if api_type in (ApiType.PRE_TILED, ApiType.LEGACY_IMAGE) and not layer.instance_id:
        raise UnsupportedApiError(
            f"Layer {layer.layer_id} selects the {api_type.value} API but has no instance id."
        )
