from __future__ import annotations

import io
import logging
from dataclasses import dataclass, replace
from typing import Dict, List, Sequence, Tuple

from PIL import Image

from .errors import ChunkPartialFailure
from .geometry import BoundingBox
from .imagery import ImageResult, RequestSpec

logger = logging.getLogger(__name__)

MAX_DIM = 2500

PIL_FORMATS: Dict[str, str] = {
    "image/png": "PNG",
    "image/jpeg": "JPEG",
    "image/jpg": "JPEG",
    "image/tiff": "TIFF",
    "image/webp": "WEBP",
}


@dataclass(frozen=True)
class Chunk:
    """One sub-request of a chunk plan and its pixel offset in the full canvas."""

    row: int
    col: int
    x_offset: int
    y_offset: int
    spec: RequestSpec


@dataclass(frozen=True)
class ChunkPlan:
    """Row-major grid of sub-requests exactly covering an oversized request."""

    width: int
    height: int
    x_split: int
    y_split: int
    chunks: Tuple[Chunk, ...]
    content_type: str

    def __len__(self) -> int:
        return len(self.chunks)


def needs_chunking(width: int, height: int, max_dim: int = MAX_DIM) -> bool:
    # Each dimension is limited independently; the pixel count is irrelevant.
    return width > max_dim or height > max_dim


def split_extent(total: int, max_dim: int = MAX_DIM) -> List[Tuple[int, int]]:
    """Return ``(offset, size)`` spans covering ``total`` pixels, the last absorbing the remainder."""

    if total <= 0:
        raise ValueError(f"Pixel extent must be positive, got {total}.")
    if max_dim <= 0:
        raise ValueError(f"Maximum dimension must be positive, got {max_dim}.")

    count = -(-total // max_dim)
    spans: List[Tuple[int, int]] = []
    for index in range(count):
        offset = index * max_dim
        spans.append((offset, min(max_dim, total - offset)))
    return spans


def plan_request(spec: RequestSpec, max_dim: int = MAX_DIM) -> RequestSpec | ChunkPlan:
    """Return ``spec`` unchanged when it fits, otherwise the chunk plan replacing it.

    Sub-bounding-boxes are interpolated linearly from the original box in
    proportion to each chunk's pixel position. Neighbouring chunks share
    their edge coordinates exactly, so the plan has no gaps or overlaps.
    """

    if spec.width <= 0 or spec.height <= 0:
        raise ValueError(f"Requested size must be positive, got {spec.width}x{spec.height}.")

    if not needs_chunking(spec.width, spec.height, max_dim):
        return spec

    columns = split_extent(spec.width, max_dim)
    rows = split_extent(spec.height, max_dim)

    chunks: List[Chunk] = []
    for row_index, (y_offset, chunk_height) in enumerate(rows):
        for col_index, (x_offset, chunk_width) in enumerate(columns):
            bbox = sub_bbox(
                spec.bbox,
                total_width=spec.width,
                total_height=spec.height,
                x_offset=x_offset,
                y_offset=y_offset,
                width=chunk_width,
                height=chunk_height,
            )
            chunks.append(
                Chunk(
                    row=row_index,
                    col=col_index,
                    x_offset=x_offset,
                    y_offset=y_offset,
                    spec=replace(spec, bbox=bbox, width=chunk_width, height=chunk_height, tile=None),
                )
            )

    logger.info(
        "Splitting %sx%s request into %s columns and %s rows (max dimension %s).",
        spec.width,
        spec.height,
        len(columns),
        len(rows),
        max_dim,
    )
    return ChunkPlan(
        width=spec.width,
        height=spec.height,
        x_split=len(columns),
        y_split=len(rows),
        chunks=tuple(chunks),
        content_type=spec.content_type,
    )


def sub_bbox(
    bbox: BoundingBox,
    *,
    total_width: int,
    total_height: int,
    x_offset: int,
    y_offset: int,
    width: int,
    height: int,
) -> BoundingBox:
    # Pixel rows run from north to south.
    return BoundingBox(
        west=_interpolate(bbox.west, bbox.east, x_offset, total_width),
        south=_interpolate(bbox.north, bbox.south, y_offset + height, total_height),
        east=_interpolate(bbox.west, bbox.east, x_offset + width, total_width),
        north=_interpolate(bbox.north, bbox.south, y_offset, total_height),
        crs=bbox.crs,
    )


def composite_results(plan: ChunkPlan, results: Sequence[ImageResult]) -> ImageResult:
    """Paste each chunk's image at its pixel offset and encode the full canvas."""

    if len(results) != len(plan.chunks):
        raise ValueError(
            f"Chunk plan expects {len(plan.chunks)} results, received {len(results)}."
        )

    image_format = PIL_FORMATS.get(plan.content_type.lower(), "PNG")
    mode = "RGB" if image_format == "JPEG" else "RGBA"
    canvas = Image.new(mode, (plan.width, plan.height))

    for chunk, result in zip(plan.chunks, results):
        try:
            with Image.open(io.BytesIO(result.content)) as tile_image:
                tile_image = tile_image.convert(mode)
        except Exception as exc:
            raise ChunkPartialFailure(chunk.row, chunk.col, exc) from exc

        expected = (chunk.spec.width, chunk.spec.height)
        if tile_image.size != expected:
            logger.debug(
                "Resizing chunk at row %s column %s from %s to %s",
                chunk.row,
                chunk.col,
                tile_image.size,
                expected,
            )
            tile_image = tile_image.resize(expected, Image.LANCZOS)
        canvas.paste(tile_image, (chunk.x_offset, chunk.y_offset))

    buffer = io.BytesIO()
    canvas.save(buffer, format=image_format)
    content_type = plan.content_type if plan.content_type.lower() in PIL_FORMATS else "image/png"
    return ImageResult(
        content=buffer.getvalue(),
        content_type=content_type,
        width=plan.width,
        height=plan.height,
    )


def _interpolate(start: float, end: float, offset: int, total: int) -> float:
    if offset <= 0:
        return start
    if offset >= total:
        return end
    return start + (end - start) * offset / total
