from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

from .errors import GeometryError

TILE_SIZE = 512

WEB_MERCATOR_CRS = "EPSG:3857"
WGS84_CRS = "EPSG:4326"
SUPPORTED_CRS = (WEB_MERCATOR_CRS, WGS84_CRS)

EARTH_RADIUS = 6378137.0
LATITUDE_LIMIT = math.degrees(math.atan(math.sinh(math.pi)))


@dataclass(frozen=True)
class TileCoordinate:
    """Grid position of one fixed-size tile in the viewer."""

    col: int
    row: int
    zoom: int


@dataclass(frozen=True)
class BoundingBox:
    """Geographic rectangle ordered west, south, east, north."""

    west: float
    south: float
    east: float
    north: float
    crs: str = WEB_MERCATOR_CRS

    @property
    def width(self) -> float:
        return self.east - self.west

    @property
    def height(self) -> float:
        return self.north - self.south

    def as_list(self) -> list[float]:
        return [self.west, self.south, self.east, self.north]

    def validate(self) -> None:
        if self.crs not in SUPPORTED_CRS:
            raise GeometryError(f"Unsupported coordinate reference system: {self.crs}")
        if not all(math.isfinite(value) for value in self.as_list()):
            raise GeometryError("Bounding box coordinates must be finite numbers.")
        if self.east <= self.west:
            raise GeometryError("East bound must be greater than west bound.")
        if self.north <= self.south:
            raise GeometryError("North bound must be greater than south bound.")


def tile_bounds(coord: TileCoordinate, tile_size: int = TILE_SIZE) -> BoundingBox:
    """Resolve the Web Mercator bounding box covered by a viewer tile.

    The tile's pixel corners are unprojected from the viewer's display
    projection into longitude/latitude and projected again into metres. Pixel
    ``y`` grows southward while projected ``y`` grows northward, so the south
    bound comes from the south-east pixel corner and the north bound from the
    north-west corner.
    """

    _validate_tile(coord, tile_size)

    nw_x = coord.col * tile_size
    nw_y = coord.row * tile_size
    se_x = nw_x + tile_size
    se_y = nw_y + tile_size

    try:
        west_lon, north_lat = pixel_to_lnglat(nw_x, nw_y, coord.zoom, tile_size)
        east_lon, south_lat = pixel_to_lnglat(se_x, se_y, coord.zoom, tile_size)
    except OverflowError as exc:
        raise GeometryError(f"Zoom level {coord.zoom} is beyond floating point range.") from exc

    west, north = lnglat_to_web_mercator(west_lon, north_lat)
    east, south = lnglat_to_web_mercator(east_lon, south_lat)
    # Past double precision a tile collapses to a line or a point.
    if not (east > west and north > south):
        raise GeometryError(
            f"Tile {coord.zoom}/{coord.col}/{coord.row} is too small to resolve in metres."
        )
    return BoundingBox(west=west, south=south, east=east, north=north, crs=WEB_MERCATOR_CRS)


def pixel_to_lnglat(x: float, y: float, zoom: int, tile_size: int = TILE_SIZE) -> Tuple[float, float]:
    world_size = float(tile_size) * float(2 ** zoom)
    lon = x / world_size * 360.0 - 180.0
    mercator_y = math.pi * (1.0 - 2.0 * y / world_size)
    lat = math.degrees(math.atan(math.sinh(mercator_y)))
    return lon, lat


def lnglat_to_web_mercator(lon: float, lat: float) -> Tuple[float, float]:
    clamped = _clamp(lat, -LATITUDE_LIMIT, LATITUDE_LIMIT)
    x = EARTH_RADIUS * math.radians(lon)
    y = EARTH_RADIUS * math.log(math.tan(math.pi / 4.0 + math.radians(clamped) / 2.0))
    return x, y


def _validate_tile(coord: TileCoordinate, tile_size: int) -> None:
    for name in ("col", "row", "zoom"):
        value = getattr(coord, name)
        if isinstance(value, bool) or not isinstance(value, int):
            raise GeometryError(f"Tile {name} must be an integer, got {value!r}.")
    if tile_size <= 0:
        raise GeometryError(f"Tile size must be positive, got {tile_size}.")
    if coord.zoom < 0:
        raise GeometryError(f"Zoom level cannot be negative, got {coord.zoom}.")

    tiles_per_axis = 2 ** coord.zoom
    if not (0 <= coord.col < tiles_per_axis):
        raise GeometryError(
            f"Tile column {coord.col} is outside the grid at zoom {coord.zoom} "
            f"(0 to {tiles_per_axis - 1})."
        )
    if not (0 <= coord.row < tiles_per_axis):
        raise GeometryError(
            f"Tile row {coord.row} is outside the grid at zoom {coord.zoom} "
            f"(0 to {tiles_per_axis - 1})."
        )


def _clamp(value: float, minimum: float, maximum: float) -> float:
    return max(min(value, maximum), minimum)
