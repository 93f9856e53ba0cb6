"""
Tile Grid

Slippy map tile index math, meta-tile grid alignment and the scale helpers
used to convert meters into pixels.
"""

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Tuple, Union

# Clamping value for Web Mercator
MAX_LATITUDE = 85.0511287798
EARTH_CIRCUMFERENCE = 40075016.686
EARTH_RADIUS = 6378137.0

META_TILE_SIZE = 8


def wgs84_to_tile_index(zoom: int, lon: float, lat: float) -> Tuple[int, int]:
    """
    Tile containing a WGS84 position.

    Longitude wraps around the antimeridian, latitude is clamped to the
    Web Mercator range. The result is clamped to the valid tile range.
    """
    n = 2 ** zoom

    if lon < -180.0 or lon > 180.0:
        lon = math.fmod(lon + 180.0, 360.0)
        if lon < 0.0:
            lon += 360.0
        lon -= 180.0

    lat = min(max(lat, -MAX_LATITUDE), MAX_LATITUDE)
    lat_rad = math.radians(lat)

    x = int(math.floor(n * (lon + 180.0) / 360.0))
    y = int(math.floor(n * (1.0 - math.asinh(math.tan(lat_rad)) / math.pi) * 0.5))

    return min(max(x, 0), n - 1), min(max(y, 0), n - 1)


def wgs84_from_tile_index(zoom: int, x: int, y: int) -> Tuple[float, float]:
    """WGS84 position of the top left corner of a tile."""
    n = 2.0 ** zoom
    lon = x / n * 360.0 - 180.0
    lat = math.degrees(math.atan(math.sinh(math.pi * (1.0 - 2.0 * y / n))))
    return lon, lat


def grid_origin(x: int, y: int, grid_size: int = META_TILE_SIZE) -> Tuple[int, int]:
    """Top left tile of the meta-tile cell containing (x, y)."""
    mask = ~(grid_size - 1)
    return x & mask, y & mask


def grid_span(zoom: int, grid_size: int = META_TILE_SIZE) -> int:
    """Tiles per side of a cell; smaller than the grid while the world is."""
    return min(grid_size, 2 ** zoom)


@dataclass(frozen=True)
class TileRange:
    """Inclusive range of tile indices of one zoom level."""
    zoom: int
    start_x: int
    start_y: int
    end_x: int
    end_y: int

    @classmethod
    def from_bounds(cls, zoom: int, bounds: Tuple[float, float, float, float]) -> "TileRange":
        """Range covering (min_lon, min_lat, max_lon, max_lat)."""
        min_lon, min_lat, max_lon, max_lat = bounds
        start_x, start_y = wgs84_to_tile_index(zoom, min_lon, max_lat)
        end_x, end_y = wgs84_to_tile_index(zoom, max_lon, min_lat)
        return cls(zoom, start_x, start_y, end_x, end_y)

    def contains(self, x: int, y: int) -> bool:
        return self.start_x <= x <= self.end_x and self.start_y <= y <= self.end_y

    @property
    def tile_count(self) -> int:
        return (self.end_x - self.start_x + 1) * (self.end_y - self.start_y + 1)


@dataclass(frozen=True)
class GridCell:
    """One meta-tile cell: `span` x `span` tiles starting at the origin."""
    zoom: int
    x: int
    y: int
    span: int

    @property
    def key(self) -> str:
        return f"{self.zoom}/{self.x}/{self.y}"

    def tiles(self) -> Iterator[Tuple[int, int, int, int]]:
        """(dx, dy, x, y) of every tile in the cell, row by row."""
        for dy in range(self.span):
            for dx in range(self.span):
                yield dx, dy, self.x + dx, self.y + dy

    def wgs84_corners(self) -> Tuple[Tuple[float, float], Tuple[float, float]]:
        """Top left and bottom right corners in WGS84."""
        top_left = wgs84_from_tile_index(self.zoom, self.x, self.y)
        bottom_right = wgs84_from_tile_index(self.zoom, self.x + self.span, self.y + self.span)
        return top_left, bottom_right


class MetaTileGrid:
    """
    Aligns tile ranges to the meta-tile grid.

    Every tile belongs to exactly one cell, so a tile is rendered at most once
    per zoom level regardless of which tile of the cell was requested.
    """

    def __init__(self, grid_size: int = META_TILE_SIZE):
        if grid_size < 1 or grid_size & (grid_size - 1):
            raise ValueError(f"Grid size must be a power of two, got {grid_size}")
        self.grid_size = grid_size

    def origin(self, x: int, y: int) -> Tuple[int, int]:
        return grid_origin(x, y, self.grid_size)

    def cell_for_tile(self, zoom: int, x: int, y: int) -> GridCell:
        ox, oy = self.origin(x, y)
        return GridCell(zoom, ox, oy, grid_span(zoom, self.grid_size))

    def cells(self, tile_range: TileRange) -> Iterator[GridCell]:
        """Cells covering the range, row by row."""
        zoom = tile_range.zoom
        span = grid_span(zoom, self.grid_size)
        start_x, start_y = self.origin(tile_range.start_x, tile_range.start_y)
        for y in range(start_y, tile_range.end_y + 1, self.grid_size):
            for x in range(start_x, tile_range.end_x + 1, self.grid_size):
                yield GridCell(zoom, x, y, span)


def slippy_tile_path(base: Union[str, Path], zoom: int, x: int, y: int, extension: str) -> Path:
    return Path(base) / str(zoom) / str(x) / f"{y}.{extension}"


def meta_tile_path(base: Union[str, Path], zoom: int, x: int, y: int, extension: str = "meta") -> Tuple[Path, int]:
    """
    Path of the meta-tile holding tile (x, y), and the tile's offset inside it.

    The path is {base}/{z}/{h4}/{h3}/{h2}/{h1}/{h0}.meta where each hash byte
    packs four bits of x and y.
    """
    mask = META_TILE_SIZE - 1
    offset = (x & mask) * META_TILE_SIZE + (y & mask)
    x &= ~mask
    y &= ~mask

    hashes = []
    for _ in range(5):
        hashes.append(((x & 0x0F) << 4) | (y & 0x0F))
        x >>= 4
        y >>= 4

    path = Path(base) / str(zoom) / str(hashes[4]) / str(hashes[3]) / str(hashes[2]) / str(hashes[1])
    return path / f"{hashes[0]}.{extension}", offset


def tile_meter_per_pixel(zoom: int, tile_size: int) -> float:
    return EARTH_CIRCUMFERENCE / (2 ** zoom) / tile_size


def haversine_distance(lon1: float, lat1: float, lon2: float, lat2: float, radius: float = EARTH_RADIUS) -> float:
    """Great circle distance between two WGS84 positions, in meters."""
    lon1, lat1, lon2, lat2 = map(math.radians, (lon1, lat1, lon2, lat2))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(0.5 * dlat) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(0.5 * dlon) ** 2
    return radius * 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))


def image_meter_per_pixel(bounds: Tuple[float, float, float, float], width: int) -> float:
    """Meters per pixel of an image spanning `bounds`, measured at its center latitude."""
    min_lon, min_lat, max_lon, max_lat = bounds
    center_lat = (min_lat + max_lat) * 0.5
    return haversine_distance(min_lon, center_lat, max_lon, center_lat) / width
