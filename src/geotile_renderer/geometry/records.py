"""Geometry records handed from data sources to the rasterizer."""

from dataclasses import dataclass, field
from typing import Callable, List, Tuple, Union

from shapely.geometry.base import BaseGeometry

Coordinate = Tuple[float, float]
Ring = List[Coordinate]


@dataclass
class Point:
    """A single position."""
    x: float
    y: float

    def map(self, func: Callable[[float, float], Coordinate]) -> "Point":
        x, y = func(self.x, self.y)
        return Point(x, y)


@dataclass
class Path:
    """
    An ordered list of rings.

    Ring boundaries are kept so that fills can use even-odd winding for holes.
    `closed` is True for polygon rings and False for line strings.
    """
    rings: List[Ring] = field(default_factory=list)
    closed: bool = False

    @property
    def point_count(self) -> int:
        return sum(len(ring) for ring in self.rings)

    def map(self, func: Callable[[float, float], Coordinate]) -> "Path":
        return Path(
            rings=[[func(x, y) for x, y in ring] for ring in self.rings],
            closed=self.closed
        )

    def bounds(self) -> Tuple[float, float, float, float]:
        xs = [x for ring in self.rings for x, _ in ring]
        ys = [y for ring in self.rings for _, y in ring]
        if not xs:
            return (0.0, 0.0, 0.0, 0.0)
        return (min(xs), min(ys), max(xs), max(ys))


GeometryRecord = Union[Point, Path]


def record_from_shapely(geometry: BaseGeometry) -> GeometryRecord:
    """
    Convert a shapely geometry into a geometry record.

    Args:
        geometry: Point, LineString, Polygon or one of their Multi* forms

    Returns:
        Point for point geometries, Path otherwise

    Raises:
        ValueError: For empty or unsupported geometries
    """
    if geometry is None or geometry.is_empty:
        raise ValueError("Empty geometry")

    geom_type = geometry.geom_type

    if geom_type == "Point":
        return Point(geometry.x, geometry.y)

    if geom_type == "MultiPoint":
        # Multi points are drawn at their first member
        first = geometry.geoms[0]
        return Point(first.x, first.y)

    if geom_type in ("LineString", "LinearRing"):
        return Path(rings=[_xy(geometry.coords)], closed=False)

    if geom_type == "MultiLineString":
        return Path(rings=[_xy(line.coords) for line in geometry.geoms], closed=False)

    if geom_type == "Polygon":
        return Path(rings=_polygon_rings(geometry), closed=True)

    if geom_type == "MultiPolygon":
        rings = []
        for polygon in geometry.geoms:
            rings.extend(_polygon_rings(polygon))
        return Path(rings=rings, closed=True)

    raise ValueError(f"Unsupported geometry type: {geom_type}")


def _polygon_rings(polygon) -> List[Ring]:
    rings = [_xy(polygon.exterior.coords)]
    for interior in polygon.interiors:
        rings.append(_xy(interior.coords))
    return rings


def _xy(coords) -> Ring:
    return [(c[0], c[1]) for c in coords]
