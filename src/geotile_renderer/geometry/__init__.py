"""
Geometry Module

Geometry records, the WKB decoder, the pixel remap transform and the
projection cache used by every data source layer.
"""

from .records import Point, Path, GeometryRecord, record_from_shapely
from .wkb import decode_wkb, decode_wkb_with_srid
from .remap import RemapTransform, fit_rect
from .projection import ProjectionCache, ProjectionHandle, WGS84_SRID, WEB_MERCATOR_SRID

__all__ = [
    "Point",
    "Path",
    "GeometryRecord",
    "record_from_shapely",
    "decode_wkb",
    "decode_wkb_with_srid",
    "RemapTransform",
    "fit_rect",
    "ProjectionCache",
    "ProjectionHandle",
    "WGS84_SRID",
    "WEB_MERCATOR_SRID",
]
