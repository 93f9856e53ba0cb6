"""
WKB Geometry Decoder

Decodes OGC Well-Known Binary records into geometry records with shapely.
Byte order is honored per record and per member of a multi geometry, and
truncated or corrupt input raises GeometryDecodeError instead of reading
garbage.

PostGIS extended WKB (EWKB) is accepted. Its SRID is returned by
decode_wkb_with_srid so that layers can project tagged rows correctly.
Z and M dimensions are rejected as unsupported types.
"""

from typing import Optional, Tuple, Union

import shapely
import shapely.wkb
from shapely.errors import ShapelyError

from .records import GeometryRecord, record_from_shapely
from ..errors import GeometryDecodeError

WKB_TYPE_CODES = {
    "Point": 1,
    "LineString": 2,
    "Polygon": 3,
    "MultiPoint": 4,
    "MultiLineString": 5,
    "MultiPolygon": 6,
    "GeometryCollection": 7,
}

SUPPORTED_TYPES = ("Point", "LineString", "Polygon", "MultiLineString", "MultiPolygon")

# ISO WKB adds 1000 to the type code of geometries with a Z dimension
_ISO_Z_OFFSET = 1000


def decode_wkb_with_srid(
    data: Union[bytes, bytearray, memoryview, str]
) -> Tuple[GeometryRecord, Optional[int]]:
    """
    Decode a WKB record and the SRID embedded in it.

    Args:
        data: Raw WKB bytes, or hex encoded WKB text as returned for
            PostGIS geometry columns in text mode

    Returns:
        Tuple of the geometry record and the EWKB SRID, or None when the
        record carries no SRID

    Raises:
        GeometryDecodeError: For malformed, truncated or unsupported input
    """
    if isinstance(data, memoryview):
        data = data.tobytes()
    elif isinstance(data, bytearray):
        data = bytes(data)

    _check_byte_order(data)

    try:
        geometry = shapely.wkb.loads(data, hex=isinstance(data, str))
    except (ShapelyError, ValueError, TypeError) as e:
        raise GeometryDecodeError(f"Invalid WKB: {e}") from e

    geom_type = geometry.geom_type
    code = WKB_TYPE_CODES.get(geom_type)

    if geom_type not in SUPPORTED_TYPES:
        raise GeometryDecodeError(f"Unsupported WKB type {geom_type}", unsupported_type=code)

    if geometry.has_z:
        raise GeometryDecodeError(
            f"Unsupported WKB type {geom_type} Z",
            unsupported_type=code + _ISO_Z_OFFSET
        )

    try:
        record = record_from_shapely(geometry)
    except ValueError as e:
        raise GeometryDecodeError(str(e), unsupported_type=code) from e

    srid = shapely.get_srid(geometry)
    return record, (int(srid) if srid else None)


def decode_wkb(data: Union[bytes, bytearray, memoryview, str]) -> GeometryRecord:
    """Decode a WKB record, ignoring any embedded SRID."""
    record, _ = decode_wkb_with_srid(data)
    return record


def _check_byte_order(data: Union[bytes, str]) -> None:
    # GEOS falls back to machine order for an unknown outer flag
    if isinstance(data, str):
        head = data[:2]
        flag = int(head, 16) if len(head) == 2 and all(c in "0123456789abcdefABCDEF" for c in head) else None
    else:
        flag = data[0] if data else None
    if flag not in (0, 1):
        raise GeometryDecodeError(f"Invalid WKB byte order flag: {flag}")
