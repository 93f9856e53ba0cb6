"""
Indexed Polygon File

Reader and writer for the indexed polygon format. The header and a
fixed-size index entry per feature are read up front; vertex data stays on
disk and is read on demand, one feature body at a time.

Layout:

    "PLGN" | "II" or "MM" | uint32 count | 4 x float64 bbox | int64 srid
    count x (int64 position | 4 x float64 bbox | int32 parts | int32 points)
    per feature body: parts x int32 part start | points x (float64 x, float64 y)
"""

import os
import struct
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Sequence, Tuple, Union

from ..errors import DataFileError
from ..geometry.records import Ring

SIGNATURE = b"PLGN"
LITTLE_ENDIAN_MARK = b"II"
BIG_ENDIAN_MARK = b"MM"

_HEADER_SIZE = 4 + 2 + 4 + 4 * 8 + 8
_ENTRY_SIZE = 8 + 4 * 8 + 4 + 4

Bounds = Tuple[float, float, float, float]


@dataclass(frozen=True)
class PolygonIndexEntry:
    position: int
    bounds: Bounds
    part_count: int
    point_count: int

    @property
    def body_size(self) -> int:
        return self.part_count * 4 + self.point_count * 16

    def overlaps(self, bounds: Bounds) -> bool:
        return not (
            self.bounds[2] < bounds[0] or self.bounds[0] > bounds[2]
            or self.bounds[3] < bounds[1] or self.bounds[1] > bounds[3]
        )


class PolygonFile:
    """
    Open polygon file with its index loaded.

    Reads of feature bodies are serialized on an internal lock, so one
    instance can be shared by all worker threads.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        try:
            self._file = open(self.path, "rb")
        except OSError as e:
            raise DataFileError(f"Cannot open polygon file: {e}", path=str(self.path)) from e

        self._lock = threading.Lock()
        try:
            self._file_size = os.fstat(self._file.fileno()).st_size
            self._read_index()
        except Exception:
            self._file.close()
            raise

    def _read(self, size: int, what: str) -> bytes:
        data = self._file.read(size)
        if len(data) != size:
            raise DataFileError(
                f"Unexpected end of file while reading {what}",
                path=str(self.path)
            )
        return data

    def _read_index(self) -> None:
        header = self._read(_HEADER_SIZE, "header")
        if header[:4] != SIGNATURE:
            raise DataFileError("Not a polygon file (bad signature)", path=str(self.path))

        mark = header[4:6]
        if mark == LITTLE_ENDIAN_MARK:
            self.endian = "<"
        elif mark == BIG_ENDIAN_MARK:
            self.endian = ">"
        else:
            raise DataFileError(f"Unknown endianness marker {mark!r}", path=str(self.path))

        count, min_x, min_y, max_x, max_y, srid = struct.unpack(self.endian + "I4dq", header[6:])
        if count < 1:
            raise DataFileError("Polygon file contains no polygons", path=str(self.path))

        self.bounds: Bounds = (min_x, min_y, max_x, max_y)
        self.srid = int(srid)

        index = self._read(count * _ENTRY_SIZE, "index")
        entry_format = struct.Struct(self.endian + "q4dii")
        self.entries: List[PolygonIndexEntry] = []
        for position, x0, y0, x1, y1, parts, points in entry_format.iter_unpack(index):
            if parts < 0 or points < 0:
                raise DataFileError("Negative part or point count in index", path=str(self.path))
            self.entries.append(PolygonIndexEntry(position, (x0, y0, x1, y1), parts, points))

    def __len__(self) -> int:
        return len(self.entries)

    def overlapping(self, bounds: Bounds) -> Iterator[Tuple[int, PolygonIndexEntry]]:
        """Index entries whose bounding box overlaps `bounds`."""
        for i, entry in enumerate(self.entries):
            if entry.overlaps(bounds):
                yield i, entry

    def read_rings(self, entry: PolygonIndexEntry) -> List[Ring]:
        """
        Read the rings of one feature.

        Raises:
            DataFileError: If the body lies outside the file or is inconsistent
        """
        if entry.position < 0 or entry.position + entry.body_size > self._file_size:
            raise DataFileError(
                f"Feature body at {entry.position} exceeds the file size",
                path=str(self.path)
            )

        with self._lock:
            self._file.seek(entry.position)
            body = self._read(entry.body_size, "feature body")

        starts = list(struct.unpack_from(f"{self.endian}{entry.part_count}i", body, 0))
        values = struct.unpack_from(f"{self.endian}{entry.point_count * 2}d", body, entry.part_count * 4)

        if not starts:
            starts = [0]
        ends = starts[1:] + [entry.point_count]

        rings = []
        for start, end in zip(starts, ends):
            if start < 0 or end > entry.point_count or start > end:
                raise DataFileError(f"Invalid part start index {start}", path=str(self.path))
            rings.append([(values[i * 2], values[i * 2 + 1]) for i in range(start, end)])
        return rings

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> "PolygonFile":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


def write_polygon_file(
    path: Union[str, Path],
    polygons: Sequence[Sequence[Ring]],
    srid: int = 4326,
    little_endian: bool = True
) -> None:
    """
    Write polygons, each given as a list of rings, to an indexed polygon file.

    Args:
        path: Output file
        polygons: One list of rings per feature, the first ring being the shell
        srid: Spatial reference id stored in the header
        little_endian: Byte order of all numeric fields
    """
    if not polygons:
        raise ValueError("At least one polygon is required")

    endian = "<" if little_endian else ">"

    bodies = []
    entries = []
    position = _HEADER_SIZE + len(polygons) * _ENTRY_SIZE
    all_x: List[float] = []
    all_y: List[float] = []

    for rings in polygons:
        starts = []
        coords: List[float] = []
        xs: List[float] = []
        ys: List[float] = []
        for ring in rings:
            starts.append(len(xs))
            for x, y in ring:
                xs.append(float(x))
                ys.append(float(y))
                coords.extend((float(x), float(y)))
        if not xs:
            raise ValueError("Polygon without vertices")

        body = struct.pack(f"{endian}{len(starts)}i", *starts)
        body += struct.pack(f"{endian}{len(coords)}d", *coords)
        bodies.append(body)

        bbox = (min(xs), min(ys), max(xs), max(ys))
        entries.append(struct.pack(endian + "q4dii", position, *bbox, len(starts), len(xs)))
        position += len(body)
        all_x.extend((bbox[0], bbox[2]))
        all_y.extend((bbox[1], bbox[3]))

    header = SIGNATURE + (LITTLE_ENDIAN_MARK if little_endian else BIG_ENDIAN_MARK)
    header += struct.pack(
        endian + "I4dq", len(polygons),
        min(all_x), min(all_y), max(all_x), max(all_y), int(srid)
    )

    path = Path(path)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "wb") as f:
        f.write(header)
        for entry in entries:
            f.write(entry)
        for body in bodies:
            f.write(body)
    os.replace(tmp_path, path)
