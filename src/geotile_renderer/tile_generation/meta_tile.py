"""
Meta-tile Container

mod_tile compatible container packing the 8 x 8 tiles of a grid cell into a
single file:

    "META" | int32 count | int32 x | int32 y | int32 z
    count x (uint32 offset, uint32 size)
    tile data

All fields are little endian; x and y are the grid origin.
"""

import os
import struct
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from .tile_grid import META_TILE_SIZE

MAGIC = b"META"
TILE_COUNT = META_TILE_SIZE * META_TILE_SIZE

_HEADER = struct.Struct("<4s4i")
_ENTRY = struct.Struct("<II")

TILE_ORDERS = ("col_", "row_")


def entry_index(dx: int, dy: int, order: str = "col_") -> int:
    """Index of sub-tile (dx, dy) in the entry table."""
    if order == "col_":
        return dx * META_TILE_SIZE + dy
    if order == "row_":
        return dy * META_TILE_SIZE + dx
    raise ValueError(f"Unknown tile order {order!r}")


def pack_meta_tile(
    tiles: Dict[Tuple[int, int], bytes],
    x: int,
    y: int,
    zoom: int,
    order: str = "col_"
) -> bytes:
    """
    Build a meta-tile from encoded sub-tiles keyed by (dx, dy).

    Missing sub-tiles get an entry with size 0.
    """
    slots = [b""] * TILE_COUNT
    for (dx, dy), data in tiles.items():
        if not (0 <= dx < META_TILE_SIZE and 0 <= dy < META_TILE_SIZE):
            raise ValueError(f"Sub-tile ({dx}, {dy}) outside the meta-tile")
        slots[entry_index(dx, dy, order)] = data

    offset = _HEADER.size + TILE_COUNT * _ENTRY.size
    parts = [_HEADER.pack(MAGIC, TILE_COUNT, x, y, zoom)]
    for data in slots:
        parts.append(_ENTRY.pack(offset, len(data)))
        offset += len(data)
    parts.extend(slots)
    return b"".join(parts)


def write_meta_tile(
    path: Union[str, Path],
    tiles: Dict[Tuple[int, int], bytes],
    x: int,
    y: int,
    zoom: int,
    order: str = "col_"
) -> int:
    """
    Write a meta-tile atomically. Returns the number of bytes written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = pack_meta_tile(tiles, x, y, zoom, order)

    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with open(tmp_path, "wb") as f:
        f.write(data)
    os.replace(tmp_path, path)
    return len(data)


def read_meta_header(data: bytes) -> Tuple[int, int, int, int]:
    """(count, x, y, zoom) of a meta-tile."""
    if len(data) < _HEADER.size:
        raise ValueError("Meta-tile too short")
    magic, count, x, y, zoom = _HEADER.unpack_from(data, 0)
    if magic != MAGIC:
        raise ValueError("Not a meta-tile (bad magic)")
    if count != TILE_COUNT:
        raise ValueError(f"Unexpected tile count {count}")
    return count, x, y, zoom


def extract_tile(data: bytes, x: int, y: int, order: str = "col_") -> Optional[bytes]:
    """The encoded tile (x, y) from meta-tile bytes, None if it is empty."""
    count, _, _, _ = read_meta_header(data)
    mask = META_TILE_SIZE - 1
    index = entry_index(x & mask, y & mask, order)

    offset, size = _ENTRY.unpack_from(data, _HEADER.size + index * _ENTRY.size)
    if size == 0:
        return None
    if offset + size > len(data):
        raise ValueError(f"Tile entry {index} exceeds the meta-tile")
    return data[offset:offset + size]


def read_meta_tile(path: Union[str, Path], x: int, y: int, order: str = "col_") -> Optional[bytes]:
    """Read tile (x, y) from a meta-tile file."""
    with open(path, "rb") as f:
        return extract_tile(f.read(), x, y, order)
