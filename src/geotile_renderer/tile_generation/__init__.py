"""
Tile Generation Module

Tile grid math, the meta-tile container, the compositor that slices region
rasters into tiles and the renderer that drives a run.

This module demonstrates:
- Slippy map tile indexing in Web Mercator
- mod_tile compatible meta-tiles
- Parallel, zoom ordered region rendering
"""

from .tile_grid import (
    GridCell,
    MetaTileGrid,
    TileRange,
    meta_tile_path,
    slippy_tile_path,
    wgs84_from_tile_index,
    wgs84_to_tile_index,
)
from .meta_tile import pack_meta_tile, read_meta_tile, write_meta_tile
from .compositor import CellResult, MetaTileCompositor
from .tile_renderer import RegionResult, RunResult, TileRenderer

__all__ = [
    "GridCell",
    "MetaTileGrid",
    "TileRange",
    "meta_tile_path",
    "slippy_tile_path",
    "wgs84_from_tile_index",
    "wgs84_to_tile_index",
    "pack_meta_tile",
    "read_meta_tile",
    "write_meta_tile",
    "CellResult",
    "MetaTileCompositor",
    "RegionResult",
    "RunResult",
    "TileRenderer",
]
