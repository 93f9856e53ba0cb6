"""
Meta-tile Compositor

Renders one meta-tile grid cell as a single raster and slices it into tiles.
In `tiles` mode only the tiles inside the requested range are written as
slippy map files; in `meta-tiles` mode every sub-tile of the cell is packed
into a meta-tile container.

All output goes to a temporary location first and is moved into place with
os.replace, so an interrupted run never leaves a truncated tile behind.
"""

import os
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog
from PIL import Image

from ..config import RenderJob
from ..monitoring.metrics import MetricsCollector
from ..rendering.raster import encode_image, file_extension
from .meta_tile import write_meta_tile
from .tile_grid import GridCell, TileRange, meta_tile_path, slippy_tile_path

SubTiles = Dict[Tuple[int, int], bytes]


@dataclass
class CellResult:
    """Outcome of one grid cell."""
    cell: GridCell
    success: bool
    tiles_written: int = 0
    meta_tiles_written: int = 0
    paths: List[str] = field(default_factory=list)
    region: Any = None
    error: Optional[str] = None


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    with open(tmp_path, "wb") as f:
        f.write(data)
    os.replace(tmp_path, path)


class MetaTileCompositor:
    """
    Turns grid cells into tile files.

    Args:
        job: Render job, providing tile size, output settings and mode
        render_region: Callable(top_left, bottom_right, pixel_size, zoom, region_id)
            returning an object with `success`, `image` and `error`
        metrics: Optional metrics collector
    """

    def __init__(
        self,
        job: RenderJob,
        render_region: Callable[..., Any],
        metrics: Optional[MetricsCollector] = None
    ):
        self.job = job
        self.render_region = render_region
        self.metrics = metrics
        self.extension = file_extension(job.output_format)
        self.logger = structlog.get_logger(component="MetaTileCompositor")

    def render_grid_cell(self, cell: GridCell, tile_range: TileRange) -> CellResult:
        """
        Render, slice and persist one grid cell.

        Args:
            cell: Grid cell to render
            tile_range: Tiles requested for this zoom level

        Returns:
            CellResult; a failed region yields success False and no files
        """
        pixel_size = self.job.tile_size * cell.span
        top_left, bottom_right = cell.wgs84_corners()

        region = self.render_region(top_left, bottom_right, (pixel_size, pixel_size), cell.zoom, cell.key)
        if not region.success:
            return CellResult(cell=cell, success=False, region=region, error=region.error)

        tiles = self.slice(region.image, cell, tile_range)
        if self.job.render_mode == "meta-tiles":
            result = self.persist_meta_tile(cell, tiles)
        else:
            result = self.persist_tiles(cell, tiles)
        result.region = region
        return result

    def slice(self, image: Image.Image, cell: GridCell, tile_range: TileRange) -> SubTiles:
        """
        Cut the cell raster into encoded tiles keyed by (dx, dy).

        `tiles` mode keeps only tiles inside `tile_range`; `meta-tiles` mode
        keeps all of them.
        """
        size = self.job.tile_size
        keep_all = self.job.render_mode == "meta-tiles"

        tiles: SubTiles = {}
        for dx, dy, x, y in cell.tiles():
            if not keep_all and not tile_range.contains(x, y):
                continue
            tile = image.crop((dx * size, dy * size, (dx + 1) * size, (dy + 1) * size))
            tiles[(dx, dy)] = encode_image(
                tile,
                self.job.output_format,
                quality=self.job.output_quality,
                use_alpha=self.job.use_alpha
            )
        return tiles

    def persist_tiles(self, cell: GridCell, tiles: SubTiles) -> CellResult:
        result = CellResult(cell=cell, success=True)
        for (dx, dy), data in tiles.items():
            path = slippy_tile_path(self.job.output_path, cell.zoom, cell.x + dx, cell.y + dy, self.extension)
            _atomic_write(path, data)
            result.paths.append(str(path))
            result.tiles_written += 1

        if self.metrics is not None and result.tiles_written:
            self.metrics.increment_counter('tiles_written_total', result.tiles_written, {'zoom': cell.zoom})

        self.logger.debug("Tiles written", cell=cell.key, tiles=result.tiles_written)
        return result

    def persist_meta_tile(self, cell: GridCell, tiles: SubTiles) -> CellResult:
        """
        Stage sub-tiles in a temporary directory, pack them into the meta-tile
        and remove the directory.
        """
        output = Path(self.job.output_path)
        temp_dir = output / f"_temp_{cell.zoom}_{cell.y}_{cell.x}"
        temp_dir.mkdir(parents=True, exist_ok=True)

        try:
            for (dx, dy), data in tiles.items():
                _atomic_write(temp_dir / f"_tile_{dx + dy * 8}.{self.extension}", data)

            packed: SubTiles = {}
            for dx, dy, _, _ in cell.tiles():
                tile_file = temp_dir / f"_tile_{dx + dy * 8}.{self.extension}"
                if tile_file.is_file():
                    packed[(dx, dy)] = tile_file.read_bytes()

            path, _ = meta_tile_path(output, cell.zoom, cell.x, cell.y)
            start = time.perf_counter()
            size = write_meta_tile(path, packed, cell.x, cell.y, cell.zoom, self.job.meta_tile_order)
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

        if self.metrics is not None:
            self.metrics.increment_counter('tiles_written_total', len(packed), {'zoom': cell.zoom})
            self.metrics.increment_counter('meta_tiles_written_total', 1, {'zoom': cell.zoom})

        self.logger.debug(
            "Meta-tile written",
            cell=cell.key,
            path=str(path),
            tiles=len(packed),
            bytes=size,
            elapsed=time.perf_counter() - start
        )
        return CellResult(
            cell=cell,
            success=True,
            tiles_written=len(packed),
            meta_tiles_written=1,
            paths=[str(path)]
        )
