"""
Tile Renderer

Drives a render run: iterates zoom levels and meta-tile grid cells (or a
single image region), renders every active layer into the region raster in
registration order and hands the result to the compositor.

This module demonstrates:
- Parallel region rendering with a thread pool, one zoom level at a time
- Failure isolation per feature, layer and region
- Zoom gated, release-once layer resources
- Cooperative cancellation with partial results
- Structured logging and Prometheus metrics
"""

import concurrent.futures
import math
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import structlog
from PIL import Image

from ..config import RenderJob, validate_job
from ..errors import ProjectionError, RendererError, RenderResourceError
from ..geometry.projection import WGS84_SRID, ProjectionCache
from ..geometry.remap import RemapTransform, fit_rect
from ..layers import Layer, PSQLConnectionRegistry, build_layer
from ..monitoring.metrics import MetricsCollector
from ..monitoring.statistics import RunStatistics
from ..rendering.context import RenderContext
from ..rendering.raster import PillowCanvas, encode_image, file_extension
from .compositor import CellResult, MetaTileCompositor
from .tile_grid import (
    MetaTileGrid,
    TileRange,
    image_meter_per_pixel,
    tile_meter_per_pixel,
)

LonLat = Tuple[float, float]


@dataclass
class RegionResult:
    """Raster and diagnostics of one rendered region."""
    region_id: str
    zoom: int
    success: bool
    image: Optional[Image.Image] = None
    statistics: RunStatistics = field(default_factory=RunStatistics)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    elapsed: float = 0.0
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class RunResult:
    """Outcome of a render run."""
    success: bool
    render_mode: str
    statistics: RunStatistics = field(default_factory=RunStatistics)
    completed_cells: Dict[int, List[Tuple[int, int]]] = field(default_factory=dict)
    failed_cells: Dict[int, List[Tuple[int, int]]] = field(default_factory=dict)
    output_files: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False
    fatal_error: Optional[str] = None
    elapsed: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'render_mode': self.render_mode,
            'cancelled': self.cancelled,
            'fatal_error': self.fatal_error,
            'processing_time': self.elapsed,
            'completed_cells': {z: len(cells) for z, cells in self.completed_cells.items()},
            'failed_cells': {z: len(cells) for z, cells in self.failed_cells.items()},
            'output_files': len(self.output_files),
            'errors': len(self.errors),
            'statistics': self.statistics.to_dict(),
        }


class TileRenderer:
    """
    Render orchestrator.

    Args:
        metrics: Metrics collector, a private one is created if omitted
        max_workers: Worker threads per zoom level, overrides the job setting
        connect: Database connection factory passed to the connection registry
    """

    def __init__(
        self,
        metrics: Optional[MetricsCollector] = None,
        max_workers: Optional[int] = None,
        connect=None
    ):
        self.metrics = metrics or MetricsCollector()
        self.max_workers = max_workers
        self._connect = connect

        self.job: Optional[RenderJob] = None
        self.layers: List[Layer] = []
        self.connections: Optional[PSQLConnectionRegistry] = None
        self.projections = ProjectionCache()
        self.grid = MetaTileGrid()

        self._cancel_event = threading.Event()
        self._deadline: Optional[float] = None

        self.logger = structlog.get_logger(component="TileRenderer")

    def configure(self, job: RenderJob) -> RenderJob:
        """
        Validate a job and build its layers.

        Nothing is changed on the renderer if validation fails.

        Raises:
            ConfigError: For the first violation found
        """
        validate_job(job)

        registry_args = {
            'retry_count': job.retry_count,
            'retry_backoff': job.retry_backoff,
        }
        if self._connect is not None:
            registry_args['connect'] = self._connect
        connections = PSQLConnectionRegistry(job.databases, **registry_args)
        layers = [build_layer(layer_config, connections=connections) for layer_config in job.layers]

        if self.connections is not None:
            self.connections.close_all()

        self.job = job
        self.layers = layers
        self.connections = connections

        self.logger.info(
            "Renderer configured",
            title=job.title,
            render_mode=job.render_mode,
            layers=[repr(layer) for layer in layers]
        )
        return job

    def cancel(self) -> None:
        """Stop scheduling regions; in-flight regions still finish."""
        self._cancel_event.set()
        self.logger.warning("Cancellation requested")

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _should_stop(self) -> bool:
        if self._deadline is not None and time.monotonic() >= self._deadline:
            if not self._cancel_event.is_set():
                self.logger.warning("Deadline reached")
                self._cancel_event.set()
        return self._cancel_event.is_set()

    def run(self, job: Optional[RenderJob] = None, deadline: Optional[float] = None) -> RunResult:
        """
        Execute a render run.

        Args:
            job: Job to run; configures the renderer if given
            deadline: Optional time budget in seconds

        Returns:
            RunResult with statistics, completed cells and diagnostics

        Raises:
            ConfigError: If `job` is invalid
        """
        if job is not None:
            self.configure(job)
        if self.job is None:
            raise RuntimeError("TileRenderer.run() called before configure()")
        job = self.job

        self._cancel_event.clear()
        self._deadline = time.monotonic() + deadline if deadline is not None else None
        self.projections = ProjectionCache()

        result = RunResult(success=True, render_mode=job.render_mode)
        for layer in self.layers:
            layer.begin_run()
            result.statistics.layer(layer.name)

        start_time = time.time()
        self.logger.info(
            "Starting render run",
            title=job.title,
            render_mode=job.render_mode,
            zoom_min=job.min_zoom,
            zoom_max=job.max_zoom,
            bounds=job.bounds
        )

        try:
            # The default projection is needed by every region
            self.projections.get(WGS84_SRID, job.destination_srid)
            Path(job.output_path).mkdir(parents=True, exist_ok=True)

            if job.is_tile_mode:
                self._run_tiles(job, result)
            else:
                self._run_images(job, result)

        except ProjectionError as e:
            result.success = False
            result.fatal_error = f"Default projection failed: {e}"
            self.logger.error("Render run aborted", error=str(e), category=e.category)
        except OSError as e:
            result.success = False
            result.fatal_error = f"Output not writable: {e}"
            self.logger.error("Render run aborted", error=str(e))
        finally:
            for layer in self.layers:
                self._release_layer(layer, result)
            if self.connections is not None:
                self.connections.close_all()

        result.cancelled = self.cancelled
        result.elapsed = time.time() - start_time
        result.statistics.render_time = result.elapsed
        self.metrics.record_timing('run_duration_seconds', result.elapsed, {'render_mode': job.render_mode})

        self.logger.info(
            "Render run completed" if result.success else "Render run failed",
            cancelled=result.cancelled,
            processing_time=result.elapsed,
            regions=result.statistics.regions,
            failed_regions=result.statistics.failed_regions,
            tiles=result.statistics.tiles,
            meta_tiles=result.statistics.meta_tiles,
            errors=len(result.errors)
        )
        return result

    def _run_tiles(self, job: RenderJob, result: RunResult) -> None:
        compositor = MetaTileCompositor(job, self.render_region, self.metrics)
        max_workers = self.max_workers or job.max_workers

        # Shared by every zoom level; script engines live per worker thread
        with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
            for zoom in range(job.min_zoom, job.max_zoom + 1):
                if self._should_stop():
                    break

                for layer in self.layers:
                    if self._release_layer(layer, result, zoom):
                        self.logger.info("Layer finished", layer=layer.name, zoom=zoom)

                self._run_zoom(executor, compositor, job, zoom, result)

    def _run_zoom(self, executor, compositor: MetaTileCompositor, job: RenderJob, zoom: int,
                  result: RunResult) -> None:
        tile_range = TileRange.from_bounds(zoom, job.bounds)
        cells = list(self.grid.cells(tile_range))
        zoom_start = time.time()
        self.logger.info("Rendering zoom level", zoom=zoom, cells=len(cells), tiles=tile_range.tile_count)

        future_to_cell = {
            executor.submit(self._render_cell, compositor, cell, tile_range): cell
            for cell in cells
        }

        for future in concurrent.futures.as_completed(future_to_cell):
            cell = future_to_cell[future]
            try:
                cell_result = future.result()
            except Exception as e:
                self.logger.error("Error processing cell", cell=cell.key, error=str(e))
                result.failed_cells.setdefault(zoom, []).append((cell.x, cell.y))
                result.errors.append({'region': cell.key, 'category': type(e).__name__, 'error': str(e)})
                result.statistics.failed_regions += 1
                continue

            if cell_result is None:
                continue
            self._collect(result, cell_result.region)
            if cell_result.success:
                result.completed_cells.setdefault(zoom, []).append((cell.x, cell.y))
                result.output_files.extend(cell_result.paths)
                result.statistics.tiles += cell_result.tiles_written
                result.statistics.meta_tiles += cell_result.meta_tiles_written
            else:
                result.failed_cells.setdefault(zoom, []).append((cell.x, cell.y))

        self.logger.info(
            "Completed zoom level",
            zoom=zoom,
            cells_completed=len(result.completed_cells.get(zoom, [])),
            processing_time=time.time() - zoom_start
        )

    def _release_layer(self, layer: Layer, result: RunResult, zoom: Optional[int] = None) -> bool:
        """Release a layer, or only a finished one when `zoom` is given. Failures go into the result."""
        if zoom is None:
            released = layer.release(result.statistics)
        else:
            released = layer.release_if_done(zoom, result.statistics)
        if released and layer.release_error is not None:
            result.errors.append({
                'layer': layer.name,
                'category': 'ReleaseError',
                'error': str(layer.release_error)
            })
        return released

    def _render_cell(self, compositor: MetaTileCompositor, cell, tile_range: TileRange) -> Optional[CellResult]:
        if self._should_stop():
            return None
        return compositor.render_grid_cell(cell, tile_range)

    def _run_images(self, job: RenderJob, result: RunResult) -> None:
        bounds = job.padded_bounds()
        top_left = (bounds[0], bounds[3])
        bottom_right = (bounds[2], bounds[1])
        extension = file_extension(job.output_format)
        frames = job.animation_frames if job.render_mode == "animation" else 1

        for frame in range(frames):
            if self._should_stop():
                break

            time_value = job.animation_time_start + frame * job.animation_time_step
            region_id = "image" if frames == 1 and job.render_mode == "image" else f"frame_{frame}"

            region = self.render_region(
                top_left,
                bottom_right,
                (job.image_width, job.image_height),
                job.image_zoom_level,
                region_id,
                time_value=time_value,
                fit_aspect=True
            )
            self._collect(result, region)
            if not region.success:
                result.failed_cells.setdefault(job.image_zoom_level, []).append((frame, 0))
                continue

            if job.render_mode == "animation":
                file_name = f"{job.output_file_name}_{frame:05d}.{extension}"
            else:
                file_name = f"{job.output_file_name}.{extension}"
            path = Path(job.output_path) / file_name

            data = encode_image(region.image, job.output_format, quality=job.output_quality, use_alpha=job.use_alpha)
            tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
            with open(tmp_path, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)

            result.output_files.append(str(path))
            result.completed_cells.setdefault(job.image_zoom_level, []).append((frame, 0))
            self.logger.info("Image written", path=str(path), frame=frame, time=time_value)

    def _collect(self, result: RunResult, region: Optional[RegionResult]) -> None:
        if region is None:
            return
        result.statistics.merge(region.statistics)
        result.errors.extend(region.errors)
        if not region.success:
            result.errors.append({'region': region.region_id, 'category': 'ResourceError', 'error': region.error})

    def render_region(
        self,
        wgs84_top_left: LonLat,
        wgs84_bottom_right: LonLat,
        pixel_size: Tuple[int, int],
        zoom: int,
        region_id: str = "",
        time_value: float = 0.0,
        fit_aspect: bool = False
    ) -> RegionResult:
        """
        Render all active layers into one region raster.

        Args:
            wgs84_top_left: (lon, lat) of the top left corner
            wgs84_bottom_right: (lon, lat) of the bottom right corner
            pixel_size: Raster width and height
            zoom: Zoom level used for layer gating and scale
            region_id: Identifier used in logs and diagnostics
            time_value: Animation time exposed to scripts
            fit_aspect: Shrink the raster to the projected aspect ratio

        Returns:
            RegionResult; region level failures are reported in it, not raised
        """
        job = self.job
        start = time.perf_counter()
        statistics = RunStatistics()
        for layer in self.layers:
            statistics.layer(layer.name)

        self.metrics.adjust_gauge('regions_in_flight', 1)
        try:
            handle = self.projections.get(WGS84_SRID, job.destination_srid)
            left, top = handle.transform(*wgs84_top_left)
            right, bottom = handle.transform(*wgs84_bottom_right)
            if not all(math.isfinite(v) for v in (left, top, right, bottom)):
                raise ProjectionError(
                    f"Region {region_id} cannot be projected to {job.destination_srid}",
                    src_srid=WGS84_SRID,
                    dst_srid=job.destination_srid
                )

            dst_bounds = (min(left, right), min(top, bottom), max(left, right), max(top, bottom))
            source_rect = (dst_bounds[0], dst_bounds[1], dst_bounds[2] - dst_bounds[0], dst_bounds[3] - dst_bounds[1])

            width, height = pixel_size
            if fit_aspect:
                _, _, fitted_w, fitted_h = fit_rect(source_rect[2], source_rect[3], width, height)
                width = max(1, int(round(fitted_w)))
                height = max(1, int(round(fitted_h)))

            canvas = PillowCanvas(width, height)
            canvas.clear(job.background_color, job.background_opacity)
            remap = RemapTransform.build(source_rect, (0.0, 0.0, float(width), float(height)), flip_vertical=True)

            if job.is_tile_mode:
                meter_per_pixel = tile_meter_per_pixel(zoom, job.tile_size)
            else:
                meter_per_pixel = image_meter_per_pixel(job.padded_bounds(), width)

            context = RenderContext(
                zoom=zoom,
                dst_srid=job.destination_srid,
                dst_bounds=dst_bounds,
                remap=remap,
                canvas=canvas,
                meter_per_pixel=meter_per_pixel,
                projections=self.projections,
                statistics=statistics,
                time=time_value,
                region_id=region_id
            )
            self._render_layers(context)

        except RendererError as e:
            elapsed = time.perf_counter() - start
            statistics.regions += 1
            statistics.failed_regions += 1
            self.metrics.increment_counter('regions_total', labels={'status': 'failed'})
            self.logger.error(
                "Region failed",
                region=region_id,
                zoom=zoom,
                category=e.category,
                error=str(e)
            )
            return RegionResult(
                region_id=region_id,
                zoom=zoom,
                success=False,
                statistics=statistics,
                elapsed=elapsed,
                error=str(e)
            )
        finally:
            self.metrics.adjust_gauge('regions_in_flight', -1)

        elapsed = time.perf_counter() - start
        statistics.regions += 1
        self.metrics.increment_counter('regions_total', labels={'status': 'ok'})
        self.metrics.record_timing('region_duration_seconds', elapsed, {'zoom': zoom})
        self.logger.debug("Region rendered", region=region_id, zoom=zoom, elapsed=elapsed)

        return RegionResult(
            region_id=region_id,
            zoom=zoom,
            success=True,
            image=canvas.image,
            statistics=statistics,
            errors=context.errors,
            elapsed=elapsed
        )

    def _render_layers(self, context: RenderContext) -> None:
        """Render active layers in registration order; a failing layer never stops the others."""
        for index, layer in enumerate(self.layers):
            if not layer.is_active(context.zoom):
                continue

            context.layer_index = index
            stats = context.statistics.layer(layer.name)
            rows_before = stats.db_rows
            calls_before = stats.rendering_calls

            try:
                layer.render(context)
            except RenderResourceError:
                raise
            except RendererError as e:
                if e.layer is None:
                    e.layer = layer.name
                context.record_error(layer.name, e)
                self.metrics.increment_counter(
                    'layer_errors_total', labels={'layer': layer.name, 'category': e.category}
                )
                self.logger.error(
                    "Layer failed",
                    layer=layer.name,
                    region=context.region_id,
                    zoom=context.zoom,
                    category=e.category,
                    error=str(e)
                )
            except Exception as e:
                context.record_error(layer.name, e)
                self.metrics.increment_counter(
                    'layer_errors_total', labels={'layer': layer.name, 'category': type(e).__name__}
                )
                self.logger.exception(
                    "Layer failed unexpectedly",
                    layer=layer.name,
                    region=context.region_id,
                    zoom=context.zoom,
                    error=str(e)
                )

            if stats.rendering_calls > calls_before:
                self.metrics.increment_counter(
                    'features_rendered_total', stats.rendering_calls - calls_before, {'layer': layer.name}
                )
            if stats.db_rows > rows_before:
                self.metrics.increment_counter('db_rows_total', stats.db_rows - rows_before, {'layer': layer.name})


# Example usage
if __name__ == "__main__":
    import tempfile

    from ..config import LayerConfig
    from ..layers.polygon_file import write_polygon_file
    from ..rendering.styling import DrawMode, DrawSettings

    work_dir = Path(tempfile.mkdtemp())
    write_polygon_file(
        work_dir / "square.plgn",
        [[[(5.0, 45.0), (15.0, 45.0), (15.0, 55.0), (5.0, 55.0), (5.0, 45.0)]]]
    )

    job = RenderJob(
        title="Example",
        render_mode="tiles",
        min_zoom=0,
        max_zoom=3,
        bounds=(0.0, 40.0, 20.0, 60.0),
        tile_size=256,
        output_path=work_dir / "tiles",
        background_color=(1.0, 1.0, 1.0),
        layers=(
            LayerConfig(
                name="square",
                type="polygon",
                dir_path=work_dir,
                file_name="square.plgn",
                draw_settings=DrawSettings(draw_mode=DrawMode.FILL_STROKE, fill_color=(0.2, 0.5, 0.8))
            ),
        )
    )

    renderer = TileRenderer()
    run_result = renderer.run(job)

    print(run_result.statistics.report(job.render_mode))
    print(f"Tiles written to {job.output_path}: {len(run_result.output_files)}")
