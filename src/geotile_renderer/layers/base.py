"""
Base Layer

Common behaviour of every data source layer.

This module demonstrates:
- Abstract base class with a single data access capability
- Lazily opened, run-scoped resources guarded by a per-layer lock
- The shared per-feature pipeline (script, projection, remap, draw)
- Feature-scoped error handling that never aborts the layer
"""

import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import numpy as np
import structlog

from ..config import LayerConfig
from ..errors import ProjectionError, RendererError, ScriptError
from ..geometry.records import GeometryRecord, Path, Point
from ..monitoring.statistics import LayerStatistics, RunStatistics
from ..rendering.context import RenderContext
from ..rendering.scripting import ScriptHookAdapter
from ..rendering.styling import DrawMode, DrawSettings

# Fill extents below this are not worth an extra stroke
MIN_FILL_EXTENT_PX = 0.005


@dataclass
class Feature:
    """One record produced by a layer, in the coordinates of `srid`."""
    record: GeometryRecord
    srid: int
    attributes: Dict[str, Any] = field(default_factory=dict)
    row: int = 0
    radius_px: Optional[float] = None


FeatureCallback = Callable[[Feature], None]


class Layer(ABC):
    """
    Abstract base class for all layer variants.

    Subclasses implement `for_each_overlapping_record`, and optionally
    `_open_resources` / `_release_resources` for anything that should live
    for the whole run (connections, loaded files, indexes).
    """

    layer_type = ""

    def __init__(self, config: LayerConfig, script: Optional[ScriptHookAdapter] = None):
        """
        Initialize the layer.

        Args:
            config: Layer configuration
            script: Script adapter, created from the configured script text if omitted
        """
        self.config = config
        self.name = config.name
        self.srid = config.srid
        self.min_zoom = config.min_zoom
        self.max_zoom = config.max_zoom
        self.settings: DrawSettings = config.draw_settings

        if script is None and config.has_script:
            script = ScriptHookAdapter(config.name, config.script)
        self.script = script

        self._lock = threading.Lock()
        self._opened = False
        self._released = False
        self.release_error: Optional[Exception] = None

        self.logger = structlog.get_logger(component=self.__class__.__name__, layer=self.name)

    @classmethod
    def from_config(cls, config: LayerConfig, connections=None) -> "Layer":
        """Build the layer; `connections` is only used by database backed layers."""
        return cls(config)

    def is_active(self, zoom: int) -> bool:
        return self.min_zoom <= zoom <= self.max_zoom

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def is_released(self) -> bool:
        return self._released

    def begin_run(self) -> None:
        """Reset the one-shot release flag for a new run."""
        with self._lock:
            if self._opened:
                self._release_resources()
                self._opened = False
            self._released = False
            self.release_error = None

    def ensure_open(self, context: RenderContext) -> None:
        """
        Open run-scoped resources on first use.

        A failed open leaves the layer closed so the next region tries again.

        Raises:
            RendererError: If the layer was already released in this run, or
                the resources cannot be opened
        """
        if self._opened:
            return

        with self._lock:
            if self._released:
                raise RendererError("Layer used after its resources were released", layer=self.name)
            if not self._opened:
                start = time.perf_counter()
                self._open_resources(context)
                self._opened = True
                self.logger.info("Layer resources opened", elapsed=time.perf_counter() - start)

    def release(self, statistics: Optional[RunStatistics] = None) -> bool:
        """
        Release run-scoped resources. Safe to call any number of times.

        A failed release is logged, kept in `release_error` and counted as a
        ReleaseError in `statistics` when given.

        Returns:
            True if this call performed the release
        """
        with self._lock:
            if self._released:
                return False
            self._released = True
            if self._opened:
                self._opened = False
                try:
                    self._release_resources()
                except Exception as e:
                    self.release_error = e
                    self.logger.error("Failed to release layer resources", error=str(e))
                    if statistics is not None:
                        statistics.layer(self.name).record_error("ReleaseError")
            self.logger.info("Layer resources released")
            return True

    def release_if_done(self, zoom: int, statistics: Optional[RunStatistics] = None) -> bool:
        """Release the layer once the running zoom passes its max zoom."""
        if zoom > self.max_zoom and not self._released:
            return self.release(statistics)
        return False

    def _open_resources(self, context: RenderContext) -> None:
        pass

    def _release_resources(self) -> None:
        pass

    @abstractmethod
    def for_each_overlapping_record(self, context: RenderContext, callback: FeatureCallback) -> None:
        """
        Call `callback` for every record that may overlap the region.

        Args:
            context: Render context of the current region
            callback: Receives one Feature per candidate record
        """
        pass

    def render(self, context: RenderContext) -> None:
        """
        Render all overlapping records of this layer into the region.

        Feature-scoped errors are recorded and skipped; layer-scoped errors
        propagate to the caller.
        """
        stats = context.statistics.layer(self.name)
        self.ensure_open(context)

        if self.script is not None:
            stats.script_preparation_time += self.script.prepare(
                context.layer_index, context.zoom, context.time
            )

        start = time.perf_counter()
        self.for_each_overlapping_record(
            context,
            lambda feature: self._render_feature(context, feature, stats)
        )
        stats.render_time += time.perf_counter() - start

    def record_feature_error(self, context: RenderContext, error: RendererError, row: int = -1) -> None:
        """Count and log an error that only affects a single feature."""
        context.record_error(self.name, error, row=row)
        self.logger.warning(
            "Feature skipped",
            row=row,
            category=error.category,
            error=str(error)
        )

    def _render_feature(self, context: RenderContext, feature: Feature, stats: LayerStatistics) -> None:
        settings = self.settings.copy()

        if self.script is not None:
            start = time.perf_counter()
            try:
                keep = self.script.evaluate(feature.row, feature.attributes, settings)
            except ScriptError as e:
                self.record_feature_error(context, e, feature.row)
                return
            finally:
                stats.script_exec_time += time.perf_counter() - start
            if not keep:
                stats.skipped_by_script += 1
                return

        record = feature.record
        if feature.srid != context.dst_srid:
            start = time.perf_counter()
            handle = context.projections.get(feature.srid, context.dst_srid)
            try:
                record = project_record(record, handle)
            except ProjectionError as e:
                stats.out_of_range += 1
                self.record_feature_error(context, e, feature.row)
                return
            finally:
                stats.projection_time += time.perf_counter() - start

        settings.resolve(context.meter_per_pixel)
        if feature.radius_px is not None:
            settings.radius_px = feature.radius_px

        pixel_record = record.map(context.remap)
        self.draw(context, pixel_record, settings, feature.attributes, stats)

    def draw(
        self,
        context: RenderContext,
        record: GeometryRecord,
        settings: DrawSettings,
        attributes: Dict[str, Any],
        stats: LayerStatistics
    ) -> None:
        """Dispatch a pixel space record to the canvas by draw mode and geometry kind."""
        canvas = context.canvas
        mode = settings.draw_mode
        blend = settings.blend_mode
        stats.rendering_calls += 1

        if isinstance(record, Point):
            if mode is DrawMode.TEXT_AT_POINT:
                text = label_text(attributes, settings.text_field)
                if text:
                    canvas.draw_text(
                        text, record.x, record.y, settings.text_color, settings.text_opacity,
                        settings.font, settings.font_size, blend
                    )
                    stats.texts += 1
                return

            def fill():
                canvas.fill_point(
                    settings.point_shape, record.x, record.y, settings.radius_px,
                    settings.fill_color, settings.fill_opacity, blend
                )

            def stroke():
                canvas.stroke_point(
                    settings.point_shape, record.x, record.y, settings.radius_px,
                    settings.stroke_color, settings.stroke_opacity, settings.stroke_width_px, blend
                )

            self._paint(mode, fill, stroke, stats)
            stats.points += 1
            return

        if mode is DrawMode.TEXT_AT_POINT:
            return

        def fill():
            canvas.fill_path(record.rings, settings.fill_color, settings.fill_opacity, blend)
            if mode is DrawMode.FILL and settings.fill_extent_px > MIN_FILL_EXTENT_PX:
                # Closes hairline gaps between neighbouring polygons
                canvas.stroke_path(
                    record.rings, True, settings.fill_color, settings.fill_opacity,
                    settings.fill_extent_px, (), settings.stroke_cap, settings.stroke_join,
                    settings.stroke_miter_limit, blend
                )

        def stroke():
            canvas.stroke_path(
                record.rings, record.closed, settings.stroke_color, settings.stroke_opacity,
                settings.stroke_width_px, settings.stroke_dash, settings.stroke_cap,
                settings.stroke_join, settings.stroke_miter_limit, blend
            )

        self._paint(mode, fill, stroke, stats)

    @staticmethod
    def _paint(mode: DrawMode, fill: Callable[[], None], stroke: Callable[[], None], stats: LayerStatistics) -> None:
        if mode is DrawMode.FILL:
            fill()
        elif mode is DrawMode.STROKE:
            stroke()
        elif mode is DrawMode.FILL_STROKE:
            fill()
            stroke()
        elif mode is DrawMode.STROKE_FILL:
            stroke()
            fill()
        if mode.has_fill:
            stats.fills += 1
        if mode.has_stroke:
            stats.strokes += 1

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, zoom={self.min_zoom}..{self.max_zoom})"


def project_record(record: GeometryRecord, handle) -> GeometryRecord:
    """
    Project a record with a ProjectionHandle.

    Raises:
        ProjectionError: If any vertex projects to a non-finite position
    """
    if isinstance(record, Point):
        x, y = handle.transform(record.x, record.y)
        if not (math.isfinite(x) and math.isfinite(y)):
            raise ProjectionError(
                f"Position ({record.x}, {record.y}) is outside the source projection",
                src_srid=handle.src_srid,
                dst_srid=handle.dst_srid
            )
        return Point(x, y)

    rings = []
    for ring in record.rings:
        if not ring:
            rings.append([])
            continue
        xs, ys = handle.transform_many([p[0] for p in ring], [p[1] for p in ring])
        if not (np.isfinite(xs).all() and np.isfinite(ys).all()):
            raise ProjectionError(
                "Path has vertices outside the source projection",
                src_srid=handle.src_srid,
                dst_srid=handle.dst_srid
            )
        rings.append(list(zip(xs.tolist(), ys.tolist())))
    return Path(rings=rings, closed=record.closed)


def label_text(attributes: Dict[str, Any], text_field: Optional[str]) -> Optional[str]:
    """The label of a feature: `text_field`, or the first attribute."""
    if text_field is not None:
        value = attributes.get(text_field)
    elif attributes:
        value = next(iter(attributes.values()))
    else:
        value = None
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)
