"""Per-region render state passed down to layers."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from ..geometry.projection import ProjectionCache
from ..geometry.remap import RemapTransform
from ..monitoring.statistics import RunStatistics
from .raster import Canvas

Bounds = Tuple[float, float, float, float]  # (min_x, min_y, max_x, max_y)


@dataclass
class RenderContext:
    """
    Everything a layer needs to render into one region.

    `dst_bounds` is the region in destination SRID coordinates. `statistics`
    belongs to this region only and is merged into the run totals afterwards.
    """
    zoom: int
    dst_srid: int
    dst_bounds: Bounds
    remap: RemapTransform
    canvas: Canvas
    meter_per_pixel: float
    projections: ProjectionCache
    statistics: RunStatistics = field(default_factory=RunStatistics)
    time: float = 0.0
    layer_index: int = 0
    region_id: str = ""
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def pixel_size(self) -> Tuple[int, int]:
        return self.canvas.size

    def overlaps(self, bounds: Bounds) -> bool:
        """Bounding box overlap test against the region, edges inclusive."""
        min_x, min_y, max_x, max_y = self.dst_bounds
        return not (bounds[2] < min_x or bounds[0] > max_x or bounds[3] < min_y or bounds[1] > max_y)

    def record_error(self, layer_name: str, error: Exception, **details: Any) -> None:
        category = getattr(error, "category", type(error).__name__)
        self.statistics.layer(layer_name).record_error(category)
        entry = {'layer': layer_name, 'category': category, 'error': str(error), 'region': self.region_id}
        entry.update(details)
        self.errors.append(entry)
