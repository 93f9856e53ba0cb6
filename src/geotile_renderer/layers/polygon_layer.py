"""Layer reading an indexed polygon file."""

import time
from typing import Optional

from ..errors import DataFileError
from ..geometry.records import Path
from ..rendering.context import RenderContext
from .base import Feature, FeatureCallback, Layer
from .polygon_file import PolygonFile


class PolygonLayer(Layer):
    """
    Renders polygons from an indexed polygon file.

    The index is loaded once per run. Per region only the index is scanned;
    feature bodies are read for overlapping features only. The file's SRID
    takes precedence over the configured one.
    """

    layer_type = "polygon"

    def __init__(self, config, script=None):
        super().__init__(config, script)
        self.polygon_file: Optional[PolygonFile] = None

    def _open_resources(self, context: RenderContext) -> None:
        if self.config.file_path is None:
            raise DataFileError("No polygon file configured", layer=self.name)
        self.polygon_file = PolygonFile(self.config.file_path)
        self.srid = self.polygon_file.srid
        self.logger.info(
            "Polygon file opened",
            path=str(self.config.file_path),
            features=len(self.polygon_file),
            srid=self.srid
        )

    def _release_resources(self) -> None:
        if self.polygon_file is not None:
            self.polygon_file.close()
            self.polygon_file = None

    def for_each_overlapping_record(self, context: RenderContext, callback: FeatureCallback) -> None:
        polygon_file = self.polygon_file
        stats = context.statistics.layer(self.name)

        # Region bounds in file coordinates
        bounds = context.dst_bounds
        if polygon_file.srid != context.dst_srid:
            handle = context.projections.get(context.dst_srid, polygon_file.srid)
            bounds = handle.transform_bounds(bounds)

        for i, entry in polygon_file.overlapping(bounds):
            start = time.perf_counter()
            try:
                rings = polygon_file.read_rings(entry)
            except DataFileError as e:
                e.layer = self.name
                raise
            finally:
                stats.data_access_time += time.perf_counter() - start

            callback(Feature(
                record=Path(rings=rings, closed=True),
                srid=polygon_file.srid,
                attributes={"feature": i},
                row=i
            ))
