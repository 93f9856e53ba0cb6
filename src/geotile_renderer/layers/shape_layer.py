"""Layer reading a shapefile (or any vector file geopandas can open)."""

import time
from typing import Any, Dict, List, Optional

import geopandas as gpd
from pyproj.exceptions import CRSError

from ..errors import DataFileError, GeometryDecodeError, ProjectionError
from ..geometry.records import record_from_shapely
from ..rendering.context import RenderContext
from .base import Feature, FeatureCallback, Layer


class ShapeLayer(Layer):
    """
    Renders features from a shapefile.

    The file is read once per run, projected once to the destination SRID and
    spatially indexed; each region only visits the features whose bounding
    box intersects it.
    """

    layer_type = "shape"

    def __init__(self, config, script=None):
        super().__init__(config, script)
        self.gdf: Optional[gpd.GeoDataFrame] = None
        self._attributes: List[Dict[str, Any]] = []
        self._dst_srid: Optional[int] = None

    def _open_resources(self, context: RenderContext) -> None:
        path = self.config.file_path
        try:
            gdf = gpd.read_file(path, encoding=self.config.char_set)
        except Exception as e:
            raise DataFileError(f"Cannot read shape file: {e}", layer=self.name, path=str(path)) from e

        gdf = gdf[gdf.geometry.notna() & ~gdf.geometry.is_empty]

        if gdf.crs is None:
            gdf = gdf.set_crs(epsg=self.srid)
        else:
            self.srid = gdf.crs.to_epsg() or self.srid

        if self.srid != context.dst_srid:
            start = time.perf_counter()
            try:
                gdf = gdf.to_crs(epsg=context.dst_srid)
            except CRSError as e:
                raise ProjectionError(
                    f"Cannot project shape file to {context.dst_srid}: {e}",
                    src_srid=self.srid,
                    dst_srid=context.dst_srid
                ) from e
            context.statistics.layer(self.name).projection_time += time.perf_counter() - start

        gdf = gdf.reset_index(drop=True)
        gdf.sindex  # builds the spatial index

        self.gdf = gdf
        self._dst_srid = context.dst_srid
        self._attributes = gdf.drop(columns=gdf.geometry.name).to_dict("records")

        self.logger.info(
            "Shape file loaded",
            path=str(path),
            feature_count=len(gdf),
            srid=self.srid
        )

    def _release_resources(self) -> None:
        self.gdf = None
        self._attributes = []

    def for_each_overlapping_record(self, context: RenderContext, callback: FeatureCallback) -> None:
        stats = context.statistics.layer(self.name)
        gdf = self.gdf

        start = time.perf_counter()
        candidates = sorted(gdf.sindex.intersection(context.dst_bounds))
        stats.data_access_time += time.perf_counter() - start

        geometries = gdf.geometry
        for row in candidates:
            geometry = geometries.iloc[row]
            if not context.overlaps(geometry.bounds):
                continue

            start = time.perf_counter()
            try:
                record = record_from_shapely(geometry)
            except ValueError as e:
                self.record_feature_error(context, GeometryDecodeError(str(e)), int(row))
                continue
            finally:
                stats.parse_time += time.perf_counter() - start

            callback(Feature(
                record=record,
                srid=self._dst_srid,
                attributes=dict(self._attributes[row]),
                row=int(row)
            ))
