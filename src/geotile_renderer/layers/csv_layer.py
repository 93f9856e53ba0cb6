"""Layer rendering points from a delimited text file."""

import time
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from pyproj.exceptions import ProjError

from ..config import CustomField
from ..errors import DataFileError, ProjectionError
from ..geometry.projection import WGS84_SRID
from ..geometry.records import Point
from ..rendering.context import RenderContext
from .base import Feature, FeatureCallback, Layer


def _convert_column(series: pd.Series, field_type: str) -> pd.Series:
    if field_type == "long":
        return pd.to_numeric(series, errors="coerce").astype("Int64")
    if field_type == "double":
        return pd.to_numeric(series, errors="coerce").astype(float)
    return series.astype("string")


class CSVLayer(Layer):
    """
    Renders one point per CSV row.

    Columns are typed by the layer's custom field schema. The fields with
    usage x and y give the position (scaled by xy-scale); the optional radius
    field gives a fixed pixel radius. Rows whose position is outside the valid
    range of the source SRID are skipped and counted as out of range.
    """

    layer_type = "csv"

    def __init__(self, config, script=None):
        super().__init__(config, script)
        self.data: Optional[pd.DataFrame] = None
        self._xs: Optional[np.ndarray] = None
        self._ys: Optional[np.ndarray] = None
        self._valid: Optional[np.ndarray] = None
        self._attributes: List[Dict[str, Any]] = []
        self._dst_srid: Optional[int] = None

    def _field(self, usage: str) -> CustomField:
        return next(f for f in self.config.custom_fields if f.usage == usage)

    def read_data(self) -> pd.DataFrame:
        """Parse the file into typed columns named after the custom fields."""
        fields = self.config.custom_fields
        path = self.config.file_path
        try:
            raw = pd.read_csv(
                path,
                sep=self.config.delimiter,
                quotechar=self.config.quote,
                header=None,
                skiprows=1 if self.config.ignore_header else 0,
                usecols=sorted({f.index for f in fields}),
                dtype=str,
                keep_default_na=False,
                encoding=self.config.char_set,
            )
        except (OSError, ValueError, pd.errors.ParserError) as e:
            raise DataFileError(f"Cannot read CSV file: {e}", layer=self.name, path=str(path)) from e

        return pd.DataFrame({f.name: _convert_column(raw[f.index], f.type) for f in fields})

    def _open_resources(self, context: RenderContext) -> None:
        start = time.perf_counter()
        data = self.read_data()
        stats = context.statistics.layer(self.name)
        stats.data_access_time += time.perf_counter() - start

        scale = self.config.xy_scale
        xs = data[self._field("x").name].to_numpy(dtype=float, na_value=np.nan) * scale
        ys = data[self._field("y").name].to_numpy(dtype=float, na_value=np.nan) * scale

        valid = np.isfinite(xs) & np.isfinite(ys)
        if self.srid == WGS84_SRID:
            valid &= (xs >= -180.0) & (xs <= 180.0) & (ys >= -90.0) & (ys <= 90.0)

        if self.srid != context.dst_srid:
            start = time.perf_counter()
            handle = context.projections.get(self.srid, context.dst_srid)
            try:
                xs, ys = handle.transform_many(np.where(valid, xs, 0.0), np.where(valid, ys, 0.0))
            except ProjError as e:
                raise ProjectionError(
                    f"Cannot project CSV positions: {e}",
                    src_srid=self.srid,
                    dst_srid=context.dst_srid
                ) from e
            valid &= np.isfinite(xs) & np.isfinite(ys)
            stats.projection_time += time.perf_counter() - start

        stats.out_of_range += int((~valid).sum())

        attribute_columns = [f.name for f in self.config.custom_fields if f.type != "wkb"]
        self.data = data
        self._xs, self._ys, self._valid = xs, ys, valid
        self._attributes = [
            {key: (None if pd.isna(value) else value) for key, value in row.items()}
            for row in data[attribute_columns].to_dict("records")
        ]
        self._dst_srid = context.dst_srid

        self.logger.info(
            "CSV file loaded",
            path=str(self.config.file_path),
            rows=len(data),
            out_of_range=int((~valid).sum())
        )

    def _release_resources(self) -> None:
        self.data = None
        self._xs = self._ys = self._valid = None
        self._attributes = []

    def _radius_column(self) -> Optional[np.ndarray]:
        if self.config.radius_field < 0:
            return None
        name = self.config.custom_fields[self.config.radius_field].name
        return self.data[name].to_numpy(dtype=float, na_value=np.nan)

    def for_each_overlapping_record(self, context: RenderContext, callback: FeatureCallback) -> None:
        width, height = context.pixel_size
        radii = self._radius_column()
        default_radius = self.settings.copy().resolve(context.meter_per_pixel).radius_px

        for row in np.flatnonzero(self._valid):
            x = float(self._xs[row])
            y = float(self._ys[row])

            radius_px = None
            if radii is not None and np.isfinite(radii[row]):
                radius_px = float(radii[row])
            radius = radius_px if radius_px is not None else default_radius

            px, py = context.remap(x, y)
            if px + radius < 0.0 or px - radius > width or py + radius < 0.0 or py - radius > height:
                continue

            callback(Feature(
                record=Point(x, y),
                srid=self._dst_srid,
                attributes=dict(self._attributes[row]),
                row=int(row),
                radius_px=radius_px
            ))
