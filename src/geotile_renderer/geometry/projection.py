"""
Projection Cache

Memoizes pyproj transformers per (source SRID, destination SRID) pair. A
handle is constructed at most once per key and shared by every layer and
worker thread of a run.
"""

import threading
from typing import Dict, Sequence, Tuple

import numpy as np
import structlog
from pyproj import Transformer
from pyproj.exceptions import CRSError, ProjError

from ..errors import ProjectionError

WGS84_SRID = 4326
WEB_MERCATOR_SRID = 3857


class ProjectionHandle:
    """Transforms coordinates from one SRID into another."""

    def __init__(self, src_srid: int, dst_srid: int):
        self.src_srid = src_srid
        self.dst_srid = dst_srid
        try:
            self._transformer = Transformer.from_crs(
                f"EPSG:{src_srid}",
                f"EPSG:{dst_srid}",
                always_xy=True
            )
        except (CRSError, ProjError) as e:
            raise ProjectionError(
                f"Cannot create projection {src_srid} -> {dst_srid}: {e}",
                src_srid=src_srid,
                dst_srid=dst_srid
            ) from e

    @property
    def key(self) -> Tuple[int, int]:
        return (self.src_srid, self.dst_srid)

    def transform(self, x: float, y: float) -> Tuple[float, float]:
        try:
            tx, ty = self._transformer.transform(x, y)
        except ProjError as e:
            raise ProjectionError(
                f"Projection {self.src_srid} -> {self.dst_srid} failed for ({x}, {y}): {e}",
                src_srid=self.src_srid,
                dst_srid=self.dst_srid
            ) from e
        return float(tx), float(ty)

    __call__ = transform

    def transform_many(self, xs: Sequence[float], ys: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
        """Vectorized transform, returns numpy arrays."""
        tx, ty = self._transformer.transform(np.asarray(xs, dtype=float), np.asarray(ys, dtype=float))
        return np.asarray(tx, dtype=float), np.asarray(ty, dtype=float)

    def transform_bounds(self, bounds: Tuple[float, float, float, float]) -> Tuple[float, float, float, float]:
        """Transform a bounding box, densifying its edges."""
        return tuple(self._transformer.transform_bounds(*bounds, densify_pts=21))

    def __repr__(self) -> str:
        return f"ProjectionHandle({self.src_srid} -> {self.dst_srid})"


class ProjectionCache:
    """Thread-safe cache of projection handles, one per SRID pair."""

    def __init__(self):
        self._handles: Dict[Tuple[int, int], ProjectionHandle] = {}
        self._lock = threading.Lock()
        self.logger = structlog.get_logger(component="ProjectionCache")

    def get(self, src_srid: int, dst_srid: int) -> ProjectionHandle:
        """
        Get the handle for a SRID pair, constructing it on first request.

        Args:
            src_srid: Source spatial reference id
            dst_srid: Destination spatial reference id

        Returns:
            The cached ProjectionHandle for this exact pair

        Raises:
            ProjectionError: If the pair cannot be constructed
        """
        key = (int(src_srid), int(dst_srid))

        handle = self._handles.get(key)
        if handle is not None:
            return handle

        with self._lock:
            handle = self._handles.get(key)
            if handle is None:
                handle = ProjectionHandle(*key)
                self._handles[key] = handle
                self.logger.debug("Projection created", src_srid=key[0], dst_srid=key[1])

        return handle

    def clear(self) -> None:
        with self._lock:
            self._handles.clear()

    def __len__(self) -> int:
        return len(self._handles)
