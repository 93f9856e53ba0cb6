"""
Layers Module

Data source layers. Layers are built from their configuration through the
LAYER_TYPES registry; callers never branch on the layer type.
"""

from typing import Dict, Optional, Type

from ..config import LayerConfig
from ..errors import ConfigError
from .base import Feature, Layer
from .csv_layer import CSVLayer
from .polygon_file import PolygonFile, write_polygon_file
from .polygon_layer import PolygonLayer
from .psql_layer import PSQLConnectionRegistry, PSQLLayer
from .shape_layer import ShapeLayer

LAYER_TYPES: Dict[str, Type[Layer]] = {
    "psql": PSQLLayer,
    "shape": ShapeLayer,
    "polygon": PolygonLayer,
    "csv": CSVLayer,
}


def build_layer(config: LayerConfig, connections: Optional[PSQLConnectionRegistry] = None) -> Layer:
    """Create the layer class registered for `config.type`."""
    layer_class = LAYER_TYPES.get(config.type)
    if layer_class is None:
        raise ConfigError(f"Unknown layer type {config.type!r}", key="type", layer=config.name)
    return layer_class.from_config(config, connections=connections)


__all__ = [
    "Feature",
    "Layer",
    "CSVLayer",
    "PolygonLayer",
    "PSQLLayer",
    "ShapeLayer",
    "PSQLConnectionRegistry",
    "PolygonFile",
    "write_polygon_file",
    "LAYER_TYPES",
    "build_layer",
]
