"""
GeoTile Renderer

Renders raster map tiles, meta-tiles and single images from PostGIS queries,
shapefiles, polygon files and CSV point data.
"""

__version__ = "1.0.0"

from .config import RenderJob, LayerConfig, DatabaseConfig, load_config, validate_job
from .errors import RendererError, ConfigError
from .tile_generation import TileRenderer, RunResult
from .monitoring import MetricsCollector, RunStatistics

__all__ = [
    "RenderJob",
    "LayerConfig",
    "DatabaseConfig",
    "load_config",
    "validate_job",
    "RendererError",
    "ConfigError",
    "TileRenderer",
    "RunResult",
    "MetricsCollector",
    "RunStatistics",
]
