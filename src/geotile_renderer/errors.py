"""
Renderer Errors

Exception hierarchy for the tile renderer. Every error carries a category,
used as the statistics counter key. How far a failure propagates depends on
where it is caught:

- GeometryDecodeError, ScriptError: the feature is skipped, the layer continues
- QueryError, DatabaseConnectionError, DataFileError, ProjectionError: the
  layer is abandoned for the current region, the region continues
- RenderResourceError: the region is abandoned, the run continues
- ConfigError: the run does not start
"""

from typing import Optional


class RendererError(Exception):
    """Base class for all renderer errors."""

    category = "RendererError"

    def __init__(self, message: str, layer: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.layer = layer

    def __str__(self) -> str:
        if self.layer:
            return f"[{self.layer}] {self.message}"
        return self.message


class ConfigError(RendererError):
    """Invalid or incomplete configuration. Fatal before a run starts."""

    category = "ConfigError"

    def __init__(self, message: str, key: Optional[str] = None, layer: Optional[str] = None):
        super().__init__(message, layer=layer)
        self.key = key


class DatabaseConnectionError(RendererError):
    """A database connection could not be opened or is missing."""

    category = "ConnectionError"


class QueryError(RendererError):
    """A layer query failed or returned an unusable result."""

    category = "QueryError"

    def __init__(self, message: str, layer: Optional[str] = None, sql: Optional[str] = None):
        super().__init__(message, layer=layer)
        self.sql = sql


class DataFileError(RendererError):
    """A layer data file could not be opened, seeked or read."""

    category = "FileError"

    def __init__(self, message: str, layer: Optional[str] = None, path: Optional[str] = None):
        super().__init__(message, layer=layer)
        self.path = path


class GeometryDecodeError(RendererError):
    """Malformed or truncated WKB."""

    category = "GeometryDecodeError"

    def __init__(
        self,
        message: str,
        unsupported_type: Optional[int] = None
    ):
        super().__init__(message)
        self.unsupported_type = unsupported_type


class ProjectionError(RendererError):
    """A projection between two SRIDs could not be constructed or applied."""

    category = "ProjectionError"

    def __init__(self, message: str, src_srid: Optional[int] = None, dst_srid: Optional[int] = None):
        super().__init__(message)
        self.src_srid = src_srid
        self.dst_srid = dst_srid


class ScriptError(RendererError):
    """A layer script failed to compile or raised while processing a feature."""

    category = "ScriptError"


class RenderResourceError(RendererError):
    """A raster or buffer could not be allocated for a region."""

    category = "ResourceError"
