"""
Render Configuration

Typed loader for the renderer's YAML configuration. The document is parsed
with `yaml.safe_load` and converted into frozen dataclasses; every type or
range violation raises ConfigError naming the offending key.
"""

import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional, Tuple, Union

import structlog
import yaml

from .errors import ConfigError
from .rendering.styling import (
    BLACK,
    LIGHT_GREY,
    Color,
    DrawMode,
    DrawSettings,
    PointShape,
    check_blend_mode,
    parse_color,
)
from .rendering.raster import OUTPUT_FORMATS

logger = structlog.get_logger(component="config")

MIN_ZOOM = 0
MAX_ZOOM = 20
DEFAULT_SRID = 4326
DEFAULT_DESTINATION_SRID = 3857

RENDER_MODES = ("tiles", "meta-tiles", "image", "animation")
LAYER_TYPES = ("psql", "shape", "polygon", "csv")
FIELD_TYPES = ("long", "double", "string", "wkb")
TILE_ORDERS = ("col_", "row_")

_MISSING = object()


def _get(raw: Mapping[str, Any], key: str, default: Any = _MISSING, layer: Optional[str] = None) -> Any:
    value = raw.get(key, _MISSING)
    if value is _MISSING or value is None:
        if default is _MISSING:
            raise ConfigError(f"Missing required key '{key}'", key=key, layer=layer)
        return default
    return value


def _str(raw, key, default=_MISSING, layer=None) -> str:
    value = _get(raw, key, default, layer)
    if not isinstance(value, str):
        raise ConfigError(f"Expected string for '{key}'", key=key, layer=layer)
    return value


def _int(raw, key, default=_MISSING, layer=None) -> int:
    value = _get(raw, key, default, layer)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Expected integer for '{key}'", key=key, layer=layer)
    return value


def _float(raw, key, default=_MISSING, layer=None) -> float:
    value = _get(raw, key, default, layer)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Expected number for '{key}'", key=key, layer=layer)
    return float(value)


def _bool(raw, key, default=_MISSING, layer=None) -> bool:
    value = _get(raw, key, default, layer)
    if not isinstance(value, bool):
        raise ConfigError(f"Expected bool for '{key}'", key=key, layer=layer)
    return value


def _floats(raw, key, default=_MISSING, layer=None) -> Tuple[float, ...]:
    value = _get(raw, key, default, layer)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (float(value),)
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"Expected list of numbers for '{key}'", key=key, layer=layer)
    out = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (int, float)):
            raise ConfigError(f"Expected list of numbers for '{key}'", key=key, layer=layer)
        out.append(float(item))
    return tuple(out)


def _color(raw, key, default=_MISSING, layer=None) -> Color:
    value = _get(raw, key, default, layer)
    try:
        return parse_color(value)
    except ValueError as e:
        raise ConfigError(f"Invalid color for '{key}': {e}", key=key, layer=layer)


def _char(raw, key, default, layer=None) -> str:
    value = _str(raw, key, default, layer)
    if len(value) != 1:
        raise ConfigError(f"'{key}' must be a single character", key=key, layer=layer)
    return value


@dataclass(frozen=True)
class DatabaseConfig:
    """One entry of the `psql-db` list."""
    identifier: str
    db_name: str
    user: str
    host: str = ""
    port: int = 5432
    password: str = ""
    timeout: int = 10

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "DatabaseConfig":
        return cls(
            identifier=_str(raw, "identifier", ""),
            db_name=_str(raw, "db-name"),
            user=_str(raw, "user"),
            host=_str(raw, "host", ""),
            port=_int(raw, "port", 5432),
            password=_str(raw, "password", ""),
            timeout=_int(raw, "timeout", 10),
        )


@dataclass(frozen=True)
class CustomField:
    """Column schema entry of a CSV layer."""
    index: int
    name: str
    type: str
    usage: str = ""

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], layer: str) -> "CustomField":
        field_type = _str(raw, "type", layer=layer).lower()
        if field_type not in FIELD_TYPES:
            raise ConfigError(f"Unknown custom field type: {field_type!r}", key="custom-fields", layer=layer)
        usage = _str(raw, "usage", "", layer=layer).lower()
        if usage not in ("", "x", "y"):
            raise ConfigError(f"Unknown custom field usage: {usage!r}", key="custom-fields", layer=layer)
        return cls(
            index=_int(raw, "index", layer=layer),
            name=_str(raw, "name", layer=layer),
            type=field_type,
            usage=usage,
        )


@dataclass(frozen=True)
class LayerConfig:
    """Configuration of one layer. `draw_settings` is the per-feature template."""
    name: str
    type: str
    draw_settings: DrawSettings = field(default_factory=DrawSettings)
    srid: int = DEFAULT_SRID
    min_zoom: int = MIN_ZOOM
    max_zoom: int = MAX_ZOOM
    dir_path: Optional[Path] = None
    file_name: Optional[str] = None
    psql_identifier: str = ""
    query: str = ""
    geometry_field: str = ""
    script: str = ""
    delimiter: str = ","
    quote: str = '"'
    ignore_header: bool = False
    char_set: str = "UTF-8"
    xy_scale: float = 1.0
    radius_field: int = -1
    custom_fields: Tuple[CustomField, ...] = ()

    @property
    def file_path(self) -> Optional[Path]:
        if self.file_name is None:
            return None
        if self.dir_path is None:
            return Path(self.file_name)
        return self.dir_path / self.file_name

    @property
    def has_script(self) -> bool:
        return bool(self.script.strip())

    @classmethod
    def from_mapping(
        cls,
        raw: Mapping[str, Any],
        root_dir: Path,
        defaults: Tuple[Color, Color, Color] = (LIGHT_GREY, BLACK, BLACK)
    ) -> "LayerConfig":
        if not isinstance(raw, Mapping):
            raise ConfigError("Each 'layer' entry must be a mapping", key="layer")

        name = _str(raw, "name")
        layer_type = _str(raw, "type", layer=name).lower()
        if layer_type not in LAYER_TYPES:
            raise ConfigError(f"Unknown layer type {layer_type!r}", key="type", layer=name)

        dir_path = None
        file_name = None
        if layer_type in ("shape", "polygon", "csv"):
            dir_path = Path(_str(raw, "dir", layer=name))
            if not dir_path.is_absolute():
                dir_path = root_dir / dir_path
            file_name = _str(raw, "file", layer=name)

        query = ""
        geometry_field = ""
        if layer_type == "psql":
            query = _str(raw, "query", layer=name)
            geometry_field = _str(raw, "geometry-field", layer=name)

        custom_fields = ()
        if "custom-fields" in raw:
            entries = _get(raw, "custom-fields", layer=name)
            if not isinstance(entries, list):
                raise ConfigError("'custom-fields' must be a list", key="custom-fields", layer=name)
            custom_fields = tuple(CustomField.from_mapping(entry, name) for entry in entries)

        return cls(
            name=name,
            type=layer_type,
            draw_settings=_draw_settings(raw, name, defaults),
            srid=_int(raw, "srid", DEFAULT_SRID, name),
            min_zoom=_int(raw, "zoom-min", MIN_ZOOM, name),
            max_zoom=_int(raw, "zoom-max", MAX_ZOOM, name),
            dir_path=dir_path,
            file_name=file_name,
            psql_identifier=_str(raw, "psql-identifier", "", name),
            query=query,
            geometry_field=geometry_field,
            script=_str(raw, "script", "", name),
            delimiter=_char(raw, "delimiter", ",", name),
            quote=_char(raw, "quote", '"', name),
            ignore_header=_bool(raw, "ignore-header", False, name),
            char_set=_str(raw, "char-set", "UTF-8", name),
            xy_scale=_float(raw, "xy-scale", 1.0, name),
            radius_field=_int(raw, "radius-field", -1, name),
            custom_fields=custom_fields,
        )


def _draw_settings(raw: Mapping[str, Any], layer: str, defaults: Tuple[Color, Color, Color]) -> DrawSettings:
    fill_color, stroke_color, text_color = defaults
    try:
        draw_mode = DrawMode.from_name(_str(raw, "draw-mode", layer=layer))
        point_shape = PointShape.from_name(_str(raw, "point-shape", "circle", layer))
        blend_mode = check_blend_mode(_str(raw, "blend-mode", "normal", layer))
    except ValueError as e:
        raise ConfigError(str(e), layer=layer)

    text_field = raw.get("text-field")
    if text_field is not None and not isinstance(text_field, str):
        raise ConfigError("Expected string for 'text-field'", key="text-field", layer=layer)

    settings = DrawSettings(
        draw_mode=draw_mode,
        point_shape=point_shape,
        fill_color=_color(raw, "fill-color", fill_color, layer),
        fill_opacity=_float(raw, "fill-opacity", 1.0, layer),
        fill_extent_width=_float(raw, "fill-extent-width", 0.0, layer),
        fill_extent_px_fix=_float(raw, "fill-extent-fix", -1.0, layer),
        stroke_color=_color(raw, "stroke-color", stroke_color, layer),
        stroke_opacity=_float(raw, "stroke-opacity", 1.0, layer),
        stroke_width=_float(raw, "stroke-width", 10.0, layer),
        stroke_px_min=_float(raw, "stroke-px-min", 0.1, layer),
        stroke_px_max=_float(raw, "stroke-px-max", 10.0, layer),
        stroke_px_fix=_float(raw, "stroke-px-fix", -1.0, layer),
        stroke_dash=list(_floats(raw, "stroke-dash", (), layer)),
        stroke_cap=_str(raw, "stroke-cap", "round", layer),
        stroke_join=_str(raw, "stroke-join", "round", layer),
        stroke_miter_limit=_float(raw, "stroke-miter-limit", 4.0, layer),
        text_color=_color(raw, "text-color", text_color, layer),
        text_opacity=_float(raw, "text-opacity", 1.0, layer),
        text_field=text_field,
        font=raw.get("font"),
        font_size=_float(raw, "font-size", 12.0, layer),
        radius=_float(raw, "radius", 10.0, layer),
        radius_px_fix=_float(raw, "radius-px-fix", -1.0, layer),
        radius_px_min=_float(raw, "radius-px-min", 0.0, layer),
        radius_px_max=_float(raw, "radius-px-max", 1000000.0, layer),
        blend_mode=blend_mode,
    )

    for key, value in (("fill-opacity", settings.fill_opacity),
                       ("stroke-opacity", settings.stroke_opacity),
                       ("text-opacity", settings.text_opacity)):
        if not 0.0 <= value <= 1.0:
            raise ConfigError(f"'{key}' must be within 0..1", key=key, layer=layer)
    if settings.radius < 0.0:
        raise ConfigError("'radius' must be >= 0", key="radius", layer=layer)

    return settings


@dataclass(frozen=True)
class ImagePadding:
    """Padding in percent of the bounding box size."""
    top: float = 0.0
    right: float = 0.0
    bottom: float = 0.0
    left: float = 0.0

    @classmethod
    def from_values(cls, values: Tuple[float, ...]) -> "ImagePadding":
        if len(values) == 0:
            return cls()
        if len(values) == 1:
            return cls(values[0], values[0], values[0], values[0])
        if len(values) == 2:
            return cls(values[0], values[1], values[0], values[1])
        if len(values) == 4:
            return cls(*values)
        raise ConfigError(
            f"'image-padding' should have 1, 2 or 4 values, but has {len(values)}",
            key="image-padding"
        )


@dataclass(frozen=True)
class RenderJob:
    """A complete, immutable render job."""
    title: str
    render_mode: str
    min_zoom: int
    max_zoom: int
    bounds: Tuple[float, float, float, float]  # (min_lon, min_lat, max_lon, max_lat)
    tile_size: int
    output_path: Path
    background_color: Color
    layers: Tuple[LayerConfig, ...] = ()
    databases: Tuple[DatabaseConfig, ...] = ()
    image_zoom_level: int = 10
    image_width: int = 0
    image_height: int = 0
    image_padding: ImagePadding = field(default_factory=ImagePadding)
    output_file_name: str = ""
    output_format: str = "png"
    output_quality: int = 90
    destination_srid: int = DEFAULT_DESTINATION_SRID
    background_opacity: float = 1.0
    default_fill_color: Color = LIGHT_GREY
    default_stroke_color: Color = BLACK
    default_text_color: Color = BLACK
    meta_tile_order: str = "col_"
    max_workers: int = 4
    animation_frames: int = 1
    animation_time_start: float = 0.0
    animation_time_step: float = 1.0
    retry_count: int = 2
    retry_backoff: float = 0.5

    @property
    def use_alpha(self) -> bool:
        return self.background_opacity < 1.0 - 1e-6

    @property
    def is_tile_mode(self) -> bool:
        return self.render_mode in ("tiles", "meta-tiles")

    def padded_bounds(self) -> Tuple[float, float, float, float]:
        """Bounds expanded by the image padding percentages."""
        min_lon, min_lat, max_lon, max_lat = self.bounds
        w = max_lon - min_lon
        h = max_lat - min_lat
        p = self.image_padding
        return (
            min_lon - w * p.left / 100.0,
            min_lat - h * p.bottom / 100.0,
            max_lon + w * p.right / 100.0,
            max_lat + h * p.top / 100.0,
        )

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], root_dir: Path) -> "RenderJob":
        if not isinstance(raw, Mapping):
            raise ConfigError("Configuration root must be a mapping")

        render_mode = _str(raw, "render-mode").lower()
        if render_mode not in RENDER_MODES:
            raise ConfigError(f"Unknown render mode {render_mode!r}", key="render-mode")
        needs_image = render_mode in ("image", "animation")

        bounds = _floats(raw, "bounds")
        if len(bounds) != 4:
            raise ConfigError(
                "Accepted format for 'bounds': [min_lon, min_lat, max_lon, max_lat]",
                key="bounds"
            )

        databases = _get(raw, "psql-db", [])
        if not isinstance(databases, list):
            raise ConfigError("'psql-db' must be a list", key="psql-db")

        layer_entries = _get(raw, "layer")
        if not isinstance(layer_entries, list) or not layer_entries:
            raise ConfigError("'layer' must be a non-empty list", key="layer")

        output_path = Path(_str(raw, "output-path"))
        if not output_path.is_absolute():
            output_path = root_dir / output_path

        defaults = (
            _color(raw, "default-fill-color", LIGHT_GREY),
            _color(raw, "default-stroke-color", BLACK),
            _color(raw, "default-text-color", BLACK),
        )

        return cls(
            title=_str(raw, "title"),
            render_mode=render_mode,
            min_zoom=_int(raw, "zoom-min"),
            max_zoom=_int(raw, "zoom-max"),
            bounds=bounds,
            tile_size=_int(raw, "tile-size"),
            output_path=output_path,
            background_color=_color(raw, "map-background-color"),
            layers=tuple(LayerConfig.from_mapping(entry, root_dir, defaults) for entry in layer_entries),
            databases=tuple(DatabaseConfig.from_mapping(entry) for entry in databases),
            image_zoom_level=_int(raw, "image-zoom-level", 10),
            image_width=_int(raw, "image-width") if needs_image else _int(raw, "image-width", 0),
            image_height=_int(raw, "image-height") if needs_image else _int(raw, "image-height", 0),
            image_padding=ImagePadding.from_values(_floats(raw, "image-padding", ())),
            output_file_name=_str(raw, "output-file-name") if needs_image else _str(raw, "output-file-name", ""),
            output_format=_str(raw, "output-file-format", "png").lower(),
            output_quality=_int(raw, "output-quality", 90),
            destination_srid=_int(raw, "destination-srid", DEFAULT_DESTINATION_SRID),
            background_opacity=min(max(_float(raw, "map-background-opacity", 1.0), 0.0), 1.0),
            default_fill_color=defaults[0],
            default_stroke_color=defaults[1],
            default_text_color=defaults[2],
            meta_tile_order=_str(raw, "meta-tile-order", "col_"),
            max_workers=_int(raw, "max-workers", 4),
            animation_frames=_int(raw, "animation-frames", 1),
            animation_time_start=_float(raw, "animation-time-start", 0.0),
            animation_time_step=_float(raw, "animation-time-step", 1.0),
            retry_count=_int(raw, "retry-count", 2),
            retry_backoff=_float(raw, "retry-backoff", 0.5),
        )


def validate_job(job: RenderJob, check_files: bool = True) -> RenderJob:
    """
    Check a job for range and consistency violations.

    Args:
        job: Job to validate
        check_files: Also require file based layers to point at existing files

    Returns:
        The same job

    Raises:
        ConfigError: For the first violation found
    """
    if job.render_mode not in RENDER_MODES:
        raise ConfigError(f"Unknown render mode {job.render_mode!r}", key="render-mode")

    if job.min_zoom < MIN_ZOOM or job.max_zoom > MAX_ZOOM:
        raise ConfigError(
            f"Zoom levels must be within {MIN_ZOOM}..{MAX_ZOOM}, got {job.min_zoom}..{job.max_zoom}",
            key="zoom-min"
        )
    if job.max_zoom < job.min_zoom:
        raise ConfigError(f"zoom-max ({job.max_zoom}) < zoom-min ({job.min_zoom})", key="zoom-max")
    if not MIN_ZOOM <= job.image_zoom_level <= MAX_ZOOM:
        raise ConfigError(f"image-zoom-level ({job.image_zoom_level}) out of range", key="image-zoom-level")

    min_lon, min_lat, max_lon, max_lat = job.bounds
    if not all(math.isfinite(v) for v in job.bounds) or min_lon >= max_lon or min_lat >= max_lat:
        raise ConfigError(
            "Accepted format for 'bounds': [min_lon, min_lat, max_lon, max_lat] "
            "where min_lon < max_lon and min_lat < max_lat",
            key="bounds"
        )

    if job.tile_size < 1 or job.tile_size & (job.tile_size - 1):
        raise ConfigError(f"tile-size ({job.tile_size}) must be a power of two", key="tile-size")

    if job.output_format not in OUTPUT_FORMATS:
        raise ConfigError(f"Unknown file format with name {job.output_format!r}", key="output-file-format")
    if job.is_tile_mode and job.output_format in ("tiff", "tif"):
        raise ConfigError("tiff output is only supported for images", key="output-file-format")
    if not 1 <= job.output_quality <= 100:
        raise ConfigError("output-quality must be within 1..100", key="output-quality")

    if job.render_mode in ("image", "animation"):
        if job.image_width < 1 or job.image_height < 1:
            raise ConfigError(
                f"Image size {job.image_width}x{job.image_height} out of range",
                key="image-width"
            )
        if not job.output_file_name:
            raise ConfigError("'output-file-name' is required for image output", key="output-file-name")
        if job.animation_frames < 1:
            raise ConfigError("animation-frames must be >= 1", key="animation-frames")

    if job.meta_tile_order not in TILE_ORDERS:
        raise ConfigError(f"Unknown meta-tile-order {job.meta_tile_order!r}", key="meta-tile-order")
    if job.max_workers < 1:
        raise ConfigError("max-workers must be >= 1", key="max-workers")
    if job.retry_count < 0 or job.retry_backoff < 0:
        raise ConfigError("retry-count and retry-backoff must be >= 0", key="retry-count")

    names = set()
    for layer in job.layers:
        _validate_layer(layer, check_files)
        if layer.name in names:
            raise ConfigError(f"Duplicate layer name {layer.name!r}", key="name", layer=layer.name)
        names.add(layer.name)

    return job


def _validate_layer(layer: LayerConfig, check_files: bool) -> None:
    if layer.type not in LAYER_TYPES:
        raise ConfigError(f"Unknown layer type {layer.type!r}", key="type", layer=layer.name)

    if (layer.min_zoom < MIN_ZOOM or layer.min_zoom > MAX_ZOOM
            or layer.max_zoom < layer.min_zoom or layer.max_zoom > MAX_ZOOM):
        raise ConfigError(
            f"zoom level mismatch (zoom-min: {layer.min_zoom}, zoom-max: {layer.max_zoom})",
            key="zoom-min",
            layer=layer.name
        )

    if layer.type == "psql":
        if not layer.query:
            raise ConfigError("psql layer needs a 'query'", key="query", layer=layer.name)
        if not layer.geometry_field:
            raise ConfigError("psql layer needs a 'geometry-field'", key="geometry-field", layer=layer.name)
    else:
        if layer.file_path is None:
            raise ConfigError(f"{layer.type} layer needs 'dir' and 'file'", key="file", layer=layer.name)
        if check_files and not layer.file_path.is_file():
            raise ConfigError(f"'file' {layer.file_path} not found", key="file", layer=layer.name)

    if layer.type == "csv":
        usages = [f.usage for f in layer.custom_fields]
        if usages.count("x") != 1 or usages.count("y") != 1:
            raise ConfigError(
                "csv layer needs exactly one custom field with usage x and one with usage y",
                key="custom-fields",
                layer=layer.name
            )
        for custom_field in layer.custom_fields:
            if custom_field.usage and custom_field.type not in ("long", "double"):
                raise ConfigError(
                    f"Position field {custom_field.name!r} must be long or double",
                    key="custom-fields",
                    layer=layer.name
                )
        if layer.radius_field >= len(layer.custom_fields):
            raise ConfigError("'radius-field' out of range", key="radius-field", layer=layer.name)


def load_config(path: Union[str, Path]) -> RenderJob:
    """
    Load and validate a render job from a YAML file.

    Relative paths in the document are resolved against the file's directory.
    """
    config_path = Path(path)
    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except OSError as e:
        raise ConfigError(f"Cannot read configuration {config_path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")

    job = RenderJob.from_mapping(raw, config_path.resolve().parent)
    validate_job(job)

    logger.info(
        "Configuration loaded",
        path=str(config_path),
        title=job.title,
        render_mode=job.render_mode,
        layers=[layer.name for layer in job.layers]
    )
    return job
