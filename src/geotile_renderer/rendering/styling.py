"""
Draw Settings

Per-layer styling and its resolution into pixel units. Widths and radii are
configured in meters and converted to pixels for the zoom level being
rendered, clamped to a pixel range unless a fixed pixel value overrides them.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple

Color = Tuple[float, float, float]

BLACK: Color = (0.0, 0.0, 0.0)
LIGHT_GREY: Color = (0.8, 0.8, 0.8)

BLEND_MODES = ("normal", "multiply", "screen", "darken", "lighten", "add", "subtract", "difference")


class DrawMode(Enum):
    STROKE = "stroke"
    FILL = "fill"
    FILL_STROKE = "fill-stroke"
    STROKE_FILL = "stroke-fill"
    TEXT_AT_POINT = "text-at-point"

    @property
    def has_fill(self) -> bool:
        return self in (DrawMode.FILL, DrawMode.FILL_STROKE, DrawMode.STROKE_FILL)

    @property
    def has_stroke(self) -> bool:
        return self in (DrawMode.STROKE, DrawMode.FILL_STROKE, DrawMode.STROKE_FILL)

    @classmethod
    def from_name(cls, name: str) -> "DrawMode":
        try:
            return cls(str(name).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown draw mode: {name!r}")


class PointShape(Enum):
    CIRCLE = "circle"
    SQUARE = "square"

    @classmethod
    def from_name(cls, name: str) -> "PointShape":
        try:
            return cls(str(name).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown point shape: {name!r}")


def parse_color(value: Any) -> Color:
    """
    Parse a color.

    Accepts "#rrggbb" / "rrggbb" hex strings and sequences of three floats in
    the range 0..1.
    """
    if isinstance(value, str):
        text = value.strip().lstrip("#")
        if len(text) == 3:
            text = "".join(c * 2 for c in text)
        if len(text) != 6:
            raise ValueError(f"Invalid hex color: {value!r}")
        try:
            return tuple(int(text[i:i + 2], 16) / 255.0 for i in (0, 2, 4))
        except ValueError:
            raise ValueError(f"Invalid hex color: {value!r}")

    if isinstance(value, (list, tuple)) and len(value) == 3:
        components = []
        for component in value:
            if isinstance(component, bool) or not isinstance(component, (int, float)):
                raise ValueError(f"Invalid color component: {component!r}")
            components.append(min(max(float(component), 0.0), 1.0))
        return tuple(components)

    raise ValueError(f"Invalid color: {value!r}")


def check_blend_mode(name: str) -> str:
    mode = str(name).strip().lower()
    if mode not in BLEND_MODES:
        raise ValueError(f"Unknown blend mode: {name!r}")
    return mode


def meter_to_pixel(value: float, fix: float, minimum: float, maximum: float, meter_per_pixel: float) -> float:
    """Convert meters to pixels, a positive `fix` overrides the conversion."""
    if fix > 0.0:
        return fix
    if meter_per_pixel <= 0.0:
        return minimum
    return min(max(value / meter_per_pixel, minimum), maximum)


def _opacity(value: Any) -> float:
    return min(max(float(value), 0.0), 1.0)


@dataclass
class DrawSettings:
    """Styling of a single feature."""
    draw_mode: DrawMode = DrawMode.FILL
    point_shape: PointShape = PointShape.CIRCLE

    fill_color: Color = LIGHT_GREY
    fill_opacity: float = 1.0
    fill_extent_width: float = 0.0
    fill_extent_px_fix: float = -1.0

    stroke_color: Color = BLACK
    stroke_opacity: float = 1.0
    stroke_width: float = 10.0
    stroke_px_min: float = 0.1
    stroke_px_max: float = 10.0
    stroke_px_fix: float = -1.0
    stroke_dash: List[float] = field(default_factory=list)
    stroke_cap: str = "round"
    stroke_join: str = "round"
    stroke_miter_limit: float = 4.0

    text_color: Color = BLACK
    text_opacity: float = 1.0
    text_field: Optional[str] = None
    font: Optional[str] = None
    font_size: float = 12.0

    radius: float = 10.0
    radius_px_fix: float = -1.0
    radius_px_min: float = 0.0
    radius_px_max: float = 1000000.0

    blend_mode: str = "normal"

    # Resolved for the current zoom level by resolve()
    stroke_width_px: float = 0.0
    radius_px: float = 0.0
    fill_extent_px: float = 0.0

    def copy(self) -> "DrawSettings":
        return copy.deepcopy(self)

    def resolve(self, meter_per_pixel: float) -> "DrawSettings":
        """Compute pixel sizes for the given scale. Returns self."""
        self.stroke_width_px = meter_to_pixel(
            self.stroke_width, self.stroke_px_fix,
            self.stroke_px_min, self.stroke_px_max, meter_per_pixel
        )
        self.radius_px = meter_to_pixel(
            self.radius, self.radius_px_fix,
            self.radius_px_min, self.radius_px_max, meter_per_pixel
        )
        self.fill_extent_px = meter_to_pixel(
            self.fill_extent_width, self.fill_extent_px_fix,
            0.0, 1000.0, meter_per_pixel
        )
        return self

    def set_property(self, name: str, value: Any) -> None:
        """
        Set a style property by its configuration name.

        Args:
            name: One of draw-mode, stroke-width, stroke-opacity, stroke-color,
                fill-opacity, fill-color, text-opacity, text-color, radius,
                blend-mode
            value: New value

        Raises:
            ValueError: For unknown names or invalid values
        """
        setter = _PROPERTY_SETTERS.get(name)
        if setter is None:
            raise ValueError(f"Unknown draw property: {name!r}")
        setter(self, value)


def _setter(attribute: str, convert):
    def apply(settings: DrawSettings, value: Any) -> None:
        setattr(settings, attribute, convert(value))
    return apply


_PROPERTY_SETTERS = {
    "draw-mode": _setter("draw_mode", DrawMode.from_name),
    "stroke-width": _setter("stroke_width", float),
    "stroke-opacity": _setter("stroke_opacity", _opacity),
    "stroke-color": _setter("stroke_color", parse_color),
    "fill-opacity": _setter("fill_opacity", _opacity),
    "fill-color": _setter("fill_color", parse_color),
    "text-opacity": _setter("text_opacity", _opacity),
    "text-color": _setter("text_color", parse_color),
    "radius": _setter("radius", float),
    "blend-mode": _setter("blend_mode", check_blend_mode),
}
