"""
Raster Canvas

Thin drawing surface over Pillow. Layers hand it remapped pixel geometry
together with resolved styling; compositing happens here, everything about
geometry and styling happens before.

This module demonstrates:
- Even-odd polygon fills with holes via XOR'ed ring masks
- Opacity and blend modes through bounding-box sized overlays
- Image encoding for the supported output formats
"""

import io
import math
from abc import ABC, abstractmethod
from functools import lru_cache
from typing import List, Optional, Sequence, Tuple

from PIL import Image, ImageChops, ImageDraw, ImageFont

from ..errors import RenderResourceError
from .styling import Color, PointShape

PixelRing = Sequence[Tuple[float, float]]

OUTPUT_FORMATS = {
    "png": ("PNG", "png"),
    "jpg": ("JPEG", "jpg"),
    "jpeg": ("JPEG", "jpg"),
    "webp": ("WEBP", "webp"),
    "tiff": ("TIFF", "tiff"),
    "tif": ("TIFF", "tiff"),
}

_ALPHA_FORMATS = ("PNG", "WEBP", "TIFF")

_BLEND_OPERATIONS = {
    "multiply": ImageChops.multiply,
    "screen": ImageChops.screen,
    "darken": ImageChops.darker,
    "lighten": ImageChops.lighter,
    "add": ImageChops.add,
    "subtract": ImageChops.subtract,
    "difference": ImageChops.difference,
}


def _rgba(color: Color, opacity: float = 1.0) -> Tuple[int, int, int, int]:
    r, g, b = color
    return (
        int(round(r * 255)),
        int(round(g * 255)),
        int(round(b * 255)),
        int(round(min(max(opacity, 0.0), 1.0) * 255))
    )


@lru_cache(maxsize=32)
def load_font(name: Optional[str], size: int):
    """Load a TrueType font by name or path, falling back to Pillow's default."""
    if name:
        try:
            return ImageFont.truetype(name, size)
        except OSError:
            pass
    return ImageFont.load_default(size)


class Canvas(ABC):
    """Drawing operations a layer may request."""

    @property
    @abstractmethod
    def size(self) -> Tuple[int, int]:
        pass

    @abstractmethod
    def clear(self, color: Color, opacity: float) -> None:
        pass

    @abstractmethod
    def fill_path(self, rings: List[PixelRing], color: Color, opacity: float, blend_mode: str = "normal") -> None:
        pass

    @abstractmethod
    def stroke_path(
        self,
        rings: List[PixelRing],
        closed: bool,
        color: Color,
        opacity: float,
        width: float,
        dash: Sequence[float] = (),
        cap: str = "round",
        join: str = "round",
        miter_limit: float = 4.0,
        blend_mode: str = "normal"
    ) -> None:
        pass

    @abstractmethod
    def fill_point(
        self, shape: PointShape, x: float, y: float, radius: float,
        color: Color, opacity: float, blend_mode: str = "normal"
    ) -> None:
        pass

    @abstractmethod
    def stroke_point(
        self, shape: PointShape, x: float, y: float, radius: float,
        color: Color, opacity: float, width: float, blend_mode: str = "normal"
    ) -> None:
        pass

    @abstractmethod
    def draw_text(
        self, text: str, x: float, y: float, color: Color, opacity: float,
        font: Optional[str] = None, font_size: float = 12.0, blend_mode: str = "normal"
    ) -> None:
        pass


class PillowCanvas(Canvas):
    """Canvas backed by an RGBA Pillow image."""

    def __init__(self, width: int, height: int):
        if width < 1 or height < 1:
            raise RenderResourceError(f"Invalid raster size {width}x{height}")
        try:
            self.image = Image.new("RGBA", (int(width), int(height)), (0, 0, 0, 0))
        except (MemoryError, ValueError) as e:
            raise RenderResourceError(f"Unable to allocate {width}x{height} raster: {e}") from e

    @property
    def size(self) -> Tuple[int, int]:
        return self.image.size

    def clear(self, color: Color, opacity: float) -> None:
        self.image.paste(_rgba(color, opacity), (0, 0, *self.image.size))

    def crop(self, box: Tuple[int, int, int, int]) -> Image.Image:
        return self.image.crop(box)

    def fill_path(self, rings, color, opacity, blend_mode="normal"):
        box = self._clip_box(rings, 1.0)
        if box is None:
            return
        x0, y0, x1, y1 = box
        size = (x1 - x0, y1 - y0)

        mask = Image.new("L", size, 0)
        for ring in rings:
            if len(ring) < 3:
                continue
            ring_mask = Image.new("L", size, 0)
            ImageDraw.Draw(ring_mask).polygon([(x - x0, y - y0) for x, y in ring], fill=255)
            # Even-odd winding: overlapping rings cancel out
            mask = ImageChops.difference(mask, ring_mask)

        if opacity < 1.0:
            mask = mask.point(lambda v: int(round(v * opacity)))

        overlay = Image.new("RGBA", size, _rgba(color))
        overlay.putalpha(mask)
        self._composite(overlay, x0, y0, blend_mode)

    def stroke_path(self, rings, closed, color, opacity, width, dash=(), cap="round", join="round",
                    miter_limit=4.0, blend_mode="normal"):
        pixel_width = max(1, int(round(width)))
        box = self._clip_box(rings, pixel_width / 2.0 + 1.0)
        if box is None:
            return
        x0, y0, x1, y1 = box

        overlay = Image.new("RGBA", (x1 - x0, y1 - y0), (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)
        fill = _rgba(color)
        joint = "curve" if join == "round" else None

        for ring in rings:
            points = [(x - x0, y - y0) for x, y in ring]
            if len(points) < 2:
                continue
            if closed and points[0] != points[-1]:
                points.append(points[0])

            segments = _dash_polyline(points, dash, pixel_width) if dash else [points]
            for segment in segments:
                draw.line(segment, fill=fill, width=pixel_width, joint=joint)
                if joint is None and pixel_width > 2:
                    for corner in _line_joins(segment, pixel_width / 2.0, join, miter_limit):
                        draw.polygon(corner, fill=fill)
                if cap == "round" and pixel_width > 2:
                    r = pixel_width / 2.0
                    for px, py in (segment[0], segment[-1]):
                        draw.ellipse((px - r, py - r, px + r, py + r), fill=fill)

        if opacity < 1.0:
            overlay.putalpha(overlay.getchannel("A").point(lambda v: int(round(v * opacity))))
        self._composite(overlay, x0, y0, blend_mode)

    def fill_point(self, shape, x, y, radius, color, opacity, blend_mode="normal"):
        self._point(shape, x, y, radius, _rgba(color, opacity), None, 0, blend_mode)

    def stroke_point(self, shape, x, y, radius, color, opacity, width, blend_mode="normal"):
        self._point(shape, x, y, radius, None, _rgba(color, opacity), max(1, int(round(width))), blend_mode)

    def _point(self, shape, x, y, radius, fill, outline, width, blend_mode):
        pad = radius + width + 1.0
        box = self._clip_box([[(x - pad, y - pad), (x + pad, y + pad)]], 0.0)
        if box is None:
            return
        x0, y0, x1, y1 = box
        overlay = Image.new("RGBA", (x1 - x0, y1 - y0), (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)
        bounds = (x - x0 - radius, y - y0 - radius, x - x0 + radius, y - y0 + radius)
        if shape == PointShape.SQUARE:
            draw.rectangle(bounds, fill=fill, outline=outline, width=width)
        else:
            draw.ellipse(bounds, fill=fill, outline=outline, width=width)
        self._composite(overlay, x0, y0, blend_mode)

    def draw_text(self, text, x, y, color, opacity, font=None, font_size=12.0, blend_mode="normal"):
        if not text:
            return
        pil_font = load_font(font, max(1, int(round(font_size))))
        left, top, right, bottom = ImageDraw.Draw(self.image).textbbox((x, y), text, font=pil_font, anchor="mm")
        box = self._clip_box([[(left, top), (right, bottom)]], 1.0)
        if box is None:
            return
        x0, y0, x1, y1 = box
        overlay = Image.new("RGBA", (x1 - x0, y1 - y0), (0, 0, 0, 0))
        ImageDraw.Draw(overlay).text((x - x0, y - y0), text, fill=_rgba(color, opacity), font=pil_font, anchor="mm")
        self._composite(overlay, x0, y0, blend_mode)

    def _clip_box(self, rings, pad: float) -> Optional[Tuple[int, int, int, int]]:
        """Pixel box covering the rings, clipped to the canvas. None if outside."""
        xs = [x for ring in rings for x, _ in ring]
        ys = [y for ring in rings for _, y in ring]
        if not xs:
            return None
        width, height = self.image.size
        x0 = max(int(math.floor(min(xs) - pad)), 0)
        y0 = max(int(math.floor(min(ys) - pad)), 0)
        x1 = min(int(math.ceil(max(xs) + pad)) + 1, width)
        y1 = min(int(math.ceil(max(ys) + pad)) + 1, height)
        if x0 >= x1 or y0 >= y1:
            return None
        return x0, y0, x1, y1

    def _composite(self, overlay: Image.Image, x0: int, y0: int, blend_mode: str) -> None:
        operation = _BLEND_OPERATIONS.get(blend_mode)
        if operation is None:
            self.image.alpha_composite(overlay, dest=(x0, y0))
            return

        box = (x0, y0, x0 + overlay.width, y0 + overlay.height)
        base = self.image.crop(box)
        blended = operation(base.convert("RGB"), overlay.convert("RGB")).convert("RGBA")
        blended.putalpha(overlay.getchannel("A"))
        base.alpha_composite(blended)
        self.image.paste(base, box)


def _dash_polyline(points, dash: Sequence[float], width: float) -> List[List[Tuple[float, float]]]:
    """Split a polyline into dash segments. Dash lengths are in stroke widths."""
    pattern = [max(float(d) * width, 0.5) for d in dash]
    if len(pattern) % 2:
        pattern = pattern * 2

    segments = []
    current = [points[0]]
    index = 0
    remaining = pattern[0]
    drawing = True

    for (ax, ay), (bx, by) in zip(points, points[1:]):
        length = math.hypot(bx - ax, by - ay)
        pos = 0.0
        while length - pos > remaining:
            pos += remaining
            t = pos / length
            px, py = ax + (bx - ax) * t, ay + (by - ay) * t
            if drawing:
                current.append((px, py))
                segments.append(current)
            current = [(px, py)]
            drawing = not drawing
            index = (index + 1) % len(pattern)
            remaining = pattern[index]
        remaining -= length - pos
        if drawing:
            current.append((bx, by))
        else:
            current = [(bx, by)]

    if drawing and len(current) > 1:
        segments.append(current)
    return segments


def _line_joins(points, half_width: float, join: str, miter_limit: float) -> List[List[Tuple[float, float]]]:
    """
    Polygons filling the outer corner of every interior vertex.

    Miter joins fall back to bevels where the ratio of miter length to
    stroke width exceeds `miter_limit`.
    """
    triples = list(zip(points, points[1:], points[2:]))
    if len(points) > 3 and points[0] == points[-1]:
        triples.append((points[-2], points[0], points[1]))

    corners = []
    for (ax, ay), (px, py), (bx, by) in triples:
        d1x, d1y = px - ax, py - ay
        d2x, d2y = bx - px, by - py
        l1, l2 = math.hypot(d1x, d1y), math.hypot(d2x, d2y)
        if l1 == 0.0 or l2 == 0.0:
            continue
        cross = d1x * d2y - d1y * d2x
        if abs(cross) < 1e-9 * l1 * l2:
            continue
        side = -1.0 if cross > 0 else 1.0
        n1x, n1y = -d1y / l1 * side, d1x / l1 * side
        n2x, n2y = -d2y / l2 * side, d2x / l2 * side
        o1 = (px + n1x * half_width, py + n1y * half_width)
        o2 = (px + n2x * half_width, py + n2y * half_width)

        mx, my = n1x + n2x, n1y + n2y
        m_len = math.hypot(mx, my)
        if join == "miter" and m_len > 1e-9:
            cos_half = (mx * n1x + my * n1y) / m_len
            if cos_half > 0.0 and 1.0 / cos_half <= miter_limit:
                tip_len = half_width / cos_half
                tip = (px + mx / m_len * tip_len, py + my / m_len * tip_len)
                corners.append([(px, py), o1, tip, o2])
                continue
        corners.append([(px, py), o1, o2])
    return corners

def encode_image(image: Image.Image, output_format: str, quality: int = 90, use_alpha: bool = False) -> bytes:
    """
    Encode an image for one of the supported output formats.

    Args:
        image: RGBA image
        output_format: png, jpg, webp or tiff
        quality: Quality for lossy formats
        use_alpha: Keep the alpha channel where the format supports it

    Returns:
        Encoded image bytes
    """
    pil_format, _ = OUTPUT_FORMATS[output_format.lower()]

    if not (use_alpha and pil_format in _ALPHA_FORMATS):
        image = image.convert("RGB")

    buffer = io.BytesIO()
    if pil_format in ("JPEG", "WEBP"):
        image.save(buffer, format=pil_format, quality=quality)
    else:
        image.save(buffer, format=pil_format)
    return buffer.getvalue()


def file_extension(output_format: str) -> str:
    return OUTPUT_FORMATS[output_format.lower()][1]
