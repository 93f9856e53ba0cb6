"""Affine mapping from projected coordinates to raster pixels."""

from dataclasses import dataclass
from typing import Tuple

Rect = Tuple[float, float, float, float]  # (x, y, width, height)


@dataclass(frozen=True)
class RemapTransform:
    """
    Maps a source rectangle onto a destination rectangle.

    With `flip_vertical` the minimum source y lands on the bottom edge of the
    destination, which turns north-up projected coordinates into top-down
    raster rows.
    """
    src_x: float
    src_y: float
    dst_x: float
    dst_y: float
    x_scale: float
    y_scale: float

    @classmethod
    def build(cls, source_rect: Rect, dest_rect: Rect, flip_vertical: bool = False) -> "RemapTransform":
        sx, sy, sw, sh = source_rect
        dx, dy, dw, dh = dest_rect

        x_scale = dw / sw if sw != 0.0 else 1.0

        if flip_vertical:
            y_scale = -(dh / sh) if sh != 0.0 else 1.0
            dy += dh
        else:
            y_scale = dh / sh if sh != 0.0 else 1.0

        return cls(src_x=sx, src_y=sy, dst_x=dx, dst_y=dy, x_scale=x_scale, y_scale=y_scale)

    def apply(self, x: float, y: float) -> Tuple[float, float]:
        return (
            (x - self.src_x) * self.x_scale + self.dst_x,
            (y - self.src_y) * self.y_scale + self.dst_y
        )

    __call__ = apply

    def inverse(self, x: float, y: float) -> Tuple[float, float]:
        return (
            (x - self.dst_x) / self.x_scale + self.src_x,
            (y - self.dst_y) / self.y_scale + self.src_y
        )


def fit_rect(width: float, height: float, target_width: float, target_height: float) -> Rect:
    """
    Largest rectangle with the aspect ratio of (width, height) that fits
    inside the target, anchored at the origin.
    """
    width, height = abs(width), abs(height)
    if width == 0.0 or height == 0.0:
        return (0.0, 0.0, target_width, target_height)
    scale = min(target_width / width, target_height / height)
    return (0.0, 0.0, width * scale, height * scale)
