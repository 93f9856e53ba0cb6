"""
Rendering Module

Styling, the Pillow canvas, the per-region render context and the layer
scripting hook.
"""

from .styling import DrawSettings, DrawMode, PointShape, parse_color, meter_to_pixel
from .raster import Canvas, PillowCanvas, encode_image, file_extension, OUTPUT_FORMATS
from .context import RenderContext
from .scripting import ScriptHookAdapter, ScriptEngine, PythonScriptEngine

__all__ = [
    "DrawSettings",
    "DrawMode",
    "PointShape",
    "parse_color",
    "meter_to_pixel",
    "Canvas",
    "PillowCanvas",
    "encode_image",
    "file_extension",
    "OUTPUT_FORMATS",
    "RenderContext",
    "ScriptHookAdapter",
    "ScriptEngine",
    "PythonScriptEngine",
]
