"""
Unit Tests for Styling, the Pillow Canvas and Layer Scripts
"""

import io
import threading
import unittest
from pathlib import Path

import pytest
from PIL import Image

import sys
sys.path.append(str(Path(__file__).parent.parent.parent / "src"))

from geotile_renderer.errors import RenderResourceError, ScriptError
from geotile_renderer.rendering import (
    DrawMode,
    DrawSettings,
    PillowCanvas,
    ScriptHookAdapter,
    encode_image,
    file_extension,
    meter_to_pixel,
    parse_color,
)


class TestStyling(unittest.TestCase):

    def test_parse_hex_color(self):
        self.assertEqual(parse_color("#ff0000"), (1.0, 0.0, 0.0))
        self.assertEqual(parse_color("00ff00"), (0.0, 1.0, 0.0))
        self.assertEqual(parse_color("#fff"), (1.0, 1.0, 1.0))

    def test_parse_sequence_color_clamps(self):
        self.assertEqual(parse_color([0.5, 2.0, -1.0]), (0.5, 1.0, 0.0))

    def test_invalid_colors(self):
        for value in ("#12345", "zzzzzz", [1, 2], [True, 0, 0], 42):
            with self.assertRaises(ValueError):
                parse_color(value)

    def test_meter_to_pixel_clamps(self):
        self.assertEqual(meter_to_pixel(100.0, -1.0, 0.5, 5.0, 10.0), 5.0)
        self.assertEqual(meter_to_pixel(1.0, -1.0, 0.5, 5.0, 10.0), 0.5)
        self.assertEqual(meter_to_pixel(30.0, -1.0, 0.5, 5.0, 10.0), 3.0)

    def test_fixed_pixel_value_wins(self):
        self.assertEqual(meter_to_pixel(1000.0, 2.5, 0.5, 5.0, 1.0), 2.5)

    def test_resolve(self):
        settings = DrawSettings(stroke_width=20.0, radius=50.0, fill_extent_width=5.0)
        settings.resolve(meter_per_pixel=10.0)

        self.assertEqual(settings.stroke_width_px, 2.0)
        self.assertEqual(settings.radius_px, 5.0)
        self.assertEqual(settings.fill_extent_px, 0.5)

    def test_set_property(self):
        settings = DrawSettings()
        settings.set_property("draw-mode", "stroke-fill")
        settings.set_property("fill-opacity", 3.0)
        settings.set_property("stroke-color", "#0000ff")

        self.assertEqual(settings.draw_mode, DrawMode.STROKE_FILL)
        self.assertEqual(settings.fill_opacity, 1.0)
        self.assertEqual(settings.stroke_color, (0.0, 0.0, 1.0))

        with self.assertRaises(ValueError):
            settings.set_property("line-width", 3)
        with self.assertRaises(ValueError):
            settings.set_property("blend-mode", "overlay-ish")

    def test_copy_is_independent(self):
        settings = DrawSettings(stroke_dash=[1.0, 2.0])
        clone = settings.copy()
        clone.stroke_dash.append(3.0)
        clone.fill_color = (1.0, 0.0, 0.0)

        self.assertEqual(settings.stroke_dash, [1.0, 2.0])
        self.assertNotEqual(settings.fill_color, clone.fill_color)


class TestPillowCanvas(unittest.TestCase):

    def test_invalid_size(self):
        with self.assertRaises(RenderResourceError):
            PillowCanvas(0, 10)

    def test_clear(self):
        canvas = PillowCanvas(4, 4)
        canvas.clear((1.0, 1.0, 1.0), 1.0)
        self.assertEqual(canvas.image.getpixel((2, 2)), (255, 255, 255, 255))

    def test_fill_with_hole(self):
        canvas = PillowCanvas(100, 100)
        shell = [(10, 10), (90, 10), (90, 90), (10, 90)]
        hole = [(40, 40), (60, 40), (60, 60), (40, 60)]
        canvas.fill_path([shell, hole], (1.0, 0.0, 0.0), 1.0)

        self.assertEqual(canvas.image.getpixel((20, 20)), (255, 0, 0, 255))
        self.assertEqual(canvas.image.getpixel((50, 50))[3], 0)
        self.assertEqual(canvas.image.getpixel((5, 5))[3], 0)

    def test_geometry_outside_is_ignored(self):
        canvas = PillowCanvas(10, 10)
        canvas.fill_path([[(100, 100), (120, 100), (120, 120)]], (1.0, 0.0, 0.0), 1.0)
        self.assertEqual(canvas.image.getbbox(), None)

    def test_stroke_and_point(self):
        canvas = PillowCanvas(50, 50)
        canvas.stroke_path([[(0, 25), (49, 25)]], False, (0.0, 0.0, 1.0), 1.0, 3.0)
        canvas.fill_point(None, 10, 10, 4.0, (0.0, 1.0, 0.0), 1.0)

        self.assertEqual(canvas.image.getpixel((25, 25)), (0, 0, 255, 255))
        self.assertEqual(canvas.image.getpixel((10, 10)), (0, 255, 0, 255))

    def test_miter_join_respects_limit(self):
        corner = [[(10, 40), (40, 40), (40, 10)]]

        mitered = PillowCanvas(60, 60)
        mitered.stroke_path(corner, False, (0.0, 0.0, 0.0), 1.0, 10.0, cap="butt", join="miter", miter_limit=4.0)
        self.assertEqual(mitered.image.getpixel((44, 44)), (0, 0, 0, 255))

        # A right angle needs a limit of sqrt(2), so this one is beveled
        beveled = PillowCanvas(60, 60)
        beveled.stroke_path(corner, False, (0.0, 0.0, 0.0), 1.0, 10.0, cap="butt", join="miter", miter_limit=1.2)
        self.assertEqual(beveled.image.getpixel((44, 44))[3], 0)
        self.assertEqual(beveled.image.getpixel((41, 41)), (0, 0, 0, 255))

    def test_draw_text_with_default_font(self):
        canvas = PillowCanvas(80, 40)
        canvas.draw_text("Bern", 40, 20, (0.0, 0.0, 0.0), 1.0, font_size=16)

        left, top, right, bottom = canvas.image.getbbox()
        self.assertLess(left, 40)
        self.assertGreater(right, 40)

    def test_encode_image_formats(self):
        canvas = PillowCanvas(8, 8)
        canvas.clear((0.0, 0.0, 0.0), 0.5)

        png = encode_image(canvas.image, "png", use_alpha=True)
        self.assertEqual(Image.open(io.BytesIO(png)).mode, "RGBA")

        jpg = encode_image(canvas.image, "jpg", quality=50)
        self.assertEqual(Image.open(io.BytesIO(jpg)).format, "JPEG")

        self.assertEqual(file_extension("jpeg"), "jpg")
        self.assertEqual(file_extension("PNG"), "png")


SCRIPT = """
def process():
    if map_layer.attributes.get("kind") == "river":
        map_renderer.set_property("stroke-color", "#0000ff")
    if map_layer.attributes.get("kind") == "hidden":
        return False
    return map_renderer.check_zoom(5, 14)
"""


class TestScriptHookAdapter(unittest.TestCase):

    def setUp(self):
        self.adapter = ScriptHookAdapter("roads", SCRIPT)

    def test_restyles_feature(self):
        self.adapter.prepare(layer_index=0, zoom=8, time_value=0.0)
        settings = DrawSettings()

        self.assertTrue(self.adapter.evaluate(0, {"kind": "river"}, settings))
        self.assertEqual(settings.stroke_color, (0.0, 0.0, 1.0))

    def test_filters_feature(self):
        self.adapter.prepare(layer_index=0, zoom=8, time_value=0.0)
        self.assertFalse(self.adapter.evaluate(1, {"kind": "hidden"}, DrawSettings()))

    def test_zoom_check(self):
        self.adapter.prepare(layer_index=0, zoom=3, time_value=0.0)
        self.assertFalse(self.adapter.evaluate(0, {"kind": "road"}, DrawSettings()))

    def test_evaluate_before_prepare(self):
        with self.assertRaises(ScriptError):
            self.adapter.evaluate(0, {}, DrawSettings())

    def test_runtime_error_is_script_error(self):
        adapter = ScriptHookAdapter("bad", "def process():\n    return 1 / 0\n")
        adapter.prepare(0, 5, 0.0)
        with pytest.raises(ScriptError):
            adapter.evaluate(0, {}, DrawSettings())

    def test_non_bool_result(self):
        adapter = ScriptHookAdapter("bad", "def process():\n    return 'yes'\n")
        adapter.prepare(0, 5, 0.0)
        with pytest.raises(ScriptError):
            adapter.evaluate(0, {}, DrawSettings())

    def test_syntax_error(self):
        adapter = ScriptHookAdapter("broken", "def process(:\n")
        with pytest.raises(ScriptError):
            adapter.prepare(0, 5, 0.0)

    def test_one_engine_per_thread(self):
        engines = []

        def factory():
            from geotile_renderer.rendering import PythonScriptEngine
            engine = PythonScriptEngine()
            engines.append(engine)
            return engine

        adapter = ScriptHookAdapter("roads", SCRIPT, engine_factory=factory)

        def worker():
            adapter.prepare(0, 8, 0.0)
            adapter.prepare(0, 9, 0.0)
            adapter.evaluate(0, {"kind": "road"}, DrawSettings())

        threads = [threading.Thread(target=worker) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(engines), 3)


if __name__ == '__main__':
    unittest.main()
