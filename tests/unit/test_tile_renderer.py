"""
Unit Tests for the Tile Renderer

This test suite covers:
- Zoom gating and one-shot release of layer resources
- Failure isolation between layers and regions
- Tile, meta-tile, image and animation output
- Cancellation and fatal run errors
"""

import concurrent.futures
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, Mock, patch

import psycopg2
from PIL import Image

import sys
sys.path.append(str(Path(__file__).parent.parent.parent / "src"))

from geotile_renderer.config import DatabaseConfig, LayerConfig, RenderJob
from geotile_renderer.errors import ConfigError, RenderResourceError
from geotile_renderer.layers import Layer, write_polygon_file
from geotile_renderer.monitoring import MetricsCollector
from geotile_renderer.rendering.styling import DrawMode, DrawSettings
from geotile_renderer.tile_generation import TileRenderer, meta_tile_path, read_meta_tile

# A small area around Bern
BOUNDS = (7.40, 46.90, 7.50, 46.98)


class RecordingLayer(Layer):
    """Layer that records its lifecycle instead of drawing."""

    layer_type = "recording"

    def __init__(self, config, events):
        super().__init__(config)
        self.events = events
        self.opened = 0
        self.released = 0

    def _open_resources(self, context):
        self.opened += 1

    def _release_resources(self):
        self.released += 1
        self.events.append(("release", self.name))

    def for_each_overlapping_record(self, context, callback):
        self.events.append(("render", context.zoom))


class TestTileRenderer(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.temp_path = Path(self.temp_dir)
        write_polygon_file(
            self.temp_path / "land.plgn",
            [[[(7.0, 46.5), (8.0, 46.5), (8.0, 47.5), (7.0, 47.5), (7.0, 46.5)]]],
            srid=4326
        )
        self.land = LayerConfig(
            name="land",
            type="polygon",
            dir_path=self.temp_path,
            file_name="land.plgn",
            draw_settings=DrawSettings(draw_mode=DrawMode.FILL, fill_color=(1.0, 0.0, 0.0)),
        )
        self.metrics = MetricsCollector()

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def make_job(self, **changes) -> RenderJob:
        values = dict(
            title="test",
            render_mode="tiles",
            min_zoom=10,
            max_zoom=10,
            bounds=BOUNDS,
            tile_size=32,
            output_path=self.temp_path / "out",
            background_color=(1.0, 1.0, 1.0),
            layers=(self.land,),
            max_workers=2,
        )
        values.update(changes)
        return RenderJob(**values)

    def test_renders_tiles(self):
        renderer = TileRenderer(metrics=self.metrics)
        result = renderer.run(self.make_job())

        self.assertTrue(result.success)
        self.assertFalse(result.cancelled)
        self.assertGreater(result.statistics.tiles, 0)
        self.assertEqual(result.statistics.tiles, len(result.output_files))
        self.assertEqual(result.statistics.layer("land").fills, result.statistics.regions)

        tile = Image.open(result.output_files[0]).convert("RGB")
        self.assertEqual(tile.size, (32, 32))
        self.assertEqual(tile.getpixel((16, 16)), (255, 0, 0))

        self.assertEqual(
            self.metrics.get_metric_value('tiles_written_total', {'zoom': '10'}),
            result.statistics.tiles
        )
        self.assertEqual(self.metrics.get_metric_value('regions_in_flight'), 0.0)

    def test_renders_meta_tiles(self):
        job = self.make_job(render_mode="meta-tiles")
        result = TileRenderer().run(job)

        self.assertTrue(result.success)
        self.assertEqual(result.statistics.meta_tiles, len(result.output_files))
        self.assertEqual(result.statistics.tiles, 64 * result.statistics.meta_tiles)

        x, y = 533, 360
        path, _ = meta_tile_path(job.output_path, 10, x, y)
        self.assertTrue(path.is_file())
        self.assertIsNotNone(read_meta_tile(path, x, y))

    def test_zoom_gating_and_single_release(self):
        events = []
        renderer = TileRenderer(max_workers=1)
        renderer.configure(self.make_job(min_zoom=4, max_zoom=12, max_workers=1))

        layer_config = LayerConfig(name="recording", type="polygon", min_zoom=5, max_zoom=10)
        recording = RecordingLayer(layer_config, events)
        renderer.layers = [recording]

        render_region = renderer.render_region

        def tracking_region(*args, **kwargs):
            events.append(("region", args[3]))
            return render_region(*args, **kwargs)

        renderer.render_region = tracking_region
        result = renderer.run()

        self.assertTrue(result.success)
        rendered = [zoom for kind, zoom in events if kind == "render"]
        self.assertEqual(rendered, [5, 6, 7, 8, 9, 10])
        self.assertEqual(recording.opened, 1)
        self.assertEqual(recording.released, 1)

        release_at = events.index(("release", "recording"))
        self.assertEqual(events[release_at - 1], ("render", 10))
        self.assertEqual(events[release_at + 1], ("region", 11))

    def test_one_worker_pool_per_run(self):
        pool = Mock(wraps=concurrent.futures.ThreadPoolExecutor)
        with patch.object(concurrent.futures, "ThreadPoolExecutor", pool):
            result = TileRenderer().run(self.make_job(min_zoom=8, max_zoom=10))

        self.assertTrue(result.success)
        self.assertEqual(set(result.completed_cells), {8, 9, 10})
        self.assertEqual(pool.call_count, 1)

    def test_failed_release_is_counted(self):
        events = []
        renderer = TileRenderer(max_workers=1)
        renderer.configure(self.make_job(min_zoom=4, max_zoom=6, max_workers=1))

        layer = RecordingLayer(LayerConfig(name="recording", type="polygon", min_zoom=4, max_zoom=5), events)
        layer._release_resources = Mock(side_effect=OSError("index file vanished"))
        renderer.layers = [layer]

        result = renderer.run()

        self.assertTrue(result.success)
        self.assertEqual(result.statistics.layer("recording").error_count("ReleaseError"), 1)
        self.assertEqual(
            result.errors,
            [{"layer": "recording", "category": "ReleaseError", "error": "index file vanished"}]
        )
        self.assertIn("ReleaseError=1", result.statistics.report("tiles"))
        layer._release_resources.assert_called_once()

    def test_query_error_does_not_stop_other_layers(self):
        connection = MagicMock()
        connection.closed = False
        cursor = connection.cursor.return_value.__enter__.return_value
        cursor.execute.side_effect = psycopg2.Error("relation \"roads\" does not exist")

        roads = LayerConfig(
            name="roads",
            type="psql",
            psql_identifier="main",
            query="SELECT wkb FROM roads WHERE {{clipping}}",
            geometry_field="way",
            draw_settings=DrawSettings(draw_mode=DrawMode.STROKE),
        )
        job = self.make_job(
            layers=(self.land, roads),
            databases=(DatabaseConfig(identifier="main", db_name="gis", user="render"),),
        )

        renderer = TileRenderer(metrics=self.metrics, connect=Mock(return_value=connection))
        result = renderer.run(job)

        self.assertTrue(result.success)
        self.assertEqual(result.statistics.regions, 1)
        self.assertEqual(result.statistics.error_count("QueryError"), 1)
        self.assertEqual(result.statistics.layer("land").fills, 1)
        self.assertGreater(result.statistics.tiles, 0)
        self.assertEqual(result.errors[0]["layer"], "roads")
        self.assertEqual(
            self.metrics.get_metric_value('layer_errors_total', {'layer': 'roads', 'category': 'QueryError'}),
            1.0
        )
        connection.close.assert_called_once()

    def test_region_failure_does_not_stop_run(self):
        with patch(
            "geotile_renderer.tile_generation.tile_renderer.PillowCanvas",
            side_effect=RenderResourceError("out of memory")
        ):
            result = TileRenderer().run(self.make_job(min_zoom=9, max_zoom=10))

        self.assertTrue(result.success)
        self.assertEqual(result.statistics.regions, 2)
        self.assertEqual(result.statistics.failed_regions, 2)
        self.assertEqual(result.statistics.tiles, 0)
        self.assertEqual(set(result.failed_cells), {9, 10})

    def test_image_mode_keeps_aspect_ratio(self):
        job = self.make_job(
            render_mode="image",
            bounds=(5.0, 45.0, 15.0, 50.0),
            image_width=200,
            image_height=100,
            output_file_name="overview",
        )
        result = TileRenderer().run(job)

        self.assertTrue(result.success)
        path = job.output_path / "overview.png"
        self.assertEqual(result.output_files, [str(path)])

        width, height = Image.open(path).size
        self.assertEqual(height, 100)
        self.assertLess(width, 200)

    def test_animation_frames(self):
        job = self.make_job(
            render_mode="animation",
            image_width=64,
            image_height=64,
            output_file_name="frame",
            animation_frames=3,
        )
        result = TileRenderer().run(job)

        names = sorted(Path(p).name for p in result.output_files)
        self.assertEqual(names, ["frame_00000.png", "frame_00001.png", "frame_00002.png"])

    def test_deadline_cancels_run(self):
        result = TileRenderer().run(self.make_job(min_zoom=5, max_zoom=12), deadline=0.0)

        self.assertTrue(result.cancelled)
        self.assertEqual(result.statistics.regions, 0)
        self.assertEqual(result.output_files, [])

    def test_invalid_default_projection_aborts(self):
        result = TileRenderer().run(self.make_job(destination_srid=999999))

        self.assertFalse(result.success)
        self.assertIn("projection", result.fatal_error)
        self.assertEqual(result.statistics.regions, 0)

    def test_invalid_job(self):
        renderer = TileRenderer()
        with self.assertRaises(ConfigError):
            renderer.run(self.make_job(tile_size=100))
        with self.assertRaises(RuntimeError):
            renderer.run()

    def test_run_result_to_dict(self):
        result = TileRenderer().run(self.make_job())
        data = result.to_dict()

        self.assertEqual(data['render_mode'], "tiles")
        self.assertEqual(data['completed_cells'], {10: 1})
        self.assertEqual(data['statistics']['layers'][0]['name'], "land")


if __name__ == '__main__':
    unittest.main()
