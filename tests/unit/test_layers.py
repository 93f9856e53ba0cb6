"""
Unit Tests for Data Source Layers

This test suite covers:
- Indexed polygon files and lazy body reads
- PostGIS query layers with mocked connections
- CSV point layers and shapefile layers
- The shared per-feature pipeline (scripts, projection, draw order)
"""

import math
import shutil
import struct
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, Mock

import geopandas as gpd
import psycopg2
import pytest
import shapely.wkb
from shapely.geometry import Polygon

import sys
sys.path.append(str(Path(__file__).parent.parent.parent / "src"))

from geotile_renderer.config import CustomField, DatabaseConfig, LayerConfig
from geotile_renderer.errors import DatabaseConnectionError, DataFileError, ProjectionError, QueryError
from geotile_renderer.geometry import Point, ProjectionCache, RemapTransform
from geotile_renderer.layers import (
    CSVLayer,
    PolygonFile,
    PolygonLayer,
    PSQLConnectionRegistry,
    PSQLLayer,
    ShapeLayer,
    build_layer,
    write_polygon_file,
)
from geotile_renderer.layers.base import label_text, project_record
from geotile_renderer.rendering.context import RenderContext
from geotile_renderer.rendering.styling import DrawMode, DrawSettings


def make_context(bounds, size=(256, 256), zoom=5, dst_srid=3857, canvas=None, projections=None):
    if canvas is None:
        canvas = Mock()
        canvas.size = size
    min_x, min_y, max_x, max_y = bounds
    remap = RemapTransform.build(
        (min_x, min_y, max_x - min_x, max_y - min_y),
        (0.0, 0.0, float(size[0]), float(size[1])),
        flip_vertical=True
    )
    return RenderContext(
        zoom=zoom,
        dst_srid=dst_srid,
        dst_bounds=bounds,
        remap=remap,
        canvas=canvas,
        meter_per_pixel=10.0,
        projections=projections or ProjectionCache(),
        region_id="test"
    )


def square(x, y, size):
    return [(x, y), (x + size, y), (x + size, y + size), (x, y + size), (x, y)]


def web_mercator_bounds(min_lon, min_lat, max_lon, max_lat):
    handle = ProjectionCache().get(4326, 3857)
    min_x, min_y = handle.transform(min_lon, min_lat)
    max_x, max_y = handle.transform(max_lon, max_lat)
    return (min_x, min_y, max_x, max_y)


class TestPolygonFile(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.path = Path(self.temp_dir) / "shapes.plgn"

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_write_and_read(self):
        outer = square(0.0, 0.0, 10.0)
        hole = square(2.0, 2.0, 2.0)
        write_polygon_file(self.path, [[outer, hole], [square(20.0, 20.0, 5.0)]], srid=3857)

        with PolygonFile(self.path) as polygon_file:
            self.assertEqual(len(polygon_file), 2)
            self.assertEqual(polygon_file.srid, 3857)
            self.assertEqual(polygon_file.bounds, (0.0, 0.0, 25.0, 25.0))

            entry = polygon_file.entries[0]
            self.assertEqual(entry.part_count, 2)
            self.assertEqual(entry.point_count, 10)
            self.assertEqual(polygon_file.read_rings(entry), [outer, hole])

    def test_big_endian(self):
        write_polygon_file(self.path, [[square(1.0, 2.0, 3.0)]], little_endian=False)

        with PolygonFile(self.path) as polygon_file:
            self.assertEqual(polygon_file.endian, ">")
            self.assertEqual(polygon_file.read_rings(polygon_file.entries[0]), [square(1.0, 2.0, 3.0)])

    def test_overlapping(self):
        write_polygon_file(self.path, [[square(0.0, 0.0, 1.0)], [square(10.0, 10.0, 1.0)]])

        with PolygonFile(self.path) as polygon_file:
            found = [i for i, _ in polygon_file.overlapping((0.5, 0.5, 5.0, 5.0))]
        self.assertEqual(found, [0])

    def test_bad_signature(self):
        self.path.write_bytes(b"XXXX" + bytes(60))
        with self.assertRaises(DataFileError):
            PolygonFile(self.path)

    def test_truncated_index(self):
        write_polygon_file(self.path, [[square(0.0, 0.0, 1.0)], [square(5.0, 5.0, 1.0)]])
        data = self.path.read_bytes()
        self.path.write_bytes(data[:60])

        with self.assertRaises(DataFileError):
            PolygonFile(self.path)

    def test_body_outside_file(self):
        write_polygon_file(self.path, [[square(0.0, 0.0, 1.0)]])
        data = self.path.read_bytes()
        self.path.write_bytes(data[:-16])

        with PolygonFile(self.path) as polygon_file:
            with self.assertRaises(DataFileError):
                polygon_file.read_rings(polygon_file.entries[0])

    def test_missing_file(self):
        with self.assertRaises(DataFileError):
            PolygonFile(Path(self.temp_dir) / "missing.plgn")


class TestPolygonLayer(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.temp_path = Path(self.temp_dir)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def make_layer(self, file_name="land.plgn", srid=4326, **settings):
        config = LayerConfig(
            name="land",
            type="polygon",
            srid=srid,
            dir_path=self.temp_path,
            file_name=file_name,
            draw_settings=DrawSettings(**settings),
        )
        return build_layer(config)

    def test_only_overlapping_bodies_are_read(self):
        write_polygon_file(
            self.temp_path / "land.plgn",
            [
                [square(0.0, 0.0, 10.0)],          # A
                [square(20.0, 20.0, 10.0)],        # B
                [square(1000.0, 1000.0, 10.0)],    # C
            ],
            srid=3857
        )
        layer = self.make_layer(draw_mode=DrawMode.FILL)
        context = make_context((-5.0, -5.0, 50.0, 50.0))

        layer.ensure_open(context)
        polygon_file = layer.polygon_file
        entry_c = polygon_file.entries[2]
        polygon_file.read_rings = Mock(wraps=polygon_file.read_rings)

        layer.render(context)

        self.assertIsInstance(layer, PolygonLayer)
        self.assertEqual(context.canvas.fill_path.call_count, 2)
        self.assertEqual(polygon_file.read_rings.call_count, 2)
        for call in polygon_file.read_rings.call_args_list:
            self.assertIsNot(call[0][0], entry_c)
        self.assertEqual(context.statistics.layer("land").fills, 2)
        context.canvas.stroke_path.assert_not_called()

    def test_file_srid_overrides_layer(self):
        write_polygon_file(self.temp_path / "land.plgn", [[square(8.0, 47.0, 1.0)]], srid=4326)
        layer = self.make_layer(srid=3857, draw_mode=DrawMode.STROKE)
        context = make_context(web_mercator_bounds(7.0, 46.0, 10.0, 49.0))

        layer.render(context)

        self.assertEqual(layer.srid, 4326)
        self.assertEqual(context.canvas.stroke_path.call_count, 1)
        rings = context.canvas.stroke_path.call_args[0][0]
        for x, y in rings[0]:
            self.assertTrue(0.0 <= x <= 256.0)
            self.assertTrue(0.0 <= y <= 256.0)

    def test_script_filters_features(self):
        write_polygon_file(
            self.temp_path / "land.plgn",
            [[square(0.0, 0.0, 1.0)], [square(2.0, 2.0, 1.0)], [square(4.0, 4.0, 1.0)]],
            srid=3857
        )
        config = LayerConfig(
            name="land",
            type="polygon",
            dir_path=self.temp_path,
            file_name="land.plgn",
            draw_settings=DrawSettings(draw_mode=DrawMode.FILL),
            script="def process():\n    return map_layer.attributes['feature'] != 1\n",
        )
        layer = build_layer(config)
        context = make_context((-1.0, -1.0, 10.0, 10.0))

        layer.render(context)

        stats = context.statistics.layer("land")
        self.assertEqual(stats.skipped_by_script, 1)
        self.assertEqual(stats.fills, 2)

    def test_release_once(self):
        write_polygon_file(self.temp_path / "land.plgn", [[square(0.0, 0.0, 1.0)]], srid=3857)
        layer = self.make_layer()
        layer.ensure_open(make_context((0.0, 0.0, 1.0, 1.0)))

        self.assertTrue(layer.release())
        self.assertFalse(layer.release())
        self.assertIsNone(layer.polygon_file)
        self.assertTrue(layer.is_released)

        layer.begin_run()
        self.assertFalse(layer.is_released)

    def test_failed_open_retries_next_region(self):
        layer = self.make_layer(file_name="late.plgn")

        with self.assertRaises(DataFileError):
            layer.render(make_context((0.0, 0.0, 1.0, 1.0)))
        self.assertFalse(layer.is_open)

        write_polygon_file(self.temp_path / "late.plgn", [[square(0.0, 0.0, 1.0)]], srid=3857)
        layer.render(make_context((0.0, 0.0, 1.0, 1.0)))
        self.assertTrue(layer.is_open)


class TestDrawDispatch(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        write_polygon_file(Path(self.temp_dir) / "land.plgn", [[square(0.0, 0.0, 10.0)]], srid=3857)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def render_with(self, mode):
        config = LayerConfig(
            name="land",
            type="polygon",
            dir_path=Path(self.temp_dir),
            file_name="land.plgn",
            draw_settings=DrawSettings(draw_mode=mode),
        )
        context = make_context((-5.0, -5.0, 20.0, 20.0))
        build_layer(config).render(context)
        return context

    def test_fill_then_stroke(self):
        context = self.render_with(DrawMode.FILL_STROKE)
        names = [name for name, _, _ in context.canvas.method_calls]
        self.assertEqual(names, ["fill_path", "stroke_path"])

    def test_stroke_then_fill(self):
        context = self.render_with(DrawMode.STROKE_FILL)
        names = [name for name, _, _ in context.canvas.method_calls]
        self.assertEqual(names, ["stroke_path", "fill_path"])

        stats = context.statistics.layer("land")
        self.assertEqual((stats.fills, stats.strokes, stats.rendering_calls), (1, 1, 1))

    def test_text_mode_skips_paths(self):
        context = self.render_with(DrawMode.TEXT_AT_POINT)
        self.assertEqual(context.canvas.method_calls, [])

    def test_label_text(self):
        self.assertEqual(label_text({"name": "Bern", "population": 3.0}, None), "Bern")
        self.assertEqual(label_text({"name": "Bern", "population": 3.0}, "population"), "3")
        self.assertIsNone(label_text({}, None))

    def test_project_record_rejects_non_finite(self):
        handle = Mock(src_srid=1, dst_srid=2)
        handle.transform.return_value = (math.inf, 0.0)

        with self.assertRaises(ProjectionError):
            project_record(Point(1.0, 1.0), handle)


def point_wkb(x, y):
    return b"\x01" + struct.pack("<Idd", 1, x, y)


def ewkb_point(x, y, srid):
    return b"\x01" + struct.pack("<IIdd", 1 | 0x20000000, srid, x, y)


class TestPSQLLayer(unittest.TestCase):

    def setUp(self):
        self.connection = MagicMock()
        self.connection.closed = False
        self.cursor = self.connection.cursor.return_value.__enter__.return_value
        self.connect = Mock(return_value=self.connection)
        self.registry = PSQLConnectionRegistry(
            [DatabaseConfig(identifier="main", db_name="gis", user="render")],
            retry_backoff=0.0,
            connect=self.connect
        )
        self.config = LayerConfig(
            name="roads",
            type="psql",
            psql_identifier="main",
            query="SELECT wkb, name FROM roads WHERE {{clipping}} AND {{zoom}} > 3",
            geometry_field="way",
            draw_settings=DrawSettings(draw_mode=DrawMode.FILL_STROKE),
        )
        self.layer = build_layer(self.config, connections=self.registry)

    def test_build_query(self):
        context = make_context((1.0, 2.0, 3.0, 4.0), zoom=7)
        sql = self.layer.build_query(context)

        self.assertIn("ST_Transform(way, 3857)", sql)
        self.assertIn("ST_MakeEnvelope(1, 2, 3, 4, 3857)", sql)
        self.assertIn("AND 7 > 3", sql)
        self.assertNotIn("{{", sql)

    def test_same_srid_clipping(self):
        layer = PSQLLayer(LayerConfig(
            name="roads", type="psql", srid=3857, query="SELECT * FROM t WHERE {{clipping}}",
            geometry_field="way"
        ), self.registry)
        sql = layer.build_query(make_context((0.0, 0.0, 1.0, 1.0)))
        self.assertIn("ST_Intersects(way, ST_MakeEnvelope(", sql)

    def test_rows_are_rendered(self):
        polygon = shapely.wkb.dumps(Polygon(square(0.0, 0.0, 1000.0)))
        self.cursor.fetchall.return_value = [
            {"wkb": point_wkb(8.5, 47.3), "name": "a"},
            {"wkb": None, "name": "b"},
            {"wkb": polygon, "srid": 3857, "name": "c"},
        ]
        context = make_context(web_mercator_bounds(-20.0, -20.0, 20.0, 60.0))

        self.layer.render(context)

        canvas = context.canvas
        self.assertEqual(canvas.fill_point.call_count, 1)
        self.assertEqual(canvas.stroke_point.call_count, 1)
        self.assertEqual(canvas.fill_path.call_count, 1)
        self.assertEqual(canvas.stroke_path.call_count, 1)

        stats = context.statistics.layer("roads")
        self.assertEqual(stats.db_rows, 3)
        self.assertEqual(stats.points, 1)
        self.assertEqual(stats.error_count("GeometryDecodeError"), 1)
        self.assertEqual(context.errors[0]["row"], 1)

    def test_ewkb_srid_overrides_layer_srid(self):
        layer = PSQLLayer(LayerConfig(
            name="towns", type="psql", srid=3857, psql_identifier="main",
            query="SELECT wkb FROM towns WHERE {{clipping}}", geometry_field="way",
            draw_settings=DrawSettings(draw_mode=DrawMode.FILL),
        ), self.registry)
        self.cursor.fetchall.return_value = [{"wkb": ewkb_point(8.0, 47.0, 4326)}]
        context = make_context(web_mercator_bounds(7.0, 46.0, 9.0, 48.0))

        layer.render(context)

        context.canvas.fill_point.assert_called_once()
        x, y = context.canvas.fill_point.call_args[0][1:3]
        self.assertAlmostEqual(x, 128.0, places=3)
        self.assertTrue(0.0 <= y <= 256.0)

    def test_query_error(self):
        self.cursor.execute.side_effect = psycopg2.Error("relation does not exist")

        with self.assertRaises(QueryError) as ctx:
            self.layer.render(make_context((0.0, 0.0, 1.0, 1.0)))
        self.assertEqual(ctx.exception.layer, "roads")

    def test_missing_wkb_column(self):
        self.cursor.fetchall.return_value = [{"geom": b"", "name": "a"}]
        with self.assertRaises(QueryError):
            self.layer.render(make_context((0.0, 0.0, 1.0, 1.0)))

    def test_connection_is_reused(self):
        self.cursor.fetchall.return_value = []
        self.layer.render(make_context((0.0, 0.0, 1.0, 1.0)))
        self.layer.render(make_context((0.0, 0.0, 1.0, 1.0)))

        self.assertEqual(self.connect.call_count, 1)
        self.assertTrue(self.connection.autocommit)

    def test_connection_retry(self):
        self.connect.side_effect = [psycopg2.OperationalError("starting up"), self.connection]

        self.assertIs(self.registry.connection("main"), self.connection)
        self.assertEqual(self.connect.call_count, 2)

    def test_connection_gives_up(self):
        self.connect.side_effect = psycopg2.OperationalError("down")

        with pytest.raises(DatabaseConnectionError):
            self.registry.connection("main", layer="roads")
        self.assertEqual(self.connect.call_count, 3)

    def test_unknown_identifier_uses_first_database(self):
        self.assertEqual(self.registry.config_for("other").identifier, "main")
        self.assertIsNone(PSQLConnectionRegistry([]).config_for("main"))


class TestCSVLayer(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.temp_path = Path(self.temp_dir)
        (self.temp_path / "places.csv").write_text(
            "id;lon;lat;size;label\n"
            "1;8.5;47.3;6;Zurich\n"
            "2;200;47;5;Nowhere\n"
            "3;9.0;abc;5;Broken\n"
            "4;9.0;47.5;;Lucerne\n",
            encoding="utf-8"
        )
        self.config = LayerConfig(
            name="places",
            type="csv",
            dir_path=self.temp_path,
            file_name="places.csv",
            delimiter=";",
            ignore_header=True,
            radius_field=3,
            custom_fields=(
                CustomField(0, "id", "long"),
                CustomField(1, "lon", "double", "x"),
                CustomField(2, "lat", "double", "y"),
                CustomField(3, "size", "double"),
                CustomField(4, "label", "string"),
            ),
            draw_settings=DrawSettings(draw_mode=DrawMode.FILL, radius_px_fix=3.0),
        )

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_points(self):
        layer = build_layer(self.config)
        context = make_context(web_mercator_bounds(5.0, 45.0, 12.0, 50.0))

        layer.render(context)

        self.assertIsInstance(layer, CSVLayer)
        stats = context.statistics.layer("places")
        self.assertEqual(stats.out_of_range, 2)
        self.assertEqual(stats.points, 2)

        radii = sorted(call[0][3] for call in context.canvas.fill_point.call_args_list)
        self.assertEqual(radii, [3.0, 6.0])

    def test_attributes(self):
        layer = build_layer(self.config)
        context = make_context(web_mercator_bounds(5.0, 45.0, 12.0, 50.0))
        features = []

        layer.ensure_open(context)
        layer.for_each_overlapping_record(context, features.append)

        self.assertEqual([f.attributes["label"] for f in features], ["Zurich", "Lucerne"])
        self.assertEqual(features[0].attributes["id"], 1)
        self.assertIsNone(features[1].attributes["size"])
        self.assertEqual(features[0].srid, 3857)

    def test_points_outside_region_are_skipped(self):
        layer = build_layer(self.config)
        context = make_context(web_mercator_bounds(100.0, 10.0, 110.0, 20.0))

        layer.render(context)

        context.canvas.fill_point.assert_not_called()

    def test_unreadable_file(self):
        (self.temp_path / "places.csv").unlink()
        layer = build_layer(self.config)

        with self.assertRaises(DataFileError):
            layer.render(make_context((0.0, 0.0, 1.0, 1.0)))


class TestShapeLayer(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.temp_path = Path(self.temp_dir)
        gdf = gpd.GeoDataFrame(
            {"name": ["a", "b", "c"]},
            geometry=[
                Polygon(square(8.0, 47.0, 0.5)),
                Polygon(square(9.0, 47.5, 0.5)),
                Polygon(square(100.0, 10.0, 0.5)),
            ],
            crs="EPSG:4326"
        )
        gdf.to_file(self.temp_path / "areas.shp")

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_only_overlapping_features(self):
        config = LayerConfig(
            name="areas",
            type="shape",
            dir_path=self.temp_path,
            file_name="areas.shp",
            draw_settings=DrawSettings(draw_mode=DrawMode.FILL),
        )
        layer = build_layer(config)
        context = make_context(web_mercator_bounds(5.0, 45.0, 12.0, 50.0))
        features = []

        layer.ensure_open(context)
        layer.for_each_overlapping_record(context, features.append)

        self.assertIsInstance(layer, ShapeLayer)
        self.assertEqual(sorted(f.attributes["name"] for f in features), ["a", "b"])
        self.assertTrue(all(f.srid == 3857 for f in features))

    def test_missing_file(self):
        config = LayerConfig(name="areas", type="shape", dir_path=self.temp_path, file_name="none.shp")
        with self.assertRaises(DataFileError):
            build_layer(config).render(make_context((0.0, 0.0, 1.0, 1.0)))


if __name__ == '__main__':
    unittest.main()
