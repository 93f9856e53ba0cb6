"""
Unit Tests for the Command Line Entry Point
"""

import io
import shutil
import tempfile
import textwrap
import unittest
from contextlib import redirect_stdout
from pathlib import Path

import sys
sys.path.append(str(Path(__file__).parent.parent.parent / "src"))

from geotile_renderer.cli import EXIT_FAILED, EXIT_OK, build_parser, main
from geotile_renderer.layers import write_polygon_file


CONFIG = """
title: CLI test
render-mode: tiles
zoom-min: 3
zoom-max: 4
bounds: [7.0, 46.0, 8.0, 47.0]
tile-size: 64
output-path: tiles
map-background-color: "#ffffff"
layer:
  - name: land
    type: polygon
    dir: .
    file: land.plgn
    draw-mode: fill
    fill-color: "#00aa00"
"""


class TestCli(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.temp_path = Path(self.temp_dir)
        write_polygon_file(
            self.temp_path / "land.plgn",
            [[[(6.0, 45.0), (9.0, 45.0), (9.0, 48.0), (6.0, 48.0), (6.0, 45.0)]]]
        )
        self.config_path = self.temp_path / "job.yaml"
        self.config_path.write_text(textwrap.dedent(CONFIG), encoding="utf-8")

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_parser(self):
        args = build_parser().parse_args(["job.yaml", "--max-workers", "3", "--deadline", "60"])

        self.assertEqual(args.config, Path("job.yaml"))
        self.assertEqual(args.max_workers, 3)
        self.assertEqual(args.deadline, 60.0)
        self.assertFalse(args.verbose)

    def test_successful_run(self):
        metrics_path = self.temp_path / "metrics.prom"
        stdout = io.StringIO()

        with redirect_stdout(stdout):
            code = main([str(self.config_path), "--metrics-out", str(metrics_path)])

        self.assertEqual(code, EXIT_OK)
        self.assertIn("***** Render statistics *****", stdout.getvalue())
        self.assertTrue((self.temp_path / "tiles" / "4").is_dir())
        self.assertIn("tiles_written_total", metrics_path.read_text(encoding="utf-8"))

    def test_configuration_error(self):
        self.config_path.write_text(CONFIG.replace("tile-size: 64", "tile-size: 60"), encoding="utf-8")

        self.assertEqual(main([str(self.config_path)]), EXIT_FAILED)

    def test_invalid_worker_count(self):
        self.assertEqual(main([str(self.config_path), "--max-workers", "0"]), EXIT_FAILED)


if __name__ == '__main__':
    unittest.main()
