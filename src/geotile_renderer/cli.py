"""
Command line entry point.

    geotile-render config.yaml [--max-workers N] [--deadline SECONDS]

Exit codes: 0 on success, 1 for configuration errors or a failed run,
130 when the run was cancelled.
"""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path

import structlog

from . import __version__
from .config import load_config
from .errors import ConfigError
from .monitoring.metrics import MetricsCollector
from .tile_generation.tile_renderer import TileRenderer

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def configure_logging(verbose: bool = False, pretty: bool = False) -> None:
    """Route structlog through the standard library logger."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=logging.DEBUG if verbose else logging.INFO,
    )

    renderer = structlog.dev.ConsoleRenderer() if pretty else structlog.processors.JSONRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="geotile-render",
        description="Render map tiles, meta-tiles or images from a YAML job description."
    )
    parser.add_argument("config", type=Path, help="Path to the render job YAML file")
    parser.add_argument("--max-workers", type=int, default=None,
                        help="Worker threads per zoom level (overrides the job)")
    parser.add_argument("--deadline", type=float, default=None,
                        help="Stop scheduling regions after this many seconds")
    parser.add_argument("--metrics-out", type=Path, default=None,
                        help="Write Prometheus metrics to this file after the run")
    parser.add_argument("--push-gateway", default=None,
                        help="Prometheus push gateway address")
    parser.add_argument("--json-stats", action="store_true",
                        help="Print statistics as JSON instead of the text report")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--pretty", action="store_true", help="Human readable log output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose, pretty=args.pretty)
    logger = structlog.get_logger(component="cli")

    if args.max_workers is not None and args.max_workers < 1:
        logger.error("Invalid --max-workers", value=args.max_workers)
        return EXIT_FAILED

    try:
        job = load_config(args.config)
    except ConfigError as e:
        logger.error("Configuration error", error=str(e), key=e.key, layer=e.layer)
        return EXIT_FAILED

    metrics = MetricsCollector(prometheus_gateway=args.push_gateway)
    renderer = TileRenderer(metrics=metrics, max_workers=args.max_workers)

    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: renderer.cancel())
    try:
        result = renderer.run(job, deadline=args.deadline)
    except ConfigError as e:
        logger.error("Configuration error", error=str(e), key=e.key, layer=e.layer)
        return EXIT_FAILED
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if args.json_stats:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(result.statistics.report(job.render_mode))

    if args.metrics_out is not None:
        args.metrics_out.write_text(metrics.export_metrics("prometheus"), encoding="utf-8")
    if args.push_gateway:
        metrics.push_to_prometheus_gateway()

    if result.cancelled:
        return EXIT_CANCELLED
    if not result.success:
        logger.error("Render run failed", error=result.fatal_error)
        return EXIT_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
