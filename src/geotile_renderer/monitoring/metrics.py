"""
Metrics Collection

Prometheus metrics for render runs. Each collector owns a private
CollectorRegistry, so several renderers (or tests) in one process never clash
on metric names.

This module demonstrates:
- Counters, histograms and gauges with labels
- Thread-safe recording from worker threads
- Export as JSON or Prometheus text and pushing to a push gateway
"""

import json
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Union

import structlog
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest, push_to_gateway


@dataclass
class MetricValue:
    """A single recorded metric value."""
    name: str
    value: Union[int, float]
    timestamp: datetime
    labels: Dict[str, str] = field(default_factory=dict)


# name -> (type, description, label names)
RENDER_METRICS = {
    'features_rendered_total': ('counter', 'Features handed to the rasterizer', ['layer']),
    'layer_errors_total': ('counter', 'Errors caught per layer and category', ['layer', 'category']),
    'tiles_written_total': ('counter', 'Tiles written', ['zoom']),
    'meta_tiles_written_total': ('counter', 'Meta-tiles written', ['zoom']),
    'db_rows_total': ('counter', 'Rows fetched from databases', ['layer']),
    'regions_total': ('counter', 'Regions rendered', ['status']),
    'region_duration_seconds': ('histogram', 'Duration of a region render', ['zoom']),
    'run_duration_seconds': ('histogram', 'Duration of a render run', ['render_mode']),
    'regions_in_flight': ('gauge', 'Regions currently rendering', []),
}


class MetricsCollector:
    """
    Metrics collection for the tile renderer.

    Args:
        prometheus_gateway: Push gateway URL used by push_to_prometheus_gateway
        buffer_size: Number of recent values kept for the JSON export
    """

    def __init__(self, prometheus_gateway: Optional[str] = None, buffer_size: int = 10000):
        self.prometheus_gateway = prometheus_gateway
        self.logger = structlog.get_logger(component="MetricsCollector")

        self.metrics_buffer = deque(maxlen=buffer_size)
        self.lock = threading.RLock()
        self.start_time = time.time()
        self.collection_errors = 0

        self.registry = CollectorRegistry()
        self.counters: Dict[str, Counter] = {}
        self.histograms: Dict[str, Histogram] = {}
        self.gauges: Dict[str, Gauge] = {}
        self._gauge_values: Dict[str, float] = {}

        for name, (metric_type, description, labels) in RENDER_METRICS.items():
            self._create_metric(metric_type, name, description, labels)

    def _create_metric(self, metric_type: str, name: str, description: str, labels: List[str]) -> None:
        if metric_type == 'counter':
            self.counters[name] = Counter(name, description, labels, registry=self.registry)
        elif metric_type == 'histogram':
            self.histograms[name] = Histogram(name, description, labels, registry=self.registry)
        elif metric_type == 'gauge':
            self.gauges[name] = Gauge(name, description, labels, registry=self.registry)
        else:
            raise ValueError(f"Unknown metric type {metric_type!r}")

    def _buffer(self, name: str, value: Union[int, float], labels: Dict[str, str]) -> None:
        self.metrics_buffer.append(MetricValue(
            name=name,
            value=value,
            timestamp=datetime.now(timezone.utc),
            labels=labels
        ))

    @staticmethod
    def _labelled(metric, labels: Dict[str, str]):
        return metric.labels(**labels) if labels else metric

    def increment_counter(self, name: str, value: Union[int, float] = 1, labels: Dict[str, str] = None) -> None:
        """
        Increment a counter metric.

        Args:
            name: Metric name, one of RENDER_METRICS
            value: Value to increment by
            labels: Metric labels
        """
        labels = {k: str(v) for k, v in (labels or {}).items()}
        with self.lock:
            self._buffer(name, value, labels)
            metric = self.counters.get(name)
            if metric is None:
                self.collection_errors += 1
                self.logger.warning("Unknown counter", metric_name=name)
                return
            self._labelled(metric, labels).inc(value)

    def record_histogram(self, name: str, value: Union[int, float], labels: Dict[str, str] = None) -> None:
        labels = {k: str(v) for k, v in (labels or {}).items()}
        with self.lock:
            self._buffer(name, value, labels)
            metric = self.histograms.get(name)
            if metric is None:
                self.collection_errors += 1
                self.logger.warning("Unknown histogram", metric_name=name)
                return
            self._labelled(metric, labels).observe(value)

    def adjust_gauge(self, name: str, delta: Union[int, float]) -> None:
        """Increment (or decrement) an unlabelled gauge."""
        with self.lock:
            self._gauge_values[name] = self._gauge_values.get(name, 0) + delta
            self._buffer(name, self._gauge_values[name], {})
            self.gauges[name].inc(delta)

    def record_timing(self, name: str, duration: float, labels: Dict[str, str] = None) -> None:
        """Record a duration in seconds."""
        self.record_histogram(name, duration, labels)

    def time_function(self, name: str, labels: Dict[str, str] = None):
        """
        Decorator to time function execution.

        Args:
            name: Histogram name
            labels: Metric labels

        Returns:
            Decorator function
        """
        def decorator(func: Callable) -> Callable:
            def wrapper(*args, **kwargs):
                start_time = time.perf_counter()
                try:
                    return func(*args, **kwargs)
                finally:
                    self.record_timing(name, time.perf_counter() - start_time, labels)
            return wrapper
        return decorator

    def get_metric_value(self, name: str, labels: Dict[str, str] = None) -> Optional[float]:
        """Current value of a counter or gauge sample, None if never recorded."""
        labels = {k: str(v) for k, v in (labels or {}).items()}
        return self.registry.get_sample_value(name, labels)

    def get_system_health(self) -> Dict[str, Any]:
        """Collector state for diagnostics."""
        return {
            'status': 'healthy' if self.collection_errors == 0 else 'degraded',
            'uptime_seconds': time.time() - self.start_time,
            'metrics_buffer_size': len(self.metrics_buffer),
            'collection_errors': self.collection_errors,
        }

    def export_metrics(self, format: str = "json") -> str:
        """
        Export metrics.

        Args:
            format: "json" for the recent values buffer, "prometheus" for the
                text exposition format

        Raises:
            ValueError: For unsupported formats
        """
        if format.lower() == "json":
            with self.lock:
                recent_metrics = [
                    {
                        'name': m.name,
                        'value': m.value,
                        'timestamp': m.timestamp.isoformat(),
                        'labels': m.labels,
                    }
                    for m in self.metrics_buffer
                ]
            export_data = {
                'export_timestamp': datetime.now(timezone.utc).isoformat(),
                'metrics_count': len(recent_metrics),
                'metrics': recent_metrics
            }
            return json.dumps(export_data, indent=2)

        if format.lower() == "prometheus":
            return generate_latest(self.registry).decode('utf-8')

        raise ValueError(f"Unsupported export format: {format}")

    def push_to_prometheus_gateway(self, job_name: str = "geotile_render") -> bool:
        """Push metrics to the Prometheus push gateway."""
        if not self.prometheus_gateway:
            return False

        try:
            push_to_gateway(self.prometheus_gateway, job=job_name, registry=self.registry)
            self.logger.info(
                "Pushed metrics to Prometheus gateway",
                gateway=self.prometheus_gateway,
                job=job_name
            )
            return True
        except OSError as e:
            self.logger.error("Failed to push metrics to Prometheus gateway", error=str(e))
            return False
