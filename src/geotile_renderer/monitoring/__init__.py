"""
Monitoring Module

Render statistics and Prometheus metrics.
"""

from .metrics import MetricsCollector
from .statistics import LayerStatistics, RunStatistics, format_elapsed

__all__ = [
    "MetricsCollector",
    "LayerStatistics",
    "RunStatistics",
    "format_elapsed",
]
