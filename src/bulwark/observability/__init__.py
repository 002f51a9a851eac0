"""Observability package for bulwark.

Key components:
- metrics: Prometheus-style counters, gauges, histograms and timed spans

Logging lives in ``bulwark.core.logging``.
"""

from .metrics import (
    Counter,
    Gauge,
    Histogram,
    MetricsRegistry,
    PipelineMetrics,
    Span,
    get_metrics_registry,
    span,
)

__all__ = [
    "Counter",
    "Gauge",
    "Histogram",
    "MetricsRegistry",
    "PipelineMetrics",
    "Span",
    "get_metrics_registry",
    "span",
]
