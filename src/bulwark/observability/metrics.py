"""Prometheus-style metrics and timed spans for the execution core.

The request pipeline records into a :class:`PipelineMetrics` set: operation
and attempt counters by outcome, duration histograms and an in-flight gauge.
``PipelineMetrics.export()`` renders that set in the Prometheus text
exposition format; ``MetricsRegistry.export_prometheus()`` renders every
metric in a registry.

Metric types:
- Counter: Monotonically increasing value
- Gauge: Value that can go up or down
- Histogram: Cumulative bucket counts plus sum and count

A ``Span`` wraps a block of work: it logs ``<name>.start`` and
``<name>.end`` through structlog and observes its duration into a histogram.
The request pipeline opens one span per logical operation and one per
physical attempt.

Example:
    >>> metrics = PipelineMetrics(MetricsRegistry())
    >>> with span("pipeline.attempt", metrics.attempt_duration.labels(operation="issue.get")):
    ...     ...
    >>> print(metrics.export())
"""

from __future__ import annotations

import asyncio
import math
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from bulwark.core.logging import get_logger

logger = get_logger(__name__)

# (sample name, labels, value)
Sample = tuple[str, dict[str, str], float]


def _format_value(value: float) -> str:
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if math.isnan(value):
        return "NaN"
    return repr(float(value))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


def _format_labels(labels: dict[str, str]) -> str:
    if not labels:
        return ""
    return "{" + ",".join(f'{k}="{_escape(v)}"' for k, v in labels.items()) + "}"


@dataclass(frozen=True)
class Labels:
    """Immutable, sorted label set; usable as a dict key."""

    pairs: tuple[tuple[str, str], ...] = ()

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> Labels:
        if not d:
            return cls()
        return cls(tuple(sorted((k, str(v)) for k, v in d.items())))

    def to_dict(self) -> dict[str, str]:
        return dict(self.pairs)


class Metric(ABC):
    """Named metric holding one value per label set."""

    type_name: str = "untyped"

    def __init__(self, name: str, description: str = "", labels: list[str] | None = None):
        self.name = name
        self.description = description
        self.label_names = list(labels or [])
        self._lock = threading.Lock()

    @abstractmethod
    def samples(self) -> list[Sample]:
        """Exposition samples, ordered by label set."""


class _ScalarMetric(Metric):
    def __init__(self, name: str, description: str = "", labels: list[str] | None = None):
        super().__init__(name, description, labels)
        self._values: dict[Labels, float] = {}

    def _add(self, labels: Labels, value: float) -> None:
        with self._lock:
            self._values[labels] = self._values.get(labels, 0.0) + value

    def _get(self, labels: Labels) -> float:
        with self._lock:
            return self._values.get(labels, 0.0)

    def samples(self) -> list[Sample]:
        with self._lock:
            items = sorted(self._values.items(), key=lambda kv: kv[0].pairs)
        return [(self.name, labels.to_dict(), value) for labels, value in items]


class Counter(_ScalarMetric):
    """A monotonically increasing counter."""

    type_name = "counter"

    def labels(self, **kwargs: str) -> CounterChild:
        return CounterChild(self, Labels.from_dict(kwargs))

    def inc(self, value: float = 1.0) -> None:
        self.labels().inc(value)


class CounterChild:
    """Counter with fixed labels."""

    def __init__(self, counter: Counter, labels: Labels):
        self._counter = counter
        self._labels = labels

    def inc(self, value: float = 1.0) -> None:
        if value < 0:
            raise ValueError("Counter can only increase")
        self._counter._add(self._labels, value)

    @property
    def value(self) -> float:
        return self._counter._get(self._labels)


class Gauge(_ScalarMetric):
    """A value that can go up or down (in-flight operations)."""

    type_name = "gauge"

    def labels(self, **kwargs: str) -> GaugeChild:
        return GaugeChild(self, Labels.from_dict(kwargs))

    def set(self, value: float) -> None:
        self.labels().set(value)

    def _set(self, labels: Labels, value: float) -> None:
        with self._lock:
            self._values[labels] = float(value)


class GaugeChild:
    """Gauge with fixed labels."""

    def __init__(self, gauge: Gauge, labels: Labels):
        self._gauge = gauge
        self._labels = labels

    def set(self, value: float) -> None:
        self._gauge._set(self._labels, value)

    def inc(self, value: float = 1.0) -> None:
        self._gauge._add(self._labels, value)

    def dec(self, value: float = 1.0) -> None:
        self._gauge._add(self._labels, -value)

    @property
    def value(self) -> float:
        return self._gauge._get(self._labels)


class Histogram(Metric):
    """A distribution of values (latency per operation or attempt)."""

    type_name = "histogram"

    DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)

    def __init__(
        self,
        name: str,
        description: str = "",
        labels: list[str] | None = None,
        buckets: tuple[float, ...] | None = None,
    ):
        super().__init__(name, description, labels)
        bounds = sorted(set(buckets or self.DEFAULT_BUCKETS))
        if not bounds or not math.isinf(bounds[-1]):
            bounds.append(math.inf)
        self._bounds = tuple(bounds)
        self._data: dict[Labels, dict[str, Any]] = {}

    def labels(self, **kwargs: str) -> HistogramChild:
        return HistogramChild(self, Labels.from_dict(kwargs))

    def observe(self, value: float) -> None:
        self.labels().observe(value)

    def _empty(self) -> dict[str, Any]:
        return {"buckets": dict.fromkeys(self._bounds, 0), "sum": 0.0, "count": 0}

    def _observe(self, labels: Labels, value: float) -> None:
        with self._lock:
            data = self._data.setdefault(labels, self._empty())
            data["sum"] += value
            data["count"] += 1
            for bound in self._bounds:
                if value <= bound:
                    data["buckets"][bound] += 1

    def _get(self, labels: Labels) -> dict[str, Any]:
        with self._lock:
            data = self._data.get(labels) or self._empty()
            return {"buckets": dict(data["buckets"]), "sum": data["sum"], "count": data["count"]}

    def samples(self) -> list[Sample]:
        with self._lock:
            items = sorted(self._data.items(), key=lambda kv: kv[0].pairs)
            out: list[Sample] = []
            for labels, data in items:
                base = labels.to_dict()
                for bound, count in data["buckets"].items():
                    out.append((f"{self.name}_bucket", {**base, "le": _format_value(bound)}, count))
                out.append((f"{self.name}_sum", base, data["sum"]))
                out.append((f"{self.name}_count", base, data["count"]))
            return out


class HistogramChild:
    """Histogram with fixed labels."""

    def __init__(self, histogram: Histogram, labels: Labels):
        self._histogram = histogram
        self._labels = labels

    def observe(self, value: float) -> None:
        self._histogram._observe(self._labels, value)

    @property
    def data(self) -> dict[str, Any]:
        """Snapshot: ``{"buckets": {bound: cumulative_count}, "sum", "count"}``."""
        return self._histogram._get(self._labels)


class MetricsRegistry:
    """Get-or-create owner of named metrics.

    Asking for an existing name with a different metric type raises
    ``ValueError``.
    """

    def __init__(self):
        self._metrics: dict[str, Metric] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, cls: type[Metric], name: str, *args: Any) -> Any:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                metric = self._metrics[name] = cls(name, *args)
            elif not isinstance(metric, cls):
                raise ValueError(f"Metric '{name}' is already registered as a {metric.type_name}")
            return metric

    def counter(self, name: str, description: str = "", labels: list[str] | None = None) -> Counter:
        return self._get_or_create(Counter, name, description, labels)

    def gauge(self, name: str, description: str = "", labels: list[str] | None = None) -> Gauge:
        return self._get_or_create(Gauge, name, description, labels)

    def histogram(
        self,
        name: str,
        description: str = "",
        labels: list[str] | None = None,
        buckets: tuple[float, ...] | None = None,
    ) -> Histogram:
        return self._get_or_create(Histogram, name, description, labels, buckets)

    @property
    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._metrics)

    def _select(self, names: Iterable[str] | None) -> list[Metric]:
        with self._lock:
            wanted = sorted(self._metrics) if names is None else sorted(set(names) & set(self._metrics))
            return [self._metrics[name] for name in wanted]

    def collect(self, names: Iterable[str] | None = None) -> dict[str, list[Sample]]:
        """Samples per metric name; ``names`` narrows the selection."""
        return {metric.name: metric.samples() for metric in self._select(names)}

    def export_prometheus(self, names: Iterable[str] | None = None) -> str:
        """Render metrics in the Prometheus text exposition format.

        Each metric gets ``# HELP`` / ``# TYPE`` lines followed by its
        samples; metrics without samples are still announced.
        """
        lines: list[str] = []
        for metric in self._select(names):
            if metric.description:
                lines.append(f"# HELP {metric.name} {_escape(metric.description)}")
            lines.append(f"# TYPE {metric.name} {metric.type_name}")
            for sample_name, labels, value in metric.samples():
                rendered = value if isinstance(value, int) else _format_value(value)
                lines.append(f"{sample_name}{_format_labels(labels)} {rendered}")
        return "\n".join(lines) + "\n" if lines else ""


_default_registry = MetricsRegistry()


def get_metrics_registry() -> MetricsRegistry:
    """Process-wide registry used by pipelines built without one."""
    return _default_registry


class PipelineMetrics:
    """The metric set a request pipeline records into."""

    def __init__(self, registry: MetricsRegistry | None = None):
        self.registry = registry or get_metrics_registry()

        self.operations = self.registry.counter(
            "bulwark_operations_total",
            "Logical operations by outcome",
            ["operation", "outcome"],
        )
        self.attempts = self.registry.counter(
            "bulwark_attempts_total",
            "Physical attempts by outcome",
            ["operation", "outcome"],
        )
        self.operation_duration = self.registry.histogram(
            "bulwark_operation_duration_seconds",
            "Logical operation duration in seconds, including retries",
            ["operation"],
        )
        self.attempt_duration = self.registry.histogram(
            "bulwark_attempt_duration_seconds",
            "Physical attempt duration in seconds",
            ["operation"],
        )
        self.in_flight = self.registry.gauge(
            "bulwark_in_flight_operations",
            "Logical operations currently executing",
            ["operation"],
        )

    @property
    def names(self) -> list[str]:
        return sorted(
            m.name
            for m in (
                self.operations,
                self.attempts,
                self.operation_duration,
                self.attempt_duration,
                self.in_flight,
            )
        )

    def collect(self) -> dict[str, list[Sample]]:
        return self.registry.collect(self.names)

    def export(self) -> str:
        """Prometheus text for this metric set only."""
        return self.registry.export_prometheus(self.names)


class Span:
    """Timed block that logs start/end and observes a histogram.

    The outcome is ``ok`` unless the block raised; ``cancelled`` for
    ``asyncio.CancelledError``, otherwise ``error`` with the error kind when
    the exception carries one. Exceptions are never suppressed.
    """

    def __init__(self, name: str, histogram: HistogramChild | None = None, **fields: Any):
        self.name = name
        self.fields = fields
        self._histogram = histogram
        self._start: float | None = None
        self.duration: float | None = None
        self.outcome: str | None = None

    def __enter__(self) -> Span:
        self._start = time.perf_counter()
        logger.debug(f"{self.name}.start", **self.fields)
        return self

    def __exit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        self.duration = time.perf_counter() - self._start
        if self._histogram is not None:
            self._histogram.observe(self.duration)

        fields = dict(self.fields, duration_seconds=round(self.duration, 6))
        if exc is None:
            self.outcome = "ok"
        elif isinstance(exc, asyncio.CancelledError):
            self.outcome = "cancelled"
        else:
            self.outcome = "error"
            kind = getattr(exc, "kind", None)
            fields["error"] = getattr(kind, "value", None) or exc.__class__.__name__
        logger.debug(f"{self.name}.end", outcome=self.outcome, **fields)


def span(name: str, histogram: HistogramChild | None = None, **fields: Any) -> Span:
    """Open a ``Span`` (usable as ``with span(...):``)."""
    return Span(name, histogram, **fields)


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
