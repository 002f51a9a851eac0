"""Tests for in-process metrics and spans."""

import asyncio

import pytest

from bulwark.core.errors import ServerError
from bulwark.core.models import OperationDescriptor, Response
from bulwark.observability.metrics import MetricsRegistry, PipelineMetrics, get_metrics_registry, span


@pytest.fixture
def registry():
    return MetricsRegistry()


class TestCounter:
    def test_labelled_increments(self, registry):
        counter = registry.counter("requests_total", "Requests", ["endpoint"])
        counter.labels(endpoint="jira").inc()
        counter.labels(endpoint="jira").inc(2)
        counter.labels(endpoint="qdrant").inc()

        assert counter.labels(endpoint="jira").value == 3
        assert counter.labels(endpoint="qdrant").value == 1

    def test_cannot_decrease(self, registry):
        with pytest.raises(ValueError):
            registry.counter("c").labels().inc(-1)

    def test_get_or_create(self, registry):
        assert registry.counter("c") is registry.counter("c")


class TestGauge:
    def test_inc_dec_set(self, registry):
        gauge = registry.gauge("in_flight", labels=["operation"])
        child = gauge.labels(operation="issue.get")
        child.inc()
        child.inc()
        child.dec()
        assert child.value == 1
        child.set(7)
        assert child.value == 7


class TestHistogram:
    def test_observe(self, registry):
        hist = registry.histogram("latency", buckets=(0.1, 1.0))
        child = hist.labels()
        child.observe(0.05)
        child.observe(0.5)

        data = child.data
        assert data["count"] == 2
        assert data["sum"] == pytest.approx(0.55)
        assert data["buckets"][0.1] == 1
        assert data["buckets"][1.0] == 2


class TestPrometheusExport:
    def test_text_format(self, registry):
        registry.counter("ops_total", "Operations", labels=["outcome"]).labels(outcome="ok").inc()
        registry.histogram("dur", buckets=(1.0,)).labels().observe(0.2)

        text = registry.export_prometheus()

        assert "# HELP ops_total Operations" in text
        assert "# TYPE ops_total counter" in text
        assert 'ops_total{outcome="ok"} 1.0' in text
        assert "# TYPE dur histogram" in text
        assert 'dur_bucket{le="1.0"} 1' in text
        assert 'dur_bucket{le="+Inf"} 1' in text
        assert "dur_count 1" in text
        assert text.endswith("\n")

    def test_metrics_sorted_and_grouped(self, registry):
        registry.gauge("zeta").set(1)
        registry.counter("alpha", labels=["k"]).labels(k="b").inc()
        registry.counter("alpha", labels=["k"]).labels(k="a").inc()

        lines = registry.export_prometheus().splitlines()

        assert lines == [
            "# TYPE alpha counter",
            'alpha{k="a"} 1.0',
            'alpha{k="b"} 1.0',
            "# TYPE zeta gauge",
            "zeta 1.0",
        ]

    def test_label_values_escaped(self, registry):
        registry.counter("errs", labels=["message"]).labels(message='bad "id"\nline').inc()
        assert 'errs{message="bad \\"id\\"\\nline"} 1.0' in registry.export_prometheus()

    def test_names_filter(self, registry):
        registry.counter("kept").inc()
        registry.counter("dropped").inc()
        text = registry.export_prometheus(["kept", "unknown"])
        assert "kept 1.0" in text
        assert "dropped" not in text

    def test_empty_registry(self, registry):
        assert registry.export_prometheus() == ""

    def test_type_conflict_rejected(self, registry):
        registry.counter("shared")
        with pytest.raises(ValueError):
            registry.gauge("shared")


class TestPipelineMetrics:
    def test_metric_names(self, registry):
        metrics = PipelineMetrics(registry)
        assert registry.names == metrics.names == [
            "bulwark_attempt_duration_seconds",
            "bulwark_attempts_total",
            "bulwark_in_flight_operations",
            "bulwark_operation_duration_seconds",
            "bulwark_operations_total",
        ]

    def test_default_registry(self):
        assert PipelineMetrics().registry is get_metrics_registry()

    def test_export_covers_only_pipeline_set(self, registry):
        registry.counter("unrelated_total").inc()
        metrics = PipelineMetrics(registry)
        metrics.operations.labels(operation="issue.get", outcome="ok").inc()

        text = metrics.export()

        assert 'bulwark_operations_total{operation="issue.get",outcome="ok"} 1.0' in text
        assert "unrelated_total" not in text
        assert set(metrics.collect()) == set(metrics.names)

    @pytest.mark.asyncio
    async def test_export_after_pipeline_run(self, make_pipeline, transport, metrics):
        transport.script = [Response(503)]
        await make_pipeline().execute(OperationDescriptor("issue.get"))

        text = metrics.export()

        assert 'bulwark_attempts_total{operation="issue.get",outcome="server_error"} 1.0' in text
        assert 'bulwark_attempts_total{operation="issue.get",outcome="ok"} 1.0' in text
        assert 'bulwark_in_flight_operations{operation="issue.get"} 0.0' in text
        assert 'bulwark_attempt_duration_seconds_count{operation="issue.get"} 2' in text


class TestSpan:
    def test_ok_outcome_observes_duration(self, registry):
        child = registry.histogram("span_seconds").labels()
        with span("pipeline.attempt", child, attempt=1) as s:
            pass
        assert s.outcome == "ok"
        assert s.duration >= 0
        assert child.data["count"] == 1

    def test_error_outcome_propagates(self, registry):
        child = registry.histogram("span_seconds").labels()
        with pytest.raises(ServerError):
            with span("pipeline.attempt", child) as s:
                raise ServerError("down", status=503)
        assert s.outcome == "error"
        assert child.data["count"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_outcome(self):
        holder = {}

        async def work():
            with span("pipeline.operation") as s:
                holder["span"] = s
                await asyncio.sleep(10)

        task = asyncio.create_task(work())
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert holder["span"].outcome == "cancelled"
