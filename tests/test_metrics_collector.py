"""
Tests for MetricsCollector.

Validates kind declaration, aggregation per kind, nearest-rank percentiles,
tag-filtered selectors and snapshot purity.
"""

import threading

import pytest

from loadbench.core.metrics_collector import MetricsCollector, nearest_rank
from loadbench.exceptions import MetricKindMismatch
from loadbench.models import (
    CounterAggregate,
    GaugeAggregate,
    MetricKind,
    RateAggregate,
    TrendAggregate,
)


def test_collector_creation(recorder: MetricsCollector) -> None:
    assert recorder.start_time_ms is not None
    assert recorder.metric_names() == []
    assert recorder.snapshot().metrics == {}


def test_redeclare_with_other_kind_raises(recorder: MetricsCollector) -> None:
    recorder.declare("latency", MetricKind.TREND)
    recorder.declare("latency", MetricKind.TREND)

    with pytest.raises(MetricKindMismatch) as exc:
        recorder.declare("latency", MetricKind.COUNTER)
    assert exc.value.declared == "trend"
    assert exc.value.requested == "counter"


def test_record_with_conflicting_kind_raises(recorder: MetricsCollector) -> None:
    recorder.add_counter("errors")
    with pytest.raises(MetricKindMismatch):
        recorder.add_rate("errors", True)


def test_undeclared_metric_without_kind_raises(recorder: MetricsCollector) -> None:
    with pytest.raises(MetricKindMismatch):
        recorder.record("mystery", 1.0)


def test_counter_rejects_negative(recorder: MetricsCollector) -> None:
    with pytest.raises(ValueError):
        recorder.add_counter("iterations", -1)


def test_counter_aggregate(recorder: MetricsCollector) -> None:
    recorder.add_counter("iterations")
    recorder.add_counter("iterations", 4)

    agg = recorder.snapshot().get("iterations")
    assert isinstance(agg, CounterAggregate)
    assert agg.count == 5
    assert agg.samples == 2


def test_rate_aggregate(recorder: MetricsCollector) -> None:
    for passed in (True, True, False, True):
        recorder.add_rate("checks", passed)
    recorder.record("checks", 7)  # non-zero counts as a pass

    agg = recorder.snapshot().get("checks")
    assert isinstance(agg, RateAggregate)
    assert agg.passes == 4
    assert agg.fails == 1
    assert agg.rate == pytest.approx(0.8)


def test_gauge_aggregate(recorder: MetricsCollector) -> None:
    for v in (3, 10, 6):
        recorder.set_gauge("vus", v)

    agg = recorder.snapshot().get("vus")
    assert isinstance(agg, GaugeAggregate)
    assert (agg.value, agg.min, agg.max) == (6, 3, 10)


def test_trend_percentiles_nearest_rank(recorder: MetricsCollector) -> None:
    for v in range(100, 0, -1):
        recorder.add_trend("http_req_duration", float(v))

    agg = recorder.snapshot(percentiles=[99.9]).get("http_req_duration")
    assert isinstance(agg, TrendAggregate)
    assert agg.count == 100
    assert agg.min == 1
    assert agg.max == 100
    assert agg.avg == pytest.approx(50.5)
    assert agg.med == 50
    assert agg.percentiles["p(90)"] == 90
    assert agg.percentiles["p(95)"] == 95
    assert agg.percentiles["p(99)"] == 99
    assert agg.percentiles["p(99.9)"] == 100


def test_nearest_rank_edges() -> None:
    assert nearest_rank([], 95) == 0.0
    assert nearest_rank([7.0], 0) == 7.0
    assert nearest_rank([1.0, 2.0, 3.0], 100) == 3.0
    assert nearest_rank([1.0, 2.0, 3.0, 4.0], 50) == 2.0


def test_declared_metric_without_samples_aggregates_to_zero(
    recorder: MetricsCollector,
) -> None:
    recorder.declare("errors", MetricKind.COUNTER)
    recorder.declare("latency", MetricKind.TREND)

    snap = recorder.snapshot()
    assert snap.get("errors").count == 0
    assert snap.get("latency").count == 0
    assert snap.get("latency").percentiles["p(95)"] == 0.0


def test_tag_filtered_selectors(recorder: MetricsCollector) -> None:
    recorder.add_trend("http_req_duration", 100, {"scenario": "morning_rush"})
    recorder.add_trend("http_req_duration", 900, {"scenario": "lunch_spike"})
    recorder.add_trend("http_req_duration", 200, {"scenario": "morning_rush"})

    snap = recorder.snapshot(
        selectors=[
            "http_req_duration{scenario:morning_rush}",
            "http_req_duration{ scenario : lunch_spike }",
            "missing{scenario:morning_rush}",
        ]
    )

    assert snap.get("http_req_duration").count == 3
    morning = snap.get("http_req_duration{scenario:morning_rush}")
    assert morning.count == 2
    assert morning.max == 200
    # The selector as written and its canonical form point at the same aggregate.
    assert snap.get("http_req_duration{ scenario : lunch_spike }").max == 900
    assert "http_req_duration{scenario:lunch_spike}" in snap
    assert "missing{scenario:morning_rush}" not in snap


def test_snapshot_is_pure(recorder: MetricsCollector) -> None:
    recorder.add_trend("latency", 10)
    recorder.add_rate("ok", True)

    first = recorder.snapshot()
    second = recorder.snapshot()
    assert first.metrics == second.metrics
    assert recorder.sample_count("latency") == 1


def test_clear_keeps_declarations(recorder: MetricsCollector) -> None:
    recorder.add_counter("iterations", 3)
    recorder.clear()

    assert recorder.sample_count("iterations") == 0
    assert recorder.kind_of("iterations") == MetricKind.COUNTER
    assert recorder.snapshot().get("iterations").count == 0


def test_concurrent_recording_from_threads(recorder: MetricsCollector) -> None:
    def _work() -> None:
        for _ in range(500):
            recorder.add_counter("iterations")

    threads = [threading.Thread(target=_work) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert recorder.snapshot().get("iterations").count == 4000
