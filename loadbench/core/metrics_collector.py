"""
Metrics Collector

Accumulates samples into named metric series and aggregates them on demand.
"""

import logging
import math
import threading
import time
from typing import Dict, Iterable, List, Mapping, Optional

from loadbench.exceptions import MetricKindMismatch
from loadbench.models import (
    DEFAULT_PERCENTILES,
    CounterAggregate,
    GaugeAggregate,
    MetricAggregate,
    MetricKind,
    MetricsSnapshot,
    RateAggregate,
    Sample,
    TrendAggregate,
    format_metric_selector,
    parse_metric_selector,
    percentile_key,
)

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


def nearest_rank(sorted_values: List[float], p: float) -> float:
    """
    Nearest-rank percentile of an already sorted list.

    Rank is ``ceil(p/100 * n)`` clamped to ``[1, n]``.
    """
    n = len(sorted_values)
    if n == 0:
        return 0.0
    rank = math.ceil((p / 100.0) * n)
    rank = max(1, min(rank, n))
    return float(sorted_values[rank - 1])


class MetricSeries:
    """All samples recorded under one metric name."""

    def __init__(self, name: str, kind: MetricKind):
        self.name = name
        self.kind = kind
        self.samples: List[Sample] = []

    def aggregate(
        self,
        tag_filter: Optional[Mapping[str, str]] = None,
        percentiles: Iterable[float] = (),
    ) -> MetricAggregate:
        samples = self.samples
        if tag_filter:
            samples = [s for s in samples if s.matches(tag_filter)]
        values = [s.value for s in samples]

        if self.kind == MetricKind.COUNTER:
            return CounterAggregate(count=float(sum(values)), samples=len(values))

        if self.kind == MetricKind.RATE:
            passes = sum(1 for v in values if v)
            fails = len(values) - passes
            rate = passes / len(values) if values else 0.0
            return RateAggregate(rate=rate, passes=passes, fails=fails)

        if self.kind == MetricKind.GAUGE:
            if not values:
                return GaugeAggregate()
            return GaugeAggregate(
                value=values[-1], min=min(values), max=max(values), samples=len(values)
            )

        # Trend: stable sort keeps insertion order among equal values.
        ordered = sorted(values)
        wanted = list(DEFAULT_PERCENTILES) + [
            p for p in percentiles if p not in DEFAULT_PERCENTILES
        ]
        if not ordered:
            return TrendAggregate(percentiles={percentile_key(p): 0.0 for p in wanted})
        return TrendAggregate(
            count=len(ordered),
            min=ordered[0],
            max=ordered[-1],
            avg=sum(ordered) / len(ordered),
            med=nearest_rank(ordered, 50.0),
            percentiles={percentile_key(p): nearest_rank(ordered, p) for p in wanted},
        )


class MetricsCollector:
    """
    Collects and aggregates metric samples for one run.

    Features:
    - Explicit kind declaration (counter, rate, trend, gauge)
    - Tag-filtered sub-metrics for thresholds such as ``http_req_duration{scenario:x}``
    - Nearest-rank percentiles
    - Thread-safe recording
    """

    def __init__(self):
        self._series: Dict[str, MetricSeries] = {}
        self._lock = threading.Lock()
        self.start_time_ms: Optional[int] = None

    def start(self) -> None:
        """Mark the start of collection."""
        self.start_time_ms = _now_ms()
        logger.debug("Metrics collection started")

    def declare(self, name: str, kind: MetricKind) -> None:
        """
        Declare the kind of a metric before first use.

        Raises:
            MetricKindMismatch: if ``name`` is already declared with another kind
        """
        kind = MetricKind(kind)
        with self._lock:
            self._declare_locked(name, kind)

    def _declare_locked(self, name: str, kind: MetricKind) -> MetricSeries:
        series = self._series.get(name)
        if series is None:
            series = MetricSeries(name, kind)
            self._series[name] = series
        elif series.kind != kind:
            raise MetricKindMismatch(name, series.kind.value, kind.value)
        return series

    def kind_of(self, name: str) -> Optional[MetricKind]:
        series = self._series.get(name)
        return series.kind if series else None

    def record(
        self,
        name: str,
        value: float,
        tags: Optional[Mapping[str, str]] = None,
        kind: Optional[MetricKind] = None,
    ) -> Sample:
        """
        Record a single sample.

        Args:
            name: Metric name
            value: Observed value (Rate samples: truthy means pass)
            tags: Optional tags used by tag-filtered thresholds
            kind: Declares the metric on first use; must match on later calls

        Raises:
            MetricKindMismatch: on a kind conflict, or if the metric was never
                declared and no kind was given
        """
        with self._lock:
            if kind is not None:
                series = self._declare_locked(name, MetricKind(kind))
            else:
                series = self._series.get(name)
                if series is None:
                    raise MetricKindMismatch(name, "undeclared", None)
            if series.kind == MetricKind.COUNTER and value < 0:
                raise ValueError(f"Counter {name!r} cannot decrease (got {value})")
            if series.kind == MetricKind.RATE:
                value = 1.0 if value else 0.0
            sample = Sample(
                metric_name=name,
                value=float(value),
                timestamp_ms=_now_ms(),
                tags=dict(tags or {}),
            )
            series.samples.append(sample)
            return sample

    def add_counter(
        self, name: str, value: float = 1, tags: Optional[Mapping[str, str]] = None
    ) -> Sample:
        return self.record(name, value, tags, kind=MetricKind.COUNTER)

    def add_rate(
        self, name: str, passed: bool, tags: Optional[Mapping[str, str]] = None
    ) -> Sample:
        return self.record(name, 1.0 if passed else 0.0, tags, kind=MetricKind.RATE)

    def add_trend(
        self, name: str, value: float, tags: Optional[Mapping[str, str]] = None
    ) -> Sample:
        return self.record(name, value, tags, kind=MetricKind.TREND)

    def set_gauge(
        self, name: str, value: float, tags: Optional[Mapping[str, str]] = None
    ) -> Sample:
        return self.record(name, value, tags, kind=MetricKind.GAUGE)

    def metric_names(self) -> List[str]:
        with self._lock:
            return sorted(self._series)

    def sample_count(self, name: str) -> int:
        with self._lock:
            series = self._series.get(name)
            return len(series.samples) if series else 0

    def snapshot(
        self,
        selectors: Iterable[str] = (),
        percentiles: Iterable[float] = (),
    ) -> MetricsSnapshot:
        """
        Aggregate every metric without modifying anything.

        Args:
            selectors: Extra ``name{tag:value}`` sub-metrics to include. Selectors
                whose metric was never recorded are left out.
            percentiles: Extra Trend percentiles beyond p(50/90/95/99)

        Returns:
            MetricsSnapshot keyed by metric name / selector
        """
        extra = [float(p) for p in percentiles]
        with self._lock:
            out: Dict[str, MetricAggregate] = {
                name: series.aggregate(percentiles=extra)
                for name, series in self._series.items()
            }
            for selector in selectors:
                name, tag_filter = parse_metric_selector(selector)
                series = self._series.get(name)
                if series is None:
                    continue
                key = format_metric_selector(name, tag_filter)
                if key not in out:
                    out[key] = series.aggregate(tag_filter, extra)
                if selector != key:
                    out[selector] = out[key]
        return MetricsSnapshot(timestamp_ms=_now_ms(), metrics=out)

    def clear(self) -> None:
        """Drop all samples (declarations are kept)."""
        with self._lock:
            for series in self._series.values():
                series.samples.clear()
        logger.debug("Metric samples cleared")
