"""
Metrics Models

Defines the metric kinds, the raw Sample record and the immutable Pydantic
aggregates returned by ``MetricsCollector.snapshot()``.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Dict, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

# Percentiles every Trend aggregate carries.
DEFAULT_PERCENTILES: Tuple[float, ...] = (50.0, 90.0, 95.0, 99.0)

_SELECTOR = re.compile(r"^\s*(?P<name>[^{}\s]+)\s*(?:\{(?P<tags>[^{}]*)\})?\s*$")


class MetricKind(str, Enum):
    """How samples of a metric are aggregated."""

    COUNTER = "counter"
    RATE = "rate"
    TREND = "trend"
    GAUGE = "gauge"


@dataclass(frozen=True, slots=True)
class Sample:
    """A single observation. Immutable once recorded."""

    metric_name: str
    value: float
    timestamp_ms: int
    tags: Mapping[str, str] = field(default_factory=dict)

    def matches(self, tag_filter: Mapping[str, str]) -> bool:
        return all(self.tags.get(k) == v for k, v in tag_filter.items())


def percentile_key(p: float) -> str:
    """Canonical key for a percentile, e.g. ``p(95)`` or ``p(99.9)``."""
    return f"p({p:g})"


def parse_metric_selector(selector: str) -> Tuple[str, Dict[str, str]]:
    """
    Split ``name{tag:value,tag2:value}`` into the metric name and tag filter.

    A bare name yields an empty filter.
    """
    match = _SELECTOR.match(selector)
    if not match:
        raise ValueError(f"Invalid metric selector: {selector!r}")
    tags: Dict[str, str] = {}
    raw = match.group("tags")
    if raw is not None:
        for part in raw.split(","):
            part = part.strip()
            if not part:
                continue
            key, sep, value = part.partition(":")
            if not sep or not key.strip():
                raise ValueError(f"Invalid tag filter {part!r} in {selector!r}")
            tags[key.strip()] = value.strip()
    return match.group("name"), tags


def format_metric_selector(name: str, tags: Mapping[str, str]) -> str:
    if not tags:
        return name
    inner = ",".join(f"{k}:{v}" for k, v in sorted(tags.items()))
    return f"{name}{{{inner}}}"


class _Aggregate(BaseModel):
    model_config = ConfigDict(frozen=True)

    def stat(self, name: str) -> Optional[float]:
        """Look up a threshold statistic; None when this kind lacks it."""
        return None

    @property
    def empty(self) -> bool:
        """True when no sample contributed to this aggregate."""
        return False


class CounterAggregate(_Aggregate):
    """Sum of all recorded values."""

    kind: Literal["counter"] = "counter"
    count: float = Field(0.0, ge=0, description="Sum of recorded values")
    samples: int = Field(0, ge=0, description="Number of record calls")

    @property
    def empty(self) -> bool:
        return self.samples == 0

    def stat(self, name: str) -> Optional[float]:
        if name == "count":
            return self.count
        return None


class RateAggregate(_Aggregate):
    """Fraction of non-zero samples."""

    kind: Literal["rate"] = "rate"
    rate: float = Field(0.0, ge=0.0, le=1.0, description="passes / total")
    passes: int = Field(0, ge=0)
    fails: int = Field(0, ge=0)

    @property
    def total(self) -> int:
        return self.passes + self.fails

    @property
    def empty(self) -> bool:
        return self.total == 0

    def stat(self, name: str) -> Optional[float]:
        if name == "rate":
            return self.rate
        if name == "count":
            return float(self.passes)
        return None


class TrendAggregate(_Aggregate):
    """Distribution summary (values are usually milliseconds)."""

    kind: Literal["trend"] = "trend"
    count: int = Field(0, ge=0)
    min: float = 0.0
    max: float = 0.0
    avg: float = 0.0
    med: float = 0.0
    percentiles: Dict[str, float] = Field(
        default_factory=dict, description="p(N) -> value, nearest-rank"
    )

    @property
    def empty(self) -> bool:
        return self.count == 0

    def stat(self, name: str) -> Optional[float]:
        if name in ("min", "max", "avg", "med"):
            return getattr(self, name)
        if name == "count":
            return float(self.count)
        return self.percentiles.get(name)


class GaugeAggregate(_Aggregate):
    """Last recorded value, with the observed range."""

    kind: Literal["gauge"] = "gauge"
    value: float = 0.0
    min: float = 0.0
    max: float = 0.0
    samples: int = Field(0, ge=0)

    @property
    def empty(self) -> bool:
        return self.samples == 0

    def stat(self, name: str) -> Optional[float]:
        if name in ("value", "min", "max"):
            return getattr(self, name)
        return None


MetricAggregate = Annotated[
    Union[CounterAggregate, RateAggregate, TrendAggregate, GaugeAggregate],
    Field(discriminator="kind"),
]


class MetricsSnapshot(BaseModel):
    """
    Immutable view of every metric at one point in time.

    Keys are metric names, plus ``name{tag:value}`` selectors for any tag-filtered
    sub-metrics that were requested.
    """

    model_config = ConfigDict(frozen=True)

    timestamp_ms: int = Field(..., description="When the snapshot was taken")
    metrics: Dict[str, MetricAggregate] = Field(default_factory=dict)

    def get(self, selector: str) -> Optional[MetricAggregate]:
        return self.metrics.get(selector)

    def __contains__(self, selector: str) -> bool:
        return selector in self.metrics
