"""
Data models for loadbench.

This package contains Pydantic models for:
- Load test options (stages, scenarios, thresholds)
- Metric samples and aggregates
- Run state, threshold verdicts and reports
"""

from loadbench.models.test_config import (
    DEFAULT_SCENARIO,
    DEFAULT_WORKLOAD,
    ExecutorType,
    LoadTestOptions,
    ScenarioConfig,
    Stage,
    ThresholdConfig,
    ThresholdExpression,
    parse_duration_ms,
)

from loadbench.models.metrics import (
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

from loadbench.models.test_result import (
    RunState,
    ScenarioSummary,
    TestReport,
    TestStatus,
    ThresholdResult,
    ThresholdVerdict,
)

__all__ = [
    # test_config
    "DEFAULT_SCENARIO",
    "DEFAULT_WORKLOAD",
    "ExecutorType",
    "LoadTestOptions",
    "ScenarioConfig",
    "Stage",
    "ThresholdConfig",
    "ThresholdExpression",
    "parse_duration_ms",
    # metrics
    "DEFAULT_PERCENTILES",
    "CounterAggregate",
    "GaugeAggregate",
    "MetricAggregate",
    "MetricKind",
    "MetricsSnapshot",
    "RateAggregate",
    "Sample",
    "TrendAggregate",
    "format_metric_selector",
    "parse_metric_selector",
    "percentile_key",
    # test_result
    "RunState",
    "ScenarioSummary",
    "TestReport",
    "TestStatus",
    "ThresholdResult",
    "ThresholdVerdict",
]
