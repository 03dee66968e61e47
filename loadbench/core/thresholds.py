"""
Threshold Evaluator.

Decides the pass/fail outcome of a run from a metrics snapshot. Thresholds that
reference a metric which was never recorded fail with an ``UnknownMetric``
message instead of raising.
"""

import logging
from typing import Iterable, List, Optional, Sequence

from loadbench.exceptions import ConfigurationError, UnknownMetric
from loadbench.models import (
    MetricsSnapshot,
    ThresholdConfig,
    ThresholdResult,
    ThresholdVerdict,
    parse_metric_selector,
)

logger = logging.getLogger(__name__)


class ThresholdEvaluator:
    """
    Evaluates thresholds against metric snapshots.

    String expressions are parsed up front so malformed thresholds fail before
    the run starts.
    """

    def __init__(self, thresholds: Sequence[ThresholdConfig]):
        self.thresholds: List[ThresholdConfig] = list(thresholds)
        keys = set()
        for t in self.thresholds:
            try:
                parse_metric_selector(t.metric)
            except ValueError as e:
                raise ConfigurationError(str(e)) from e
            if t.key in keys:
                raise ConfigurationError(f"Duplicate threshold {t.key!r}")
            keys.add(t.key)

    @property
    def selectors(self) -> List[str]:
        """Metric selectors that need to be present in the snapshot."""
        return sorted({t.metric for t in self.thresholds})

    @property
    def percentiles(self) -> List[float]:
        """Extra percentiles referenced by ``p(N)`` expressions."""
        out = set()
        for t in self.thresholds:
            parsed = t.parsed
            if parsed is not None and parsed.percentile is not None:
                out.add(parsed.percentile)
        return sorted(out)

    @property
    def abort_thresholds(self) -> List[ThresholdConfig]:
        return [t for t in self.thresholds if t.abort_on_fail]

    def evaluate_one(
        self, threshold: ThresholdConfig, snapshot: MetricsSnapshot
    ) -> ThresholdResult:
        """
        Evaluate a single threshold.

        Raises:
            UnknownMetric: if the threshold's metric is not in the snapshot
        """
        aggregate = snapshot.get(threshold.metric)
        if aggregate is None:
            raise UnknownMetric(threshold.metric)

        parsed = threshold.parsed
        if parsed is None:
            passed = bool(threshold.expression(aggregate))
            return ThresholdResult(
                metric=threshold.metric,
                expression=threshold.label,
                passed=passed,
                abort_on_fail=threshold.abort_on_fail,
            )

        actual = aggregate.stat(parsed.stat)
        expected = f"{parsed.op}{parsed.value:g}"
        if actual is None:
            return ThresholdResult(
                metric=threshold.metric,
                expression=str(threshold.expression),
                passed=False,
                expected=expected,
                abort_on_fail=threshold.abort_on_fail,
                error=f"{aggregate.kind} metric has no '{parsed.stat}' statistic",
            )
        return ThresholdResult(
            metric=threshold.metric,
            expression=str(threshold.expression),
            passed=parsed.compare(actual),
            actual_value=actual,
            expected=expected,
            abort_on_fail=threshold.abort_on_fail,
        )

    def evaluate(
        self,
        snapshot: MetricsSnapshot,
        thresholds: Optional[Iterable[ThresholdConfig]] = None,
        skip_unknown: bool = False,
    ) -> ThresholdVerdict:
        """
        Evaluate thresholds against a snapshot.

        Args:
            snapshot: Aggregated metrics
            thresholds: Subset to evaluate (default: all)
            skip_unknown: Leave out thresholds whose metric has no samples yet
                (used while the run is still in progress)

        Returns:
            ThresholdVerdict with per-threshold results
        """
        results = {}
        for t in self.thresholds if thresholds is None else thresholds:
            if skip_unknown:
                aggregate = snapshot.get(t.metric)
                if aggregate is None or aggregate.empty:
                    continue
            try:
                results[t.key] = self.evaluate_one(t, snapshot)
            except UnknownMetric as e:
                results[t.key] = ThresholdResult(
                    metric=t.metric,
                    expression=t.label,
                    passed=False,
                    abort_on_fail=t.abort_on_fail,
                    error=str(e),
                )
            except Exception as e:
                # Callable expressions are user code; a crash counts as a failure.
                logger.warning("Threshold %s raised: %s", t.key, e)
                results[t.key] = ThresholdResult(
                    metric=t.metric,
                    expression=t.label,
                    passed=False,
                    abort_on_fail=t.abort_on_fail,
                    error=f"{type(e).__name__}: {e}",
                )
        passed = all(r.passed for r in results.values())
        return ThresholdVerdict(passed=passed, per_threshold=results)
