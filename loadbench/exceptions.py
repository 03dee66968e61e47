"""
Error taxonomy for load test runs.

Configuration-level errors are fatal and raised before any worker starts.
Iteration-level errors are recovered by the worker loop and only counted.
"""

from __future__ import annotations


class LoadBenchError(Exception):
    """Base class for all harness errors."""


class ConfigurationError(LoadBenchError):
    """Malformed options (stages, thresholds, workload references)."""


class WorkloadIterationError(LoadBenchError):
    """
    Raised by workload code to mark an iteration as failed.

    Any exception escaping a workload is treated the same way; this class only
    exists so workloads can fail an iteration explicitly with a clear message.
    """


class MetricKindMismatch(LoadBenchError):
    """A metric name was used with two different kinds."""

    def __init__(self, name: str, declared: str, requested: str | None):
        self.name = name
        self.declared = declared
        self.requested = requested
        if requested is None:
            msg = f"Metric {name!r} has not been declared and no kind was given"
        else:
            msg = (
                f"Metric {name!r} is declared as {declared}, "
                f"cannot be used as {requested}"
            )
        super().__init__(msg)


class UnknownMetric(LoadBenchError):
    """A threshold references a metric that was never recorded."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Metric {name!r} was never recorded")


class SchedulerDeadlineExceeded(LoadBenchError):
    """Workers did not drain within the graceful stop period."""

    def __init__(self, scenario: str, remaining: int, grace_ms: int):
        self.scenario = scenario
        self.remaining = remaining
        self.grace_ms = grace_ms
        super().__init__(
            f"Scenario {scenario!r}: {remaining} worker(s) still running "
            f"after {grace_ms}ms graceful stop"
        )
