"""
Stage curves for load tests.

A stage list describes concurrency over time:
- Ramp: target changes over the stage duration (linear interpolation)
- Plateau: target equals the previous target
- Spike: zero-duration stage, the target is applied instantly

Shapes such as soak, stress or breakpoint are just different stage lists.
"""

import math
from typing import List, Sequence, Tuple

from loadbench.exceptions import ConfigurationError
from loadbench.models import Stage


class StageCurve:
    """
    Desired concurrency as a function of elapsed time.

    The curve starts at ``start_concurrency`` and each stage moves linearly from
    the previous target to its own target. Values are rounded towards the
    previous target (floor while rising, ceil while falling), so the desired
    concurrency never overshoots the straight line.
    """

    def __init__(self, stages: Sequence[Stage], start_concurrency: int = 0):
        if not stages:
            raise ConfigurationError("A stage curve needs at least one stage")
        if start_concurrency < 0:
            raise ConfigurationError("start_concurrency must be >= 0")
        self.stages: List[Stage] = list(stages)
        self.start_concurrency = int(start_concurrency)

        # (start_ms, end_ms, from_target, to_target) per stage
        self._segments: List[Tuple[int, int, int, int]] = []
        offset = 0
        prev = self.start_concurrency
        for stage in self.stages:
            end = offset + stage.duration_ms
            self._segments.append((offset, end, prev, stage.target))
            prev = stage.target
            offset = end
        self.total_duration_ms = offset

    @property
    def final_target(self) -> int:
        return self.stages[-1].target

    @property
    def peak_target(self) -> int:
        return max([self.start_concurrency] + [s.target for s in self.stages])

    def stage_index_at(self, elapsed_ms: float) -> int:
        """Index of the active stage; ``len(stages)`` once the curve has ended."""
        for i, (start, end, _, _) in enumerate(self._segments):
            if start <= elapsed_ms < end:
                return i
        return len(self.stages)

    def desired_at(self, elapsed_ms: float) -> int:
        """
        Desired concurrency at ``elapsed_ms`` since the curve started.

        Zero-duration stages never contain any instant, so the curve jumps
        straight to their target.
        """
        if elapsed_ms < 0:
            elapsed_ms = 0
        current = self.start_concurrency
        for start, end, frm, to in self._segments:
            if elapsed_ms < end:
                progress = (elapsed_ms - start) / (end - start)
                value = frm + (to - frm) * progress
                if to >= frm:
                    return int(math.floor(value))
                return int(math.ceil(value))
            current = to
        return current

    def is_complete(self, elapsed_ms: float) -> bool:
        return elapsed_ms >= self.total_duration_ms


class ArrivalRateCurve:
    """
    Iteration start schedule for arrival-rate scenarios.

    Stage targets are rates (iterations per ``time_unit_ms``), interpolated
    linearly from ``start_rate``. Iteration ``n`` (0-based) starts once the
    expected number of arrivals since the start reaches ``n``, so the first one
    starts immediately.
    """

    def __init__(self, stages: Sequence[Stage], start_rate: int = 0, time_unit_ms: int = 1000):
        if not stages:
            raise ConfigurationError("An arrival-rate curve needs at least one stage")
        if time_unit_ms <= 0:
            raise ConfigurationError("time_unit_ms must be > 0")
        self.stages: List[Stage] = list(stages)
        self.time_unit_ms = int(time_unit_ms)

        self._segments: List[Tuple[int, int, int, int]] = []
        offset = 0
        prev = int(start_rate)
        for stage in self.stages:
            end = offset + stage.duration_ms
            self._segments.append((offset, end, prev, stage.target))
            prev = stage.target
            offset = end
        self.total_duration_ms = offset
        expected = self.expected_arrivals(offset)
        self.total_iterations = int(math.ceil(expected - 1e-9)) if expected > 0 else 0

    def rate_at(self, elapsed_ms: float) -> float:
        """Iterations per time unit at ``elapsed_ms``."""
        for start, end, frm, to in self._segments:
            if elapsed_ms < end:
                progress = max(0.0, elapsed_ms - start) / (end - start)
                return frm + (to - frm) * progress
        return float(self._segments[-1][3])

    def expected_arrivals(self, elapsed_ms: float) -> float:
        """Area under the rate curve from 0 to ``elapsed_ms``."""
        t = min(max(0.0, elapsed_ms), self.total_duration_ms)
        area = 0.0
        for start, end, frm, to in self._segments:
            if t <= start:
                break
            if end == start:
                continue
            span = min(t, end) - start
            rate_end = frm + (to - frm) * span / (end - start)
            area += (frm + rate_end) / 2.0 * span
        return area / self.time_unit_ms

    def iterations_due(self, elapsed_ms: float) -> int:
        """Iterations that should have started by ``elapsed_ms``."""
        if elapsed_ms >= self.total_duration_ms:
            return self.total_iterations
        if self.rate_at(elapsed_ms) > 0 or self.expected_arrivals(elapsed_ms) > 0:
            started = int(math.floor(self.expected_arrivals(elapsed_ms) + 1e-9)) + 1
            return min(started, self.total_iterations)
        return 0

    def start_time_of(self, index: int) -> float:
        """Elapsed ms at which iteration ``index`` is due (inf if never)."""
        if index >= self.total_iterations:
            return math.inf
        lo, hi = 0.0, float(self.total_duration_ms)
        for _ in range(40):
            mid = (lo + hi) / 2.0
            if self.iterations_due(mid) > index:
                hi = mid
            else:
                lo = mid
        return hi

    def is_complete(self, elapsed_ms: float) -> bool:
        return elapsed_ms >= self.total_duration_ms
