"""
Tests for StageScheduler.

Runs scenarios with millisecond-scale stages and checks concurrency tracking,
iteration metrics, error recovery, abort handling and bounded drain.
"""

import asyncio

import pytest

from loadbench.core.events import EventBus, EventType, RunEvent
from loadbench.core.metrics_collector import MetricsCollector
from loadbench.core.scheduler import (
    DROPPED_ITERATIONS,
    ITERATION_ERRORS,
    ITERATION_SUCCESS,
    ITERATIONS,
    VUS,
    VUS_MAX,
    StageScheduler,
)
from loadbench.core.workload import VirtualUser
from loadbench.exceptions import MetricKindMismatch, WorkloadIterationError
from loadbench.models import ScenarioConfig

pytestmark = pytest.mark.asyncio

FAST_TICK_MS = 5


def _scenario(stages, **kwargs) -> ScenarioConfig:
    return ScenarioConfig.model_validate(
        {"name": kwargs.pop("name", "unit"), "stages": stages, **kwargs}
    )


async def _sleepy(vu: VirtualUser) -> None:
    await asyncio.sleep(0.005)


def _scheduler(scenario, workload, recorder, **kwargs) -> StageScheduler:
    kwargs.setdefault("tick_interval_ms", FAST_TICK_MS)
    kwargs.setdefault("graceful_stop_ms", 1000)
    return StageScheduler(scenario, workload, recorder, **kwargs)


async def test_ramp_reaches_target_and_drains(recorder: MetricsCollector) -> None:
    scenario = _scenario(
        [{"duration": 100, "target": 4}, {"duration": 100, "target": 4}, {"duration": 100, "target": 0}]
    )
    scheduler = _scheduler(scenario, _sleepy, recorder)

    summary = await scheduler.run()

    assert summary.peak_concurrency == 4
    assert summary.workers_spawned >= 4
    assert summary.forced_stops == 0
    assert not summary.aborted
    assert scheduler.pool.count == 0

    desired = [d for _, d in scheduler.history]
    assert max(desired) == 4
    assert desired[-1] == 0
    # Each history entry is a change in desired concurrency.
    assert all(a != b for a, b in zip(desired, desired[1:]))

    snap = recorder.snapshot()
    assert snap.get(ITERATIONS).count > 0
    assert snap.get(ITERATION_SUCCESS).rate == 1.0
    assert snap.get(VUS).value == 0
    assert snap.get(VUS_MAX).max == 4


async def test_iteration_samples_are_tagged_with_scenario(recorder: MetricsCollector) -> None:
    scenario = _scenario([{"duration": 50, "target": 2}], name="morning_rush", tags={"tier": "gold"})
    scheduler = _scheduler(scenario, _sleepy, recorder, tags={"test_type": "unit"})

    await scheduler.run()

    snap = recorder.snapshot(
        selectors=["iterations{scenario:morning_rush,tier:gold,test_type:unit}"]
    )
    assert snap.get("iterations{scenario:morning_rush,tier:gold,test_type:unit}").count == (
        snap.get(ITERATIONS).count
    )


async def test_failing_workload_is_counted_not_fatal(recorder: MetricsCollector) -> None:
    events: list[RunEvent] = []
    bus = EventBus()
    bus.subscribe(events.append)

    async def always_fails(vu: VirtualUser) -> None:
        await asyncio.sleep(0.002)
        raise WorkloadIterationError("backend down")

    scenario = _scenario([{"duration": 60, "target": 2}])
    scheduler = _scheduler(scenario, always_fails, recorder, events=bus)

    summary = await scheduler.run()

    snap = recorder.snapshot()
    assert snap.get(ITERATIONS).count > 0
    assert snap.get(ITERATION_ERRORS).count == snap.get(ITERATIONS).count
    assert snap.get(ITERATION_SUCCESS).rate == 0.0
    assert scheduler.fatal_error is None
    assert not summary.aborted

    failures = [e for e in events if e.type == EventType.ITERATION_FAILED]
    assert failures
    assert "backend down" in failures[0].data["error"]


async def test_zero_duration_spike(recorder: MetricsCollector) -> None:
    scenario = _scenario(
        [
            {"duration": 30, "target": 1},
            {"duration": 0, "target": 8},
            {"duration": 60, "target": 8},
            {"duration": 0, "target": 0},
        ]
    )
    scheduler = _scheduler(scenario, _sleepy, recorder)

    summary = await scheduler.run()

    desired = [d for _, d in scheduler.history]
    assert 8 in desired
    assert not any(1 < d < 8 for d in desired)
    assert summary.peak_concurrency == 8


async def test_scale_down_retires_newest_workers(recorder: MetricsCollector) -> None:
    seen: dict[int, int] = {}

    async def track(vu: VirtualUser) -> None:
        seen[vu.worker_id] = vu.iteration
        await asyncio.sleep(0.002)

    scenario = _scenario(
        [{"duration": 0, "target": 4}, {"duration": 60, "target": 4}, {"duration": 0, "target": 2}, {"duration": 60, "target": 2}]
    )
    scheduler = _scheduler(scenario, track, recorder)
    await scheduler.run()

    assert sorted(seen) == [0, 1, 2, 3]
    # The two oldest workers kept iterating after the scale-down.
    assert seen[0] > seen[3]
    assert seen[1] > seen[2]


async def test_stopping_worker_completes_iteration(recorder: MetricsCollector) -> None:
    completed: list[int] = []

    async def long_iteration(vu: VirtualUser) -> None:
        await asyncio.sleep(0.08)
        completed.append(vu.worker_id)

    scenario = _scenario([{"duration": 0, "target": 1}, {"duration": 20, "target": 1}])
    scheduler = _scheduler(scenario, long_iteration, recorder)

    await scheduler.run()

    assert completed == [0]
    assert recorder.snapshot().get(ITERATIONS).count == 1


async def test_graceful_stop_timeout_is_force_accounted(recorder: MetricsCollector) -> None:
    events: list[RunEvent] = []
    bus = EventBus()
    bus.subscribe(events.append)
    release = asyncio.Event()

    async def stuck(vu: VirtualUser) -> None:
        await release.wait()

    scenario = _scenario([{"duration": 0, "target": 2}, {"duration": 20, "target": 2}])
    scheduler = _scheduler(scenario, stuck, recorder, events=bus, graceful_stop_ms=30)

    summary = await scheduler.run()

    assert summary.forced_stops == 2
    assert len(scheduler.pool.orphans) == 2
    timeouts = [e for e in events if e.type == EventType.DRAIN_TIMEOUT]
    assert timeouts and timeouts[0].data["remaining"] == 2

    release.set()
    await asyncio.gather(*(w.task for w in scheduler.pool.orphans))


async def test_abort_event_drains_early(recorder: MetricsCollector) -> None:
    abort = asyncio.Event()
    scenario = _scenario([{"duration": 5000, "target": 3}])
    scheduler = _scheduler(scenario, _sleepy, recorder, abort_event=abort)

    task = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0.05)
    abort.set()
    summary = await asyncio.wait_for(task, timeout=2)

    assert summary.aborted
    assert summary.actual_duration_ms < 5000
    assert scheduler.pool.count == 0


async def test_start_time_delays_scenario(recorder: MetricsCollector) -> None:
    loop = asyncio.get_running_loop()
    first_iteration: list[float] = []

    async def mark(vu: VirtualUser) -> None:
        if not first_iteration:
            first_iteration.append(loop.time())
        await asyncio.sleep(0.002)

    scenario = _scenario([{"duration": 0, "target": 1}, {"duration": 20, "target": 1}], startTime=60)
    scheduler = _scheduler(scenario, mark, recorder)

    started = loop.time()
    await scheduler.run()

    assert first_iteration[0] - started >= 0.05


async def test_think_time_spaces_iterations(recorder: MetricsCollector) -> None:
    async def quick(vu: VirtualUser) -> None:
        pass

    scenario = _scenario([{"duration": 0, "target": 1}, {"duration": 100, "target": 1}])
    scheduler = _scheduler(scenario, quick, recorder, think_time_ms=40)

    await scheduler.run()

    # ~100ms of plateau with 40ms pauses: a handful of iterations, not thousands.
    assert 1 <= recorder.snapshot().get(ITERATIONS).count <= 5


async def test_metric_kind_mismatch_is_fatal(recorder: MetricsCollector) -> None:
    fatal: list[BaseException] = []
    abort = asyncio.Event()

    def on_fatal(exc: BaseException) -> None:
        fatal.append(exc)
        abort.set()

    async def misuses_metric(vu: VirtualUser) -> None:
        vu.metrics.add_counter(ITERATION_SUCCESS)  # declared as a Rate
        await asyncio.sleep(0.001)

    scenario = _scenario([{"duration": 0, "target": 1}, {"duration": 2000, "target": 1}])
    scheduler = _scheduler(
        scenario, misuses_metric, recorder, abort_event=abort, on_fatal=on_fatal
    )

    summary = await asyncio.wait_for(scheduler.run(), timeout=2)

    assert summary.aborted
    assert isinstance(scheduler.fatal_error, MetricKindMismatch)
    assert fatal and fatal[0] is scheduler.fatal_error


async def test_builtin_metric_declarations_conflict(recorder: MetricsCollector) -> None:
    recorder.add_trend(ITERATIONS, 1.0)
    with pytest.raises(MetricKindMismatch):
        _scheduler(_scenario([{"duration": 10, "target": 1}]), _sleepy, recorder)


class TestWorkloadsThatNeverYield:
    async def test_sync_workload_runs_to_completion(self, recorder: MetricsCollector) -> None:
        calls: list[int] = []

        def blocking_noop(vu: VirtualUser) -> None:
            calls.append(vu.worker_id)

        scenario = _scenario([{"duration": 0, "target": 2}, {"duration": 50, "target": 2}])
        summary = await asyncio.wait_for(
            _scheduler(scenario, blocking_noop, recorder).run(), timeout=5
        )

        assert calls
        assert not summary.aborted
        assert recorder.snapshot().get(ITERATIONS).count == len(calls)

    async def test_async_workload_without_await_runs_to_completion(
        self, recorder: MetricsCollector
    ) -> None:
        async def never_awaits(vu: VirtualUser) -> None:
            vu.local["last"] = vu.iteration

        scenario = _scenario([{"duration": 0, "target": 3}, {"duration": 50, "target": 3}])
        summary = await asyncio.wait_for(
            _scheduler(scenario, never_awaits, recorder).run(), timeout=5
        )

        assert summary.actual_duration_ms < 1000
        assert recorder.snapshot().get(ITERATION_SUCCESS).rate == 1.0

    async def test_raising_before_any_await_runs_to_completion(
        self, recorder: MetricsCollector
    ) -> None:
        async def fails_fast(vu: VirtualUser) -> None:
            raise WorkloadIterationError("rejected")

        scenario = _scenario([{"duration": 0, "target": 2}, {"duration": 50, "target": 2}])
        summary = await asyncio.wait_for(
            _scheduler(scenario, fails_fast, recorder).run(), timeout=5
        )

        snap = recorder.snapshot()
        assert not summary.aborted
        assert snap.get(ITERATION_ERRORS).count == snap.get(ITERATIONS).count > 0


class TestCurveFidelity:
    async def test_observed_duration_matches_plan(self, recorder: MetricsCollector) -> None:
        tick_ms = 20
        scenario = _scenario(
            [{"duration": 100, "target": 3}, {"duration": 100, "target": 0}]
        )
        scheduler = _scheduler(scenario, _sleepy, recorder, tick_interval_ms=tick_ms)

        summary = await scheduler.run()

        assert summary.planned_duration_ms == 200
        assert (
            summary.planned_duration_ms
            <= summary.actual_duration_ms
            <= summary.planned_duration_ms + tick_ms
        )

    async def test_live_workers_never_exceed_desired_while_ramping(
        self, recorder: MetricsCollector
    ) -> None:
        loop = asyncio.get_running_loop()
        scenario = _scenario([{"duration": 200, "target": 20}, {"duration": 50, "target": 20}])
        scheduler = _scheduler(scenario, _sleepy, recorder)

        started = loop.time()
        task = asyncio.create_task(scheduler.run())
        samples: list[tuple[int, int]] = []
        while not task.done():
            elapsed_ms = (loop.time() - started) * 1000.0
            samples.append((scheduler.live_workers, scheduler.curve.desired_at(elapsed_ms)))
            await asyncio.sleep(0.003)
        summary = await task

        assert len(samples) > 10
        assert all(live <= desired for live, desired in samples)
        assert summary.peak_concurrency == 20

    async def test_instant_spike_from_start_vus(self, recorder: MetricsCollector) -> None:
        scenario = _scenario([{"duration": 0, "target": 200}], startVUs=5)
        scheduler = _scheduler(scenario, _sleepy, recorder)

        summary = await scheduler.run()

        assert [d for _, d in scheduler.history] == [200]
        assert summary.peak_concurrency == 200
        assert summary.workers_spawned == 200
        assert summary.planned_duration_ms == 0
        assert scheduler.pool.count == 0


def _executor_scenario(**config) -> ScenarioConfig:
    return ScenarioConfig.model_validate({"name": "unit", **config})


async def _quick(vu: VirtualUser) -> None:
    await asyncio.sleep(0.001)


class TestIterationExecutors:
    async def test_per_vu_iterations_run_each_budget(self, recorder: MetricsCollector) -> None:
        per_worker: dict[int, int] = {}

        async def count(vu: VirtualUser) -> None:
            per_worker[vu.worker_id] = per_worker.get(vu.worker_id, 0) + 1
            await asyncio.sleep(0.001)

        scenario = _executor_scenario(executor="per-vu-iterations", vus=3, iterations=4)
        summary = await asyncio.wait_for(_scheduler(scenario, count, recorder).run(), timeout=5)

        assert per_worker == {0: 4, 1: 4, 2: 4}
        assert recorder.snapshot().get(ITERATIONS).count == 12
        assert summary.workers_spawned == 3
        assert summary.actual_duration_ms < summary.planned_duration_ms
        assert not summary.aborted

    async def test_shared_iterations_split_one_budget(self, recorder: MetricsCollector) -> None:
        scenario = _executor_scenario(executor="shared-iterations", vus=3, iterations=10)
        await asyncio.wait_for(_scheduler(scenario, _quick, recorder).run(), timeout=5)

        assert recorder.snapshot().get(ITERATIONS).count == 10

    async def test_max_duration_bounds_iteration_budget(self, recorder: MetricsCollector) -> None:
        scenario = _executor_scenario(
            executor="per-vu-iterations", vus=2, iterations=1000, maxDuration=60
        )
        summary = await asyncio.wait_for(
            _scheduler(scenario, _sleepy, recorder).run(), timeout=5
        )

        assert summary.planned_duration_ms == 60
        assert 0 < recorder.snapshot().get(ITERATIONS).count < 2000
        assert summary.actual_duration_ms == pytest.approx(60, abs=FAST_TICK_MS + 15)


class TestArrivalRateExecutors:
    async def test_constant_arrival_rate_starts_every_iteration(
        self, recorder: MetricsCollector
    ) -> None:
        scenario = _executor_scenario(
            executor="constant-arrival-rate",
            rate=100,
            timeUnit="1s",
            duration=200,
            preAllocatedVUs=2,
            maxVUs=5,
        )
        summary = await asyncio.wait_for(_scheduler(scenario, _quick, recorder).run(), timeout=5)

        assert recorder.snapshot().get(ITERATIONS).count == 20
        assert summary.iterations_dropped == 0
        assert summary.workers_spawned <= 5

    async def test_pool_grows_up_to_max_vus(self, recorder: MetricsCollector) -> None:
        async def slow(vu: VirtualUser) -> None:
            await asyncio.sleep(0.025)

        scenario = _executor_scenario(
            executor="constant-arrival-rate",
            rate=100,
            duration=100,
            preAllocatedVUs=1,
            maxVUs=4,
        )
        summary = await asyncio.wait_for(_scheduler(scenario, slow, recorder).run(), timeout=5)

        assert 1 < summary.workers_spawned <= 4
        assert summary.peak_concurrency <= 4

    async def test_busy_pool_drops_iterations(self, recorder: MetricsCollector) -> None:
        async def slow(vu: VirtualUser) -> None:
            await asyncio.sleep(0.03)

        scenario = _executor_scenario(
            executor="constant-arrival-rate",
            rate=200,
            duration=100,
            preAllocatedVUs=1,
            maxVUs=1,
        )
        scheduler = _scheduler(scenario, slow, recorder)
        summary = await asyncio.wait_for(scheduler.run(), timeout=5)

        snap = recorder.snapshot()
        assert summary.iterations_dropped > 0
        assert snap.get(DROPPED_ITERATIONS).count == summary.iterations_dropped
        assert snap.get(ITERATIONS).count + summary.iterations_dropped == 20
        assert summary.workers_spawned == 1

    async def test_ramping_arrival_rate_follows_rate_stages(
        self, recorder: MetricsCollector
    ) -> None:
        scenario = _executor_scenario(
            executor="ramping-arrival-rate",
            startRate=0,
            preAllocatedVUs=2,
            maxVUs=4,
            stages=[{"duration": 100, "target": 200}, {"duration": 100, "target": 200}],
        )
        scheduler = _scheduler(scenario, _quick, recorder)
        summary = await asyncio.wait_for(scheduler.run(), timeout=5)

        # 10 starts on the ramp plus 20 on the plateau
        assert scheduler.arrivals.total_iterations == 30
        assert recorder.snapshot().get(ITERATIONS).count + summary.iterations_dropped == 30
