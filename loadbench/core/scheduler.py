"""
Stage Scheduler.

Keeps the number of live workers of one scenario on its stage curve:
- every tick, desired concurrency is derived from elapsed time
- scale-up spawns workers, scale-down asks the newest workers to stop
- a stopping worker always completes its current iteration
- at the end of the curve (or on abort) all workers are drained, bounded by
  the scenario's graceful stop period

Iteration-based scenarios run a fixed worker set until their iteration budget
or ``max_duration`` runs out. Arrival-rate scenarios start iterations on a
schedule and hand each start to a free worker, growing the pool up to
``max_vus`` and dropping starts when every worker is busy.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterator, Mapping, Optional

from loadbench.config import settings
from loadbench.core.events import EventBus, EventType
from loadbench.core.load_patterns import ArrivalRateCurve, StageCurve
from loadbench.core.metrics_collector import MetricsCollector
from loadbench.core.worker_pool import WorkerPool
from loadbench.core.workload import VirtualUser, WorkloadFn, invoke
from loadbench.exceptions import MetricKindMismatch, SchedulerDeadlineExceeded
from loadbench.models import ExecutorType, MetricKind, ScenarioConfig, ScenarioSummary

logger = logging.getLogger(__name__)

# Built-in metrics recorded for every iteration.
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"
ITERATION_ERRORS = "iteration_errors"
ITERATION_SUCCESS = "iteration_success"
DROPPED_ITERATIONS = "dropped_iterations"
VUS = "vus"
VUS_MAX = "vus_max"

BUILTIN_METRICS = {
    ITERATIONS: MetricKind.COUNTER,
    ITERATION_DURATION: MetricKind.TREND,
    ITERATION_ERRORS: MetricKind.COUNTER,
    ITERATION_SUCCESS: MetricKind.RATE,
    DROPPED_ITERATIONS: MetricKind.COUNTER,
    VUS: MetricKind.GAUGE,
    VUS_MAX: MetricKind.GAUGE,
}


def declare_builtin_metrics(recorder: MetricsCollector) -> None:
    for name, kind in BUILTIN_METRICS.items():
        recorder.declare(name, kind)


class StageScheduler:
    """
    Drives one scenario along its stage curve.

    Args:
        scenario: Validated scenario configuration
        workload: Function run once per iteration
        recorder: Shared metric recorder
        data: Setup context handed to every worker (read-only)
        events: Event bus for structured progress events
        abort_event: Shared flag; when set the scheduler drains and stops
        on_fatal: Called with programmer errors raised by workload code
        id_sequence: Shared worker id source
        tick_interval_ms: Scheduling tick (defaults to settings)
        graceful_stop_ms: Drain bound (defaults to scenario, then settings)
        think_time_ms: Pause between iterations (defaults to scenario)
        max_workers: Per-scenario worker cap (defaults to settings)
        tags: Tags added to every sample from this scenario
    """

    def __init__(
        self,
        scenario: ScenarioConfig,
        workload: WorkloadFn,
        recorder: MetricsCollector,
        *,
        data: Any = None,
        events: Optional[EventBus] = None,
        abort_event: Optional[asyncio.Event] = None,
        on_fatal: Optional[Callable[[BaseException], None]] = None,
        id_sequence: Optional[Iterator[int]] = None,
        tick_interval_ms: Optional[int] = None,
        graceful_stop_ms: Optional[int] = None,
        think_time_ms: Optional[int] = None,
        max_workers: Optional[int] = None,
        tags: Optional[Mapping[str, str]] = None,
    ):
        self.scenario = scenario
        self.name = scenario.name
        self.executor = scenario.executor
        self.workload = workload
        self.recorder = recorder
        self.data = data
        self.events = events or EventBus()
        self.abort_event = abort_event or asyncio.Event()
        self.on_fatal = on_fatal

        max_workers = max_workers or settings.MAX_WORKERS
        self.curve: Optional[StageCurve] = None
        self.arrivals: Optional[ArrivalRateCurve] = None
        if self.executor.is_arrival_rate:
            self.arrivals = ArrivalRateCurve(
                scenario.stages, scenario.start_rate, scenario.time_unit_ms
            )
            max_workers = min(max_workers, scenario.max_vus)
            worker_factory = self._arrival_worker
        else:
            self.curve = StageCurve(scenario.stages, scenario.start_concurrency)
            worker_factory = self._worker

        self.tick_interval_ms = tick_interval_ms or settings.TICK_INTERVAL_MS
        if graceful_stop_ms is None:
            graceful_stop_ms = scenario.graceful_stop_ms
        if graceful_stop_ms is None:
            graceful_stop_ms = settings.DEFAULT_GRACEFUL_STOP_MS
        self.graceful_stop_ms = int(graceful_stop_ms)
        if think_time_ms is None:
            think_time_ms = scenario.think_time_ms or 0
        self.think_time_ms = int(think_time_ms)

        self.tags = {**(tags or {}), **scenario.tags, "scenario": self.name}
        self.pool = WorkerPool(
            worker_factory=worker_factory,
            min_workers=0,
            max_workers=max_workers,
            id_sequence=id_sequence,
        )
        # Threads are created lazily, so async-only workloads never start one.
        self._sync_executor = ThreadPoolExecutor(
            max_workers=settings.SYNC_WORKLOAD_THREADS,
            thread_name_prefix=f"loadbench-{self.name}",
        )
        self._log = logging.LoggerAdapter(logger, {"worker_id": f"SCHED:{self.name}"})

        # shared-iterations budget
        self._shared_remaining = scenario.iterations or 0
        # arrival-rate hand-off
        self._starts: asyncio.Queue = asyncio.Queue()
        self._free_vus = 0

        # Observations
        self.history: list[tuple[float, int]] = []
        self.peak_concurrency = 0
        self.forced_stops = 0
        self.iterations_dropped = 0
        self.aborted = False
        self.fatal_error: Optional[BaseException] = None
        self.elapsed_ms = 0.0

        declare_builtin_metrics(recorder)

    @property
    def live_workers(self) -> int:
        return len(self.pool.running_worker_ids())

    async def _wait_for_abort(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if an abort was requested."""
        if self.abort_event.is_set():
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self.abort_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def _fatal(self, exc: BaseException) -> None:
        if self.fatal_error is None:
            self.fatal_error = exc
        if self.on_fatal is not None:
            self.on_fatal(exc)
        else:
            self.abort_event.set()

    def _new_vu(self, worker_id: int) -> VirtualUser:
        return VirtualUser(
            worker_id=worker_id,
            scenario=self.name,
            data=self.data,
            metrics=self.recorder,
            tags=dict(self.tags),
        )

    async def _iterate(self, vu: VirtualUser) -> bool:
        """
        Run one iteration and record the built-in metrics.

        Returns:
            False if the workload hit a fatal error and the worker must exit
        """
        loop = asyncio.get_running_loop()
        vu.iteration += 1
        vu.tags = dict(self.tags)
        started = loop.time()
        ok = True
        try:
            await invoke(self.workload, vu, self._sync_executor)
        except MetricKindMismatch as e:
            self._fatal(e)
            return False
        except asyncio.CancelledError:
            raise
        except Exception as e:
            ok = False
            self.recorder.add_counter(ITERATION_ERRORS, 1, vu.tags)
            self.events.emit(
                EventType.ITERATION_FAILED,
                scenario=self.name,
                worker_id=vu.worker_id,
                iteration=vu.iteration,
                error=f"{type(e).__name__}: {e}",
            )
        duration_ms = (loop.time() - started) * 1000.0
        self.recorder.add_counter(ITERATIONS, 1, vu.tags)
        self.recorder.add_trend(ITERATION_DURATION, duration_ms, vu.tags)
        self.recorder.add_rate(ITERATION_SUCCESS, ok, vu.tags)

        # A workload that never awaits must still let the tick loop run.
        await asyncio.sleep(0)
        return True

    def _take_shared_iteration(self) -> bool:
        if self._shared_remaining <= 0:
            return False
        self._shared_remaining -= 1
        return True

    async def _worker(self, worker_id: int, stop_signal: asyncio.Event) -> None:
        """
        Iteration loop for one worker.

        Args:
            worker_id: Unique identifier for this worker
            stop_signal: Set when this worker should exit after its iteration
        """
        vu = self._new_vu(worker_id)
        per_vu_budget = (
            self.scenario.iterations
            if self.executor == ExecutorType.PER_VU_ITERATIONS
            else None
        )
        logger.debug("Worker %d started (scenario=%s)", worker_id, self.name)

        while not stop_signal.is_set():
            if per_vu_budget is not None and vu.iteration >= per_vu_budget:
                break
            if self.executor == ExecutorType.SHARED_ITERATIONS:
                if not self._take_shared_iteration():
                    break
            if not await self._iterate(vu):
                break

            # Think time between iterations; a stop here is not mid-iteration.
            if self.think_time_ms > 0 and not stop_signal.is_set():
                try:
                    await asyncio.wait_for(
                        stop_signal.wait(), timeout=self.think_time_ms / 1000.0
                    )
                except asyncio.TimeoutError:
                    pass

        logger.debug("Worker %d stopped after %d iteration(s)", worker_id, vu.iteration)

    async def _arrival_worker(self, worker_id: int, stop_signal: asyncio.Event) -> None:
        """Waits for scheduled starts and runs one iteration per start."""
        vu = self._new_vu(worker_id)
        poll_seconds = self.tick_interval_ms / 1000.0
        logger.debug("Arrival worker %d started (scenario=%s)", worker_id, self.name)

        while True:
            if stop_signal.is_set():
                # Starts handed out before the stop still run.
                if self._starts.empty():
                    break
                self._starts.get_nowait()
            else:
                try:
                    await asyncio.wait_for(self._starts.get(), timeout=poll_seconds)
                except asyncio.TimeoutError:
                    continue
            if not await self._iterate(vu):
                break
            self._free_vus += 1

        logger.debug("Arrival worker %d stopped after %d iteration(s)", worker_id, vu.iteration)

    async def _dispatch_start(self) -> bool:
        """Hand one scheduled start to a free worker; False if it was dropped."""
        if self._free_vus > 0:
            self._free_vus -= 1
            self._starts.put_nowait(None)
            return True
        if self.pool.count < self.pool.max_workers:
            await self.pool.spawn_one()
            self._starts.put_nowait(None)
            return True
        self.iterations_dropped += 1
        self.recorder.add_counter(DROPPED_ITERATIONS, 1, {"scenario": self.name})
        if self.iterations_dropped == 1:
            self._log.warning(
                "Insufficient VUs: all %d busy, dropping scheduled iterations",
                self.pool.max_workers,
            )
        return False

    def _observe(self, elapsed_ms: float, desired: int) -> None:
        if not self.history or self.history[-1][1] != desired:
            old = self.history[-1][1] if self.history else None
            self.history.append((elapsed_ms, desired))
            self.events.emit(
                EventType.CONCURRENCY_CHANGED,
                scenario=self.name,
                old=old,
                new=desired,
                elapsed_ms=elapsed_ms,
            )
        live = self.live_workers
        self.peak_concurrency = max(self.peak_concurrency, live)
        gauge_tags = {"scenario": self.name}
        self.recorder.set_gauge(VUS, live, gauge_tags)
        self.recorder.set_gauge(VUS_MAX, self.peak_concurrency, gauge_tags)

    async def run(self) -> ScenarioSummary:
        """
        Run the scenario to completion (or abort) and drain its workers.

        Returns:
            ScenarioSummary with peak concurrency, spawned workers and timing
        """
        loop = asyncio.get_running_loop()

        if self.scenario.start_time_ms > 0:
            self._log.info("Delaying start by %dms", self.scenario.start_time_ms)
            if await self._wait_for_abort(self.scenario.start_time_ms / 1000.0):
                self.aborted = True
                return self._summary()

        self.events.emit(
            EventType.SCENARIO_STARTED,
            scenario=self.name,
            workload=self.scenario.exec_name,
            executor=self.executor.value,
            stages=len(self.scenario.stages),
            duration_ms=self.scenario.total_duration_ms,
        )
        start = loop.time()
        try:
            if self.executor.is_arrival_rate:
                await self._run_arrivals(start)
            elif self.executor.is_iteration_based:
                await self._run_iterations(start)
            else:
                await self._run_stages(start)
        finally:
            self.elapsed_ms = (loop.time() - start) * 1000.0
            await self._drain()
            self._sync_executor.shutdown(wait=False)

        summary = self._summary()
        self.events.emit(
            EventType.SCENARIO_FINISHED,
            scenario=self.name,
            peak_concurrency=summary.peak_concurrency,
            workers_spawned=summary.workers_spawned,
            iterations_dropped=summary.iterations_dropped,
            aborted=summary.aborted,
        )
        return summary

    def _elapsed_ms(self, start: float) -> float:
        return (asyncio.get_running_loop().time() - start) * 1000.0

    async def _run_stages(self, start: float) -> None:
        """Follow the concurrency curve until it ends."""
        while True:
            elapsed_ms = self._elapsed_ms(start)
            if self.abort_event.is_set():
                self.aborted = True
                return
            desired = self.curve.desired_at(elapsed_ms)
            await self.pool.scale_to(desired)
            self._observe(elapsed_ms, desired)
            if self.curve.is_complete(elapsed_ms):
                return
            remaining_ms = self.curve.total_duration_ms - elapsed_ms
            delay_ms = min(self.tick_interval_ms, remaining_ms)
            if await self._wait_for_abort(delay_ms / 1000.0):
                self.aborted = True
                return

    async def _run_iterations(self, start: float) -> None:
        """Start every worker once, then wait for the budget or max_duration."""
        vus = self.scenario.vus
        await self.pool.scale_to(vus)
        max_duration_ms = self.scenario.max_duration_ms
        while True:
            elapsed_ms = self._elapsed_ms(start)
            if self.abort_event.is_set():
                self.aborted = True
                return
            self.pool.prune_done()
            self._observe(elapsed_ms, vus)
            if self.pool.count == 0:
                self._log.debug("Iteration budget spent after %.0fms", elapsed_ms)
                return
            if elapsed_ms >= max_duration_ms:
                self._log.info("maxDuration of %dms reached", max_duration_ms)
                return
            delay_ms = min(self.tick_interval_ms, max_duration_ms - elapsed_ms)
            if await self._wait_for_abort(delay_ms / 1000.0):
                self.aborted = True
                return

    async def _run_arrivals(self, start: float) -> None:
        """Start iterations on the arrival schedule until it ends."""
        preallocated = self.scenario.pre_allocated_vus or 0
        await self.pool.scale_to(preallocated)
        self._free_vus = self.pool.count
        dispatched = 0
        while True:
            elapsed_ms = self._elapsed_ms(start)
            if self.abort_event.is_set():
                self.aborted = True
                return
            due = self.arrivals.iterations_due(elapsed_ms)
            while dispatched < due:
                await self._dispatch_start()
                dispatched += 1
            self._observe(elapsed_ms, self.pool.count)
            if self.arrivals.is_complete(elapsed_ms):
                return
            next_start_ms = self.arrivals.start_time_of(dispatched)
            delay_ms = min(
                self.tick_interval_ms,
                next_start_ms - elapsed_ms,
                self.arrivals.total_duration_ms - elapsed_ms,
            )
            if await self._wait_for_abort(max(delay_ms, 1.0) / 1000.0):
                self.aborted = True
                return

    async def _drain(self) -> None:
        """Stop every worker, waiting at most the graceful stop period."""
        self._log.debug("Draining %d worker(s)", self.pool.count)
        stuck = await self.pool.stop_all(timeout_seconds=self.graceful_stop_ms / 1000.0)
        if stuck:
            self.forced_stops = len(stuck)
            err = SchedulerDeadlineExceeded(self.name, len(stuck), self.graceful_stop_ms)
            self._log.warning("%s", err)
            self.events.emit(
                EventType.DRAIN_TIMEOUT,
                scenario=self.name,
                remaining=len(stuck),
                grace_ms=self.graceful_stop_ms,
            )
        self.recorder.set_gauge(VUS, 0, {"scenario": self.name})

    def _summary(self) -> ScenarioSummary:
        return ScenarioSummary(
            name=self.name,
            workload=self.scenario.exec_name,
            planned_duration_ms=self.scenario.total_duration_ms,
            actual_duration_ms=self.elapsed_ms,
            peak_concurrency=self.peak_concurrency,
            workers_spawned=self.pool.spawned,
            forced_stops=self.forced_stops,
            iterations_dropped=self.iterations_dropped,
            aborted=self.aborted,
        )
