"""
Workload function contract.

A workload is called once per iteration with a ``VirtualUser``:

    async def my_workload(vu: VirtualUser) -> None:
        resp = await call_api(vu.data["base_url"])
        vu.check(resp, {"status is 200": lambda r: r.status_code == 200})
        await vu.sleep(1)

Plain (non-async) functions are accepted too and run in a worker thread.
Raising fails the iteration only.
"""

import asyncio
import functools
import inspect
import logging
import random
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from loadbench.core.metrics_collector import MetricsCollector
from loadbench.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

CHECKS_METRIC = "checks"

WorkloadFn = Callable[["VirtualUser"], Union[None, Awaitable[None]]]


@dataclass
class VirtualUser:
    """
    Per-worker handle passed to workload functions.

    ``data`` is the setup context shared by every worker and must be treated as
    read-only. ``local`` belongs to this worker alone.
    """

    worker_id: int
    scenario: str
    data: Any
    metrics: MetricsCollector
    iteration: int = 0
    tags: Dict[str, str] = field(default_factory=dict)
    local: Dict[str, Any] = field(default_factory=dict)

    def tagged(self, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        if not extra:
            return dict(self.tags)
        return {**self.tags, **extra}

    def check(self, value: Any, checks: Mapping[str, Callable[[Any], Any]]) -> bool:
        """
        Evaluate named predicates against ``value``.

        Each result is recorded as a Rate sample under ``checks`` tagged with the
        check name. A predicate that raises counts as failed.

        Returns:
            True if every predicate passed
        """
        all_passed = True
        for name, predicate in checks.items():
            try:
                passed = bool(predicate(value))
            except Exception as e:
                logger.debug("Check %r raised: %s", name, e)
                passed = False
            self.metrics.add_rate(CHECKS_METRIC, passed, self.tagged({"check": name}))
            all_passed = all_passed and passed
        return all_passed

    def check_rate(self, name: str, passed: bool) -> bool:
        """Record a pass/fail under a caller-chosen Rate metric."""
        self.metrics.add_rate(name, passed, self.tags)
        return passed

    async def sleep(self, seconds: float) -> None:
        """Think time inside an iteration."""
        if seconds > 0:
            await asyncio.sleep(seconds)


def is_async_callable(fn: Any) -> bool:
    """True for coroutine functions, partials of them and objects with an async ``__call__``."""
    while isinstance(fn, functools.partial):
        fn = fn.func
    if inspect.iscoroutinefunction(fn):
        return True
    return inspect.iscoroutinefunction(getattr(fn, "__call__", None))


async def invoke(
    workload: WorkloadFn, vu: VirtualUser, executor: Optional[Executor] = None
) -> None:
    """
    Run one iteration of a sync or async workload.

    Async workloads run on the event loop. Anything else runs in ``executor``
    (the loop's default executor when None) so blocking calls do not stall
    the other workers. An awaitable returned from a sync callable is awaited
    on the loop.
    """
    if is_async_callable(workload):
        await workload(vu)
        return
    loop = asyncio.get_running_loop()
    result = await loop.run_in_executor(executor, workload, vu)
    if inspect.isawaitable(result):
        await result


async def call_hook(hook: Optional[Callable[..., Any]], *args: Any) -> Any:
    """Call a sync or async setup/teardown hook."""
    if hook is None:
        return None
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def build_smooth_weighted_schedule(weights: Mapping[str, int]) -> list[str]:
    """
    One cycle of smooth weighted round-robin over ``weights``.

    Each name fills exactly ``weight`` of the ``sum(weights)`` slots, spread out
    rather than batched: ``{"a": 2, "b": 1}`` gives ``a, b, a``.
    """
    cycle = sum(int(w) for w in weights.values())
    credit = dict.fromkeys(weights, 0)
    order: list[str] = []
    for _ in range(max(cycle, 0)):
        for name, weight in weights.items():
            credit[name] += int(weight)
        chosen = max(credit, key=credit.__getitem__)
        credit[chosen] -= cycle
        order.append(chosen)
    return order


class WeightedWorkload:
    """
    Picks one of several named workloads per iteration by weight.

    Modes:
    - ``round_robin``: deterministic smooth weighted schedule; each worker starts
      at an offset so workers do not move in lockstep
    - ``random``: independent weighted draw per iteration (seedable)

    The chosen flow is set in the worker's tags as ``flow=<name>`` so the
    iteration samples can be split per flow.
    """

    MODES = ("round_robin", "random")

    def __init__(
        self,
        choices: Mapping[str, tuple[WorkloadFn, int]],
        mode: str = "round_robin",
        seed: Optional[int] = None,
    ):
        if mode not in self.MODES:
            raise ConfigurationError(f"Unknown weighted mode {mode!r}")
        weights: Dict[str, int] = {}
        self._workloads: Dict[str, WorkloadFn] = {}
        for name, (fn, weight) in choices.items():
            if int(weight) < 0:
                raise ConfigurationError(f"Weight for {name!r} must be >= 0")
            if int(weight) == 0:
                continue
            if not callable(fn):
                raise ConfigurationError(f"Workload {name!r} is not callable")
            weights[name] = int(weight)
            self._workloads[name] = fn
        if not weights:
            raise ConfigurationError("WeightedWorkload needs at least one positive weight")

        self.mode = mode
        self.weights = weights
        self._schedule = build_smooth_weighted_schedule(weights)
        self._rng = random.Random(seed)
        # Schedule position lives in each worker's ``local`` under this key.
        self._pos_key = f"weighted_pos:{id(self)}"
        self.__name__ = "weighted(" + ",".join(weights) + ")"

    def next_flow(self, vu: VirtualUser) -> str:
        if self.mode == "random":
            names = list(self.weights)
            return self._rng.choices(names, weights=[self.weights[n] for n in names])[0]
        n = len(self._schedule)
        pos = vu.local.get(self._pos_key, vu.worker_id % n)
        vu.local[self._pos_key] = (pos + 1) % n
        return self._schedule[pos]

    async def __call__(self, vu: VirtualUser) -> None:
        flow = self.next_flow(vu)
        vu.tags["flow"] = flow
        await invoke(self._workloads[flow], vu)
