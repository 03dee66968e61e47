"""
Worker pool with graceful scale-down.

Workers are asyncio tasks that loop until their own stop signal is set. Scaling
down only sets signals; a worker finishes its current iteration before exiting,
and is pruned from the pool once its task is done.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterator, Optional

logger = logging.getLogger(__name__)

WorkerFactory = Callable[[int, asyncio.Event], Awaitable[None]]


class WorkerState(str, Enum):
    """Worker lifecycle."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass
class Worker:
    """One concurrent execution slot."""

    id: int
    stop_signal: asyncio.Event = field(default_factory=asyncio.Event)
    state: WorkerState = WorkerState.IDLE
    task: Optional[asyncio.Task] = None
    forced: bool = False

    @property
    def live(self) -> bool:
        return self.state in (WorkerState.IDLE, WorkerState.RUNNING)


class WorkerPool:
    """
    Tracks workers for one scenario and scales them to a target count.

    Args:
        worker_factory: ``async (worker_id, stop_signal) -> None`` loop body
        min_workers: Floor applied by ``scale_to``
        max_workers: Cap applied by ``scale_to``
        id_sequence: Shared id source so ids stay unique across pools
    """

    def __init__(
        self,
        worker_factory: WorkerFactory,
        min_workers: int = 0,
        max_workers: int = 10_000,
        id_sequence: Optional[Iterator[int]] = None,
    ):
        self.worker_factory = worker_factory
        self.min_workers = min_workers
        self.max_workers = max_workers
        self._ids = id_sequence if id_sequence is not None else itertools.count()
        self._workers: dict[int, Worker] = {}
        self.orphans: list[Worker] = []
        self.spawned = 0

    @property
    def count(self) -> int:
        """Workers whose task has not finished (including stopping ones)."""
        return sum(1 for w in self._workers.values() if w.state != WorkerState.STOPPED)

    def get(self, worker_id: int) -> Optional[Worker]:
        return self._workers.get(worker_id)

    def workers(self) -> list[Worker]:
        return list(self._workers.values())

    def running_worker_ids(self) -> list[int]:
        """Ids of workers that have not been asked to stop, oldest first."""
        return sorted(wid for wid, w in self._workers.items() if w.live)

    def prune_done(self) -> list[Worker]:
        """Remove workers whose task finished. Only Stopped workers are removed."""
        removed: list[Worker] = []
        for wid, w in list(self._workers.items()):
            if w.state == WorkerState.STOPPED:
                removed.append(self._workers.pop(wid))
        return removed

    async def _run(self, worker: Worker) -> None:
        worker.state = (
            WorkerState.STOPPING if worker.stop_signal.is_set() else WorkerState.RUNNING
        )
        try:
            await self.worker_factory(worker.id, worker.stop_signal)
        finally:
            worker.state = WorkerState.STOPPED

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Worker task crashed: %s", exc, exc_info=exc)

    async def spawn_one(self) -> int:
        """Start one worker and return its id."""
        wid = int(next(self._ids))
        worker = Worker(id=wid)
        self._workers[wid] = worker
        worker.task = asyncio.create_task(self._run(worker), name=f"worker-{wid}")
        worker.task.add_done_callback(self._on_done)
        self.spawned += 1
        return wid

    def signal_stop(self, worker_id: int) -> None:
        worker = self._workers.get(worker_id)
        if worker is None or not worker.live:
            return
        worker.stop_signal.set()
        worker.state = WorkerState.STOPPING

    async def scale_to(self, target: int) -> tuple[int, int]:
        """
        Spawn or signal workers so the live count matches ``target``.

        Scale-down stops the most recently spawned workers first.

        Returns:
            (spawned, signalled) counts
        """
        self.prune_done()
        target = max(self.min_workers, min(self.max_workers, int(target)))
        running_ids = self.running_worker_ids()
        running = len(running_ids)

        if running < target:
            spawn_n = target - running
            for _ in range(spawn_n):
                await self.spawn_one()
            return spawn_n, 0
        if running > target:
            stop_ids = list(reversed(running_ids))[: running - target]
            for wid in stop_ids:
                self.signal_stop(wid)
            return 0, len(stop_ids)
        return 0, 0

    async def stop_all(self, timeout_seconds: Optional[float] = None) -> list[Worker]:
        """
        Signal every worker and wait for them to finish their iteration.

        Workers still running after ``timeout_seconds`` are not cancelled: they
        are marked ``forced``, moved to ``orphans`` and left to complete on
        their own.

        Returns:
            Workers that did not stop in time
        """
        for wid in list(self._workers):
            self.signal_stop(wid)
        tasks = [w.task for w in self._workers.values() if w.task is not None]
        pending: set[asyncio.Task] = set()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout_seconds)

        stuck: list[Worker] = []
        for w in list(self._workers.values()):
            if w.task is not None and w.task in pending:
                w.forced = True
                stuck.append(w)
                self.orphans.append(w)
                self._workers.pop(w.id, None)
        self.prune_done()
        return stuck
