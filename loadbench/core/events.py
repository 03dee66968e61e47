"""
Structured run events.

Core scheduling code emits events instead of logging progress itself; observers
(the default one writes to ``logging``) decide what to do with them.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Kinds of run events."""

    RUN_STATE_CHANGED = "run_state_changed"
    SCENARIO_STARTED = "scenario_started"
    SCENARIO_FINISHED = "scenario_finished"
    CONCURRENCY_CHANGED = "concurrency_changed"
    ITERATION_FAILED = "iteration_failed"
    THRESHOLD_CROSSED = "threshold_crossed"
    ABORT_REQUESTED = "abort_requested"
    DRAIN_TIMEOUT = "drain_timeout"


@dataclass(frozen=True)
class RunEvent:
    """One structured event."""

    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


EventCallback = Callable[[RunEvent], None]


class EventBus:
    """Fan-out of run events to subscribed callbacks."""

    def __init__(self):
        self._subscribers: List[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def emit(self, event_type: EventType, **data: Any) -> RunEvent:
        event = RunEvent(type=event_type, data=data)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                # A broken observer must not break the run.
                logger.warning("Event observer %r failed: %s", callback, e)
        return event


class LoggingObserver:
    """Writes run events to a logger."""

    _LEVELS = {
        EventType.ITERATION_FAILED: logging.DEBUG,
        EventType.CONCURRENCY_CHANGED: logging.DEBUG,
        EventType.THRESHOLD_CROSSED: logging.WARNING,
        EventType.ABORT_REQUESTED: logging.WARNING,
        EventType.DRAIN_TIMEOUT: logging.WARNING,
    }

    def __init__(self, log: logging.Logger = logger):
        self.log = log

    def __call__(self, event: RunEvent) -> None:
        level = self._LEVELS.get(event.type, logging.INFO)
        if not self.log.isEnabledFor(level):
            return
        d = event.data
        if event.type == EventType.RUN_STATE_CHANGED:
            self.log.log(level, "Run %s: %s -> %s", d.get("run"), d.get("old"), d.get("new"))
        elif event.type == EventType.SCENARIO_STARTED:
            self.log.log(
                level,
                "🚀 Scenario %s started (workload=%s, %d stage(s), %dms)",
                d.get("scenario"),
                d.get("workload"),
                d.get("stages", 0),
                d.get("duration_ms", 0),
            )
        elif event.type == EventType.SCENARIO_FINISHED:
            self.log.log(
                level,
                "✅ Scenario %s finished: peak=%s workers, spawned=%s",
                d.get("scenario"),
                d.get("peak_concurrency"),
                d.get("workers_spawned"),
            )
        elif event.type == EventType.CONCURRENCY_CHANGED:
            self.log.log(
                level,
                "Scenario %s: desired %s -> %s at %.0fms",
                d.get("scenario"),
                d.get("old"),
                d.get("new"),
                d.get("elapsed_ms", 0.0),
            )
        elif event.type == EventType.ITERATION_FAILED:
            self.log.log(
                level,
                "Worker %s iteration failed: %s",
                d.get("worker_id"),
                d.get("error"),
            )
        elif event.type == EventType.THRESHOLD_CROSSED:
            self.log.log(
                level,
                "Threshold %s failed (actual=%s)",
                d.get("threshold"),
                d.get("actual"),
            )
        elif event.type == EventType.ABORT_REQUESTED:
            self.log.log(level, "Abort requested: %s", d.get("reason"))
        elif event.type == EventType.DRAIN_TIMEOUT:
            self.log.log(
                level,
                "Scenario %s: %s worker(s) did not stop within %sms",
                d.get("scenario"),
                d.get("remaining"),
                d.get("grace_ms"),
            )
        else:
            self.log.log(level, "%s %s", event.type.value, d)
