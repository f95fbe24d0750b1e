"""Periodic single-flight worker that picks and dispatches backlog tasks."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

from persona_orchestrator.engine.dispatch import DispatchResult, TaskDispatcher
from persona_orchestrator.engine.models import (
    ACTIVE_STATUSES,
    TaskStatus,
    TaskUpdate,
    TaskView,
    WorkerState,
)
from persona_orchestrator.engine.store import TaskStore, WorkerStateStore
from persona_orchestrator.storage.common import utc_now

logger = logging.getLogger(__name__)

FAST_INTERVAL = "*/2 * * * *"
NORMAL_INTERVAL = "*/5 * * * *"
SLOW_INTERVAL = "*/10 * * * *"

CADENCE_SECONDS: dict[str, int] = {
    FAST_INTERVAL: 120,
    NORMAL_INTERVAL: 300,
    SLOW_INTERVAL: 600,
}

HIGH_WORKLOAD = 10
MEDIUM_WORKLOAD = 5

SCHEDULER_AUTHOR = "Task Worker"


class SchedulerStore(TaskStore, WorkerStateStore, Protocol):
    """Task and worker-state persistence used by the scheduler."""


@dataclass(slots=True)
class TickSummary:
    """Outcome of one scheduler tick."""

    skipped: bool = False
    task_id: str | None = None
    result: DispatchResult | None = None
    error: str | None = None
    workload: int = 0
    interval: str = NORMAL_INTERVAL


@dataclass(slots=True)
class LoopSummary:
    """Aggregate loop counters for CLI reporting."""

    ticks: int = 0
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    idle: int = 0
    errors: int = 0

    def add(self, summary: TickSummary) -> None:
        self.ticks += 1
        if summary.skipped:
            self.skipped += 1
        elif summary.error is not None:
            self.errors += 1
        elif summary.result is None:
            self.idle += 1
        else:
            self.dispatched += 1
            if summary.result.succeeded:
                self.succeeded += 1
            else:
                self.failed += 1


def interval_for_workload(workload: int) -> str:
    """Poll faster as the number of active tasks grows."""

    if workload >= HIGH_WORKLOAD:
        return FAST_INTERVAL
    if workload >= MEDIUM_WORKLOAD:
        return NORMAL_INTERVAL
    return SLOW_INTERVAL


def interval_seconds(cadence: str) -> int:
    seconds = CADENCE_SECONDS.get(cadence)
    if seconds is None:
        logger.warning("Unknown worker interval %r, using %s", cadence, NORMAL_INTERVAL)
        return CADENCE_SECONDS[NORMAL_INTERVAL]
    return seconds


def select_next_task(tasks: Iterable[TaskView]) -> TaskView | None:
    """Highest priority assigned backlog task; oldest first, then by id."""

    candidates = [
        task for task in tasks if task.status == TaskStatus.BACKLOG and task.assignee
    ]
    if not candidates:
        return None
    return min(candidates, key=lambda task: (-task.priority, task.created_at, task.task_id))


class Scheduler:
    """Run at most one task per tick and adapt the tick cadence to workload."""

    def __init__(self, store: SchedulerStore, dispatcher: TaskDispatcher) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self._stop_event = threading.Event()

    def recover_on_startup(self) -> WorkerState:
        """Clear a stale running flag left by a crashed process."""

        state = self.store.get_worker_state()
        if state.is_running:
            logger.warning("Resetting stale worker running flag")
            state.is_running = False
            self.store.save_worker_state(state)
        return state

    def set_enabled(self, enabled: bool) -> WorkerState:
        state = self.store.get_worker_state()
        state.enabled = enabled
        self.store.save_worker_state(state)
        return state

    def tick(self) -> TickSummary:
        if not self.store.try_acquire_worker_lock():
            state = self.store.get_worker_state()
            logger.debug("Worker tick skipped: previous tick still running")
            return TickSummary(skipped=True, workload=state.workload, interval=state.interval)

        state = self.store.get_worker_state()
        summary = TickSummary()
        task: TaskView | None = None
        try:
            task = select_next_task(self.store.get_all_tasks())
            if task is None:
                logger.debug("No assigned backlog tasks")
            else:
                summary.task_id = task.task_id
                state.last_task_id = task.task_id
                summary.result = self.dispatcher.dispatch(task)
        except Exception as error:
            logger.exception("Worker tick failed")
            summary.error = f"{type(error).__name__}: {error}"
            if task is not None:
                self._revert_task(task, summary.error)
        finally:
            self._finish_tick(state, summary)
        return summary

    def run_loop(
        self,
        *,
        max_ticks: int | None = None,
        poll_seconds: float | None = None,
    ) -> LoopSummary:
        """Tick while enabled until stopped or ``max_ticks`` iterations ran.

        Args:
            max_ticks: Stop after this many iterations (None = until a signal).
            poll_seconds: Fixed wait between iterations instead of the adaptive cadence.
        """

        self.recover_on_startup()
        aggregate = LoopSummary()
        iterations = 0
        self._stop_event.clear()
        with self._signal_handlers():
            while not self._stop_event.is_set():
                state = self.store.get_worker_state()
                if state.enabled:
                    summary = self.tick()
                    aggregate.add(summary)
                    cadence = summary.interval
                else:
                    logger.debug("Worker disabled; waiting")
                    cadence = state.interval
                iterations += 1
                if max_ticks is not None and iterations >= max_ticks:
                    break
                wait = poll_seconds if poll_seconds is not None else interval_seconds(cadence)
                self._stop_event.wait(wait)
        return aggregate

    def stop(self) -> None:
        self._stop_event.set()

    def _finish_tick(self, state: WorkerState, summary: TickSummary) -> None:
        state.is_running = False
        state.last_run = utc_now()
        try:
            state.enabled = self.store.get_worker_state().enabled
            state.workload = self.store.count_tasks(ACTIVE_STATUSES)
            state.interval = interval_for_workload(state.workload)
        except Exception:
            logger.exception("Failed to measure workload")
        summary.workload = state.workload
        summary.interval = state.interval
        try:
            self.store.save_worker_state(state)
        except Exception:
            logger.exception("Failed to persist worker state")

    def _revert_task(self, task: TaskView, error: str) -> None:
        try:
            self.store.update_task(task.task_id, TaskUpdate(status=TaskStatus.BACKLOG))
            self.store.add_task_comment(
                task.task_id,
                author=SCHEDULER_AUTHOR,
                body=f"**EXECUTION FAILED** (unexpected_error)\n\n{error}",
            )
        except Exception:
            logger.exception("Failed to revert task %s to backlog", task.task_id)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s, stopping after current tick", signal.Signals(signum).name)
            self.stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
