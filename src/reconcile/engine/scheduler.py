"""Scheduler — bounded worker pool plus delay timer that runs Tasks.

WHY
───
A controller has many more workflows in flight than it has threads:
most of them are waiting on the cluster API, on backoff, or on child
workflows.  The Scheduler only spends a worker on a Task while it is
actually executing steps; suspension and retry delays release the
worker entirely.

ARCHITECTURE
────────────
::

    Scheduler(max_workers, settings)
      ├── .start(step, context, on_done)   ─ create + submit a Task
      ├── .create_task(...) / .submit(task) ─ the two halves (used by ResourceGate)
      ├── .call_later(delay, callback)     ─ DelayTimer (retry, join timeouts)
      ├── .active_tasks()                  ─ snapshot of unfinished Tasks
      ├── .stats()                         ─ counters
      └── .shutdown(wait, cancel_tasks)

    ThreadPoolExecutor  ◄── _dispatch(task) ◄── submit / resume / timer / last child
          │
          ▼
    worker: LogContext(task_id, task) → task._run()  (one slice)

    A Task is dispatched only from a parked or new state, so it is
    executed by at most one worker at any instant; successive slices may
    land on different workers.

BEST PRACTICES
──────────────
- Never block inside a step (``time.sleep``, ``future.result()``,
  ``task.wait()``): return ``Retry`` or ``Suspend`` instead.
- Do not call ``shutdown(wait=True)`` from a step or an ``on_done``
  callback; it would join the worker it runs on.

Example::

    with Scheduler(max_workers=4) as scheduler:
        task = scheduler.start(chain(read_domain, make_pods), {"key": "ns/d1"})
        outcome = task.wait(timeout=30)
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, fields
from typing import Any

from reconcile.core.errors import SchedulerClosedError
from reconcile.core.logging import LogContext, get_logger
from reconcile.core.settings import EngineSettings, get_settings
from reconcile.engine.context import Context, as_context
from reconcile.engine.outcome import TaskOutcome, TaskStatus
from reconcile.engine.steps import Step
from reconcile.engine.task import OnDone, Task
from reconcile.engine.timers import DelayTimer, TimerHandle

logger = get_logger(__name__)


@dataclass
class SchedulerStats:
    """Aggregate counters for a scheduler."""

    started: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    retries: int = 0
    suspensions: int = 0
    active: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class Scheduler:
    """Runs Tasks on a fixed-size worker pool."""

    def __init__(
        self,
        max_workers: int | None = None,
        *,
        name: str | None = None,
        settings: EngineSettings | None = None,
    ) -> None:
        """
        Args:
            max_workers: Worker pool size. Defaults to ``settings.max_workers``.
            name: Used for thread names and logs. Defaults to
                ``settings.scheduler_name``.
            settings: Engine settings; the cached :func:`get_settings` when omitted.
        """
        settings = settings or get_settings()
        self._settings = settings
        self.name = name or settings.scheduler_name
        self.max_workers = max_workers if max_workers is not None else settings.max_workers
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {self.max_workers}")
        self.max_steps_per_slice = settings.max_steps_per_slice
        self.fan_out_timeout = settings.fan_out_timeout_seconds

        self._pool = ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix=self.name,
        )
        self._timer = DelayTimer(name=f"{self.name}-timer")
        self._timer.start()

        self._lock = threading.Lock()
        self._active: dict[str, Task] = {}
        self._stats = SchedulerStats()
        self._closed = False

        logger.debug("scheduler.started", scheduler=self.name, workers=self.max_workers)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def start(
        self,
        step: Step | Callable[[Context], Any],
        context: Context | Mapping[Any, Any] | None = None,
        on_done: OnDone | None = None,
        *,
        name: str | None = None,
    ) -> Task:
        """Create a Task for ``step`` over ``context`` and enqueue it."""
        task = self.create_task(step, context, on_done, name=name)
        self.submit(task)
        return task

    def create_task(
        self,
        step: Step | Callable[[Context], Any],
        context: Context | Mapping[Any, Any] | None = None,
        on_done: OnDone | None = None,
        *,
        name: str | None = None,
    ) -> Task:
        """Create a Runnable Task without enqueueing it.

        Raises:
            SchedulerClosedError: after :meth:`shutdown`.
        """
        if self._closed:
            raise SchedulerClosedError(self.name)
        return self._new_task(step, as_context(context), on_done, name=name)

    def submit(self, task: Task) -> None:
        """Enqueue a Task created by :meth:`create_task`."""
        logger.debug("task.started", task=task.name, task_id=task.task_id)
        self._dispatch(task)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` on the timer thread after at least ``delay`` seconds.

        Callbacks must be quick; they share one thread.

        Raises:
            SchedulerClosedError: after :meth:`shutdown`.
        """
        handle = self._call_later(delay, callback)
        if handle is None:
            raise SchedulerClosedError(self.name)
        return handle

    def active_tasks(self) -> list[Task]:
        """Snapshot of Tasks that have not reached Done."""
        with self._lock:
            return list(self._active.values())

    def stats(self) -> SchedulerStats:
        """Return a copy of the current counters."""
        with self._lock:
            self._stats.active = len(self._active)
            return SchedulerStats(**self._stats.to_dict())

    @property
    def closed(self) -> bool:
        return self._closed

    def shutdown(self, wait: bool = True, cancel_tasks: bool = False) -> None:
        """Stop accepting work and release the worker pool.

        With ``cancel_tasks`` every unfinished Task is cancelled first.
        Otherwise parked Tasks are abandoned: a later resume finishes them
        as failed with :class:`SchedulerClosedError`.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            pending = list(self._active.values())

        logger.info(
            "scheduler.shutting_down",
            scheduler=self.name,
            active=len(pending),
            cancel_tasks=cancel_tasks,
        )
        if cancel_tasks:
            for task in pending:
                task.cancel()
        self._pool.shutdown(wait=wait)
        self._timer.stop(timeout=self._settings.shutdown_timeout_seconds)
        logger.info("scheduler.shutdown_complete", scheduler=self.name, stats=self.stats().to_dict())

    def __enter__(self) -> Scheduler:
        return self

    def __exit__(self, *args: Any) -> None:
        self.shutdown(wait=True, cancel_tasks=True)

    def __repr__(self) -> str:
        return f"Scheduler({self.name}, workers={self.max_workers}, active={len(self._active)})"

    # ------------------------------------------------------------------ #
    # Engine-internal hooks (used by Task)
    # ------------------------------------------------------------------ #

    def _new_task(
        self,
        step: Step | Callable[[Context], Any],
        context: Context,
        on_done: OnDone | None = None,
        *,
        name: str | None = None,
        parent: Task | None = None,
    ) -> Task:
        task = Task(
            self,
            step,
            context,
            on_done,
            name=name,
            parent=parent,
            breadcrumb_limit=self._settings.breadcrumb_limit,
        )
        with self._lock:
            self._active[task.task_id] = task
            self._stats.started += 1
        return task

    def _dispatch(self, task: Task) -> None:
        """Hand a Task to the pool; finish it if the pool is gone."""
        try:
            self._pool.submit(self._run_slice, task)
        except RuntimeError:
            status = TaskStatus.CANCELLED if task.cancel_requested else TaskStatus.FAILED
            error = None if task.cancel_requested else SchedulerClosedError(self.name)
            task._finish(status, error=error)

    def _call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle | None:
        if self._closed:
            return None
        try:
            return self._timer.schedule(delay, callback)
        except RuntimeError:
            return None

    def _run_slice(self, task: Task) -> None:
        with LogContext(task_id=task.task_id, task=task.name):
            try:
                task._run()
            except Exception as exc:
                # Task._run handles step failures itself; this guards the
                # bookkeeping so a resource key is never left blocked.
                logger.exception("scheduler.slice_crashed", task=task.name)
                task._finish(TaskStatus.FAILED, error=exc)

    def _task_finished(self, task: Task, outcome: TaskOutcome) -> None:
        with self._lock:
            self._active.pop(task.task_id, None)
            if outcome.status is TaskStatus.SUCCEEDED:
                self._stats.succeeded += 1
            elif outcome.status is TaskStatus.FAILED:
                self._stats.failed += 1
            else:
                self._stats.cancelled += 1

    def _count(self, counter: str) -> None:
        with self._lock:
            setattr(self._stats, counter, getattr(self._stats, counter) + 1)


__all__ = ["Scheduler", "SchedulerStats"]
