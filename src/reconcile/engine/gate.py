"""ResourceGate — at most one workflow in flight per cluster resource.

WHY
───
Two reconciles of the same resource racing each other produce conflicts
at best and flapping state at worst.  The gate serializes workflows per
resource key: one admitted Task, a FIFO of waiting requests behind it,
and the next request admitted only after the current Task is Done.

ARCHITECTURE
────────────
::

    ResourceGate(scheduler)
      ├── .admit_or_queue(key, step, ctx, on_done)     ─ start now or wait in FIFO
      ├── .cancel_and_replace(key, step, ctx, on_done) ─ cancel active, queue replacement
      ├── .start_if_idle(key, step, ctx, on_done)      ─ start now or drop
      ├── .cancel(key, drop_queued)                    ─ stop everything for a key
      └── .active(key) / .queued(key) / .keys()

    per key:  _GateEntry(active: Task | None, queue: deque[_Pending])

    Task Done ──► user on_done(outcome) ──► _advance(key) ──► admit next | drop entry

    The lock guards only the entries; it is never held while a step
    runs, while an ``on_done`` callback runs, or while a Task is
    cancelled.  A Task is recorded as admitted before it is submitted,
    so its completion always finds itself in the entry.

Failed and crashed workflows advance the gate exactly like successful
ones, so a key is never left blocked by an uncaught exception.

Example::

    gate = ResourceGate(scheduler)
    gate.admit_or_queue("ns1/domain1", reconcile_domain, {"key": "ns1/domain1"})
    # A newer spec arrived; the running reconcile is stale:
    gate.cancel_and_replace("ns1/domain1", reconcile_domain, {"key": "ns1/domain1"})
"""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable, Hashable, Mapping
from dataclasses import dataclass, field
from functools import partial
from typing import Any

from reconcile.core.errors import SchedulerClosedError, TaskCancelledError
from reconcile.core.logging import get_logger
from reconcile.engine.context import Context, as_context
from reconcile.engine.outcome import TaskOutcome, TaskStatus
from reconcile.engine.scheduler import Scheduler
from reconcile.engine.steps import Step
from reconcile.engine.task import OnDone, Task

logger = get_logger(__name__)


@dataclass
class _Pending:
    """A request waiting for its key to become free."""

    step: Step | Callable[[Context], Any]
    context: Context
    on_done: OnDone | None
    name: str


@dataclass
class _GateEntry:
    active: Task | None = None
    queue: deque[_Pending] = field(default_factory=deque)


class ResourceGate:
    """Per-resource-key admission control for Tasks."""

    def __init__(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler
        self._lock = threading.Lock()
        self._entries: dict[Hashable, _GateEntry] = {}

    # ------------------------------------------------------------------ #
    # Admission
    # ------------------------------------------------------------------ #

    def admit_or_queue(
        self,
        key: Hashable,
        step: Step | Callable[[Context], Any],
        context: Context | Mapping[Any, Any] | None = None,
        on_done: OnDone | None = None,
        *,
        name: str | None = None,
    ) -> Task | None:
        """Start a Task for ``key`` now, or queue the request behind the active one.

        Returns:
            The started Task, or None if the request was queued.
        """
        pending = self._pending(key, step, context, on_done, name)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.active is not None:
                entry.queue.append(pending)
                depth = len(entry.queue)
                task = None
            else:
                task = self._admit_locked(key, pending)

        if task is None:
            logger.debug("gate.queued", key=str(key), depth=depth)
            return None
        self._scheduler.submit(task)
        return task

    def cancel_and_replace(
        self,
        key: Hashable,
        step: Step | Callable[[Context], Any],
        context: Context | Mapping[Any, Any] | None = None,
        on_done: OnDone | None = None,
        *,
        name: str | None = None,
    ) -> Task | None:
        """Supersede the in-flight workflow for ``key``.

        The active Task (if any) is cancelled and the replacement is queued
        behind it; it is admitted once the cancellation is acknowledged.
        Never blocks. Returns the replacement Task if the key was idle and
        it started right away, otherwise None.
        """
        pending = self._pending(key, step, context, on_done, name)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.active is not None:
                victim = entry.active
                entry.queue.append(pending)
                task = None
            else:
                victim = None
                task = self._admit_locked(key, pending)

        if victim is not None:
            logger.info("gate.superseding", key=str(key), task_id=victim.task_id)
            victim.cancel()
            return None
        self._scheduler.submit(task)
        return task

    def start_if_idle(
        self,
        key: Hashable,
        step: Step | Callable[[Context], Any],
        context: Context | Mapping[Any, Any] | None = None,
        on_done: OnDone | None = None,
        *,
        name: str | None = None,
    ) -> Task | None:
        """Start a Task only if nothing is in flight for ``key``.

        A request that finds the key busy is dropped: None is returned and
        ``on_done`` is never called.
        """
        pending = self._pending(key, step, context, on_done, name)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.active is not None:
                task = None
            else:
                task = self._admit_locked(key, pending)

        if task is None:
            logger.debug("gate.busy_dropped", key=str(key))
            return None
        self._scheduler.submit(task)
        return task

    def cancel(self, key: Hashable, drop_queued: bool = True) -> bool:
        """Cancel the active Task for ``key`` and, optionally, its queue.

        Dropped requests are reported to their ``on_done`` as cancelled
        outcomes without a Task. Returns True if anything was cancelled.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            victim = entry.active
            dropped: list[_Pending] = []
            if drop_queued:
                dropped = list(entry.queue)
                entry.queue.clear()

        for pending in dropped:
            self._report_dropped(pending, TaskStatus.CANCELLED, TaskCancelledError("Cancelled before start"))
        if victim is not None:
            victim.cancel()
        return victim is not None or bool(dropped)

    # ------------------------------------------------------------------ #
    # Introspection
    # ------------------------------------------------------------------ #

    def active(self, key: Hashable) -> Task | None:
        with self._lock:
            entry = self._entries.get(key)
            return entry.active if entry is not None else None

    def queued(self, key: Hashable) -> int:
        with self._lock:
            entry = self._entries.get(key)
            return len(entry.queue) if entry is not None else 0

    def keys(self) -> list[Hashable]:
        """Keys that currently have an admitted Task."""
        with self._lock:
            return [k for k, e in self._entries.items() if e.active is not None]

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #

    def _pending(
        self,
        key: Hashable,
        step: Step | Callable[[Context], Any],
        context: Context | Mapping[Any, Any] | None,
        on_done: OnDone | None,
        name: str | None,
    ) -> _Pending:
        return _Pending(step=step, context=as_context(context), on_done=on_done, name=name or str(key))

    def _admit_locked(self, key: Hashable, pending: _Pending) -> Task:
        """Create and record the admitted Task (caller holds the lock)."""
        task = self._scheduler.create_task(
            pending.step,
            pending.context,
            on_done=partial(self._on_task_done, key, pending.on_done),
            name=pending.name,
        )
        self._entries.setdefault(key, _GateEntry()).active = task
        logger.debug("gate.admitted", key=str(key), task_id=task.task_id)
        return task

    def _on_task_done(self, key: Hashable, on_done: OnDone | None, outcome: TaskOutcome) -> None:
        try:
            if on_done is not None:
                on_done(outcome)
        finally:
            self._advance(key, outcome.task_id)

    def _advance(self, key: Hashable, finished_task_id: str | None) -> None:
        dropped: list[_Pending] = []
        task: Task | None = None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry.active is None or entry.active.task_id != finished_task_id:
                return
            entry.active = None
            while entry.queue:
                pending = entry.queue.popleft()
                try:
                    task = self._admit_locked(key, pending)
                except SchedulerClosedError:
                    dropped.append(pending)
                    continue
                break
            if entry.active is None and not entry.queue:
                del self._entries[key]

        for pending in dropped:
            self._report_dropped(pending, TaskStatus.FAILED, SchedulerClosedError(self._scheduler.name))
        if task is not None:
            self._scheduler.submit(task)

    def _report_dropped(self, pending: _Pending, status: TaskStatus, error: Exception) -> None:
        if pending.on_done is None:
            return
        outcome = TaskOutcome(
            task_id=None,
            name=pending.name,
            status=status,
            error=error,
            context=pending.context,
        )
        try:
            pending.on_done(outcome)
        except Exception:
            logger.exception("gate.on_done_failed", task=pending.name)


__all__ = ["ResourceGate"]
