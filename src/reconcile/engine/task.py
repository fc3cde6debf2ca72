"""Task — one live traversal of a step sequence over one Context.

Manifesto:
    A reconcile workflow spends most of its life waiting: on API
    responses, on retry backoff, on child workflows.  A Task is the
    bookkeeping that lets it wait without holding a thread.  Each time it
    parks it bumps a *parking token*; every wake-up source (resume call,
    timer, last child, cancellation) must present the current token, so
    exactly one of them wins and stale or duplicate wake-ups are no-ops.

ARCHITECTURE
────────────
::

                 submit                    Continue (same slice)
      RUNNABLE ──────────► worker slice ───────────────┐
         ▲  ▲                  │   ▲                   │
         │  │      Retry       │   └───────────────────┘
         │  └── timer ◄────────┤
         │                     │ Suspend / FanOut
         │ resume / last child ▼
         └──────────────── SUSPENDED
                               │ cancel()
                               ▼
      CANCELLED ── acknowledged at next step boundary ──► DONE
      Done action / uncaught exception ─────────────────► DONE

    Parking kinds: "suspend" (external resume), "retry" (timer),
    "join" (children).  Only the worker that holds the slice executes
    steps; every wake-up re-enqueues through the Scheduler.
    A join that is cancelled or times out still waits until every child
    has reached Done, so no child outlives its parent.

Related modules:
    scheduler.py  — owns the worker pool and the delay timer
    actions.py    — Action values interpreted here
    gate.py       — per-resource admission built on Task completion
"""

from __future__ import annotations

import threading
import uuid
from collections import deque
from collections.abc import Callable, Mapping
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING, Any

from reconcile.core.errors import FanOutTimeoutError, InvalidActionError, SchedulerClosedError
from reconcile.core.logging import get_logger
from reconcile.engine.actions import (
    CHILD_OUTCOMES,
    Continue,
    Done,
    FanOut,
    Retry,
    Suspend,
)
from reconcile.engine.context import Context
from reconcile.engine.outcome import TaskOutcome, TaskStatus
from reconcile.engine.steps import Step, as_step, step_name

if TYPE_CHECKING:
    from reconcile.engine.scheduler import Scheduler
    from reconcile.engine.timers import TimerHandle

logger = get_logger(__name__)

OnDone = Callable[[TaskOutcome], Any]

_NO_ERROR: Any = object()


def _check_resume_value(value: Any, failed: bool) -> None:
    if not failed and value is not None and not isinstance(value, Mapping):
        raise TypeError(
            f"resume() takes a Context, a mapping or an exception, not {type(value).__name__}"
        )


class TaskState(str, Enum):
    """Lifecycle state of a Task."""

    RUNNABLE = "runnable"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"  # requested, not yet acknowledged
    DONE = "done"


class Resumption:
    """Handle for one particular suspension of a Task.

    Handed to ``Suspend.on_suspend``. Only the first ``resume``/``fail``
    call counts; later calls, or calls after the Task was cancelled,
    return False.
    """

    __slots__ = ("_task", "_token")

    def __init__(self, task: Task, token: int) -> None:
        self._task = task
        self._token = token

    @property
    def task(self) -> Task:
        return self._task

    def resume(self, value: Context | Mapping[Any, Any] | None = None) -> bool:
        """Continue the Task; a Context replaces, a mapping is merged."""
        return self._task._resume(self._token, value, failed=False)

    def fail(self, error: BaseException) -> bool:
        """Finish the Task as failed with ``error``."""
        return self._task._resume(self._token, error, failed=True)


class Task:
    """A workflow in flight.

    Created by :meth:`Scheduler.create_task`; collaborators interact with
    it through :meth:`resume`, :meth:`cancel` and :meth:`wait`.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        step: Step,
        context: Context,
        on_done: OnDone | None = None,
        *,
        name: str | None = None,
        parent: Task | None = None,
        breadcrumb_limit: int = 64,
    ) -> None:
        self.task_id = uuid.uuid4().hex
        self._step: Step | None = as_step(step)
        self.name = name or step_name(self._step)
        self.parent = parent
        self.context = context
        self._scheduler = scheduler
        self._on_done = on_done

        self._lock = threading.RLock()
        self._state = TaskState.RUNNABLE
        self._cancel_requested = False
        self._token = 0
        self._parked: str | None = None
        self._pending_error: Any = _NO_ERROR
        self._timer: TimerHandle | None = None

        # Set while a worker executes this Task's steps
        self._running = False
        self._early_resume: tuple[Any, bool] | None = None

        # Fan-out bookkeeping
        self._children: list[Task] = []
        self._child_outcomes: list[TaskOutcome | None] = []
        self._unfinished: set[int] = set()
        self._join_step: Step | None = None

        self._breadcrumbs: deque[str] = deque(maxlen=breadcrumb_limit)
        self._outcome: TaskOutcome | None = None
        self._done_event = threading.Event()

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def state(self) -> TaskState:
        return self._state

    @property
    def done(self) -> bool:
        return self._state is TaskState.DONE

    @property
    def outcome(self) -> TaskOutcome | None:
        return self._outcome

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def children(self) -> list[Task]:
        with self._lock:
            return list(self._children)

    def breadcrumbs(self) -> str:
        """Trail of visited steps, e.g. ``"read -> [suspend] -> patch"``."""
        return " -> ".join(self._breadcrumbs)

    def wait(self, timeout: float | None = None) -> TaskOutcome | None:
        """Block the calling thread until the Task is Done.

        Never call this from a step: it would hold a worker.
        """
        self._done_event.wait(timeout)
        return self._outcome

    def __repr__(self) -> str:
        return f"Task({self.name}, {self._state.value}, id={self.task_id[:8]})"

    # =========================================================================
    # External control
    # =========================================================================

    def resume(self, value: Context | Mapping[Any, Any] | BaseException | None = None) -> bool:
        """Complete the current suspension.

        ``value`` may be a Context (replaces the Task's Context), a mapping
        (merged into it), None, or an exception (the Task fails with it).

        A resume that arrives while a step is still running (a fast callback
        for a call the step started) is held and completes the next
        suspension of that slice as soon as it parks. The ``Resumption``
        handed to ``Suspend.on_suspend`` is bound to one suspension and is
        the race-free way to wire callbacks.

        Returns False when there is nothing to resume, e.g. on a second call.
        """
        failed = isinstance(value, BaseException)
        _check_resume_value(value, failed)
        with self._lock:
            token = self._token
            early = (
                self._running
                and self._state is TaskState.RUNNABLE
                and self._parked is None
                and not self._cancel_requested
                and self._early_resume is None
            )
            if early:
                self._early_resume = (value, failed)
        if early:
            logger.debug("task.resume_held", task=self.name, task_id=self.task_id)
            return True
        return self._resume(token, value, failed=failed)

    def cancel(self) -> bool:
        """Request cooperative cancellation.

        A running step finishes undisturbed; the Task stops at the next step
        boundary. A suspended or retrying Task is woken so the cancellation
        is acknowledged promptly. A fan-out parent cancels its unfinished
        children and reaches Done only after every one of them has.
        Returns False if the Task was already Done.
        """
        with self._lock:
            if self._state is TaskState.DONE:
                return False
            if self._cancel_requested:
                return True
            self._cancel_requested = True
            self._state = TaskState.CANCELLED
            stragglers: list[Task] = []
            if self._parked == "join":
                # Stays parked; the last child to finish wakes it.
                stragglers = [self._children[index] for index in sorted(self._unfinished)]
                if self._timer is not None:
                    self._timer.cancel()
                    self._timer = None
            wake = self._parked is not None and not stragglers
            if wake:
                self._unpark_locked()

        logger.info(
            "task.cancel_requested",
            task=self.name,
            task_id=self.task_id,
            parked=wake,
            children=len(stragglers),
        )
        for child in stragglers:
            child.cancel()
        if wake:
            self._scheduler._dispatch(self)
        return True

    # =========================================================================
    # Worker slice
    # =========================================================================

    def _run(self) -> None:
        """Execute steps until the Task parks, yields or finishes.

        Called by exactly one worker at a time.
        """
        slice_limit = self._scheduler.max_steps_per_slice
        executed = 0
        with self._lock:
            self._running = self._state is not TaskState.DONE
        while True:
            with self._lock:
                if self._state is TaskState.DONE:
                    return
                cancelled = self._cancel_requested
                error = self._pending_error
                self._pending_error = _NO_ERROR
                current = self._step

            if cancelled:
                self._finish(TaskStatus.CANCELLED)
                return
            if error is not _NO_ERROR:
                self._finish(TaskStatus.FAILED, error=error)
                return
            if current is None:
                self._finish(TaskStatus.SUCCEEDED)
                return
            if executed >= slice_limit:
                with self._lock:
                    self._end_slice_locked()
                logger.debug("task.yielded", task=self.name, steps=executed)
                self._scheduler._dispatch(self)
                return

            name = step_name(current)
            self._breadcrumbs.append(name)
            try:
                action = current.execute(self.context)
                executed += 1
                keep_going = self._apply(action, current, name)
            except Exception as exc:
                self._finish(TaskStatus.FAILED, error=exc, step=name)
                return
            if not keep_going:
                return

    def _apply(self, action: Any, current: Step, name: str) -> bool:
        """Interpret one Action. Returns True to keep running this slice."""
        if isinstance(action, Continue):
            with self._lock:
                self._step = as_step(action.step) if action.step is not None else None
            return True

        if isinstance(action, Done):
            if action.error is not None:
                self._finish(TaskStatus.FAILED, result=action.result, error=action.error, step=name)
            else:
                self._finish(TaskStatus.SUCCEEDED, result=action.result)
            return False

        if isinstance(action, Retry):
            return self._park_retry(action, current)

        if isinstance(action, Suspend):
            return self._park_suspend(action)

        if isinstance(action, FanOut):
            return self._park_join(action)

        raise InvalidActionError(name, action)

    # =========================================================================
    # Parking
    # =========================================================================

    def _park_retry(self, action: Retry, current: Step) -> bool:
        with self._lock:
            if self._cancel_requested:
                return True
            self._step = as_step(action.step) if action.step is not None else current
            self._token += 1
            self._parked = "retry"
            self._end_slice_locked()
            self._breadcrumbs.append("[retry]")
            self._timer = self._scheduler._call_later(
                action.delay, partial(self._wake_from_timer, self._token)
            )
            closed = self._timer is None
            if closed:
                self._unpark_locked()
            else:
                self._scheduler._count("retries")
        if closed:
            self._finish(TaskStatus.FAILED, error=SchedulerClosedError(self._scheduler.name))
            return False
        logger.debug("task.retry_scheduled", task=self.name, delay=action.delay)
        return False

    def _park_suspend(self, action: Suspend) -> bool:
        with self._lock:
            if self._cancel_requested:
                return True
            self._step = as_step(action.step) if action.step is not None else None
            self._token += 1
            self._parked = "suspend"
            self._state = TaskState.SUSPENDED
            self._breadcrumbs.append("[suspend]")
            resumption = Resumption(self, self._token)
            self._scheduler._count("suspensions")
            early = self._early_resume
            self._end_slice_locked()
        logger.debug("task.suspended", task=self.name)

        if early is not None:
            value, failed = early
            self._resume(resumption._token, value, failed=failed)

        # Registration runs after parking so an immediate callback finds
        # the Task suspended.
        if action.on_suspend is not None:
            try:
                action.on_suspend(resumption)
            except Exception as exc:
                if not resumption.fail(exc):
                    logger.exception("task.on_suspend_failed_after_resume", task=self.name)
        return False

    def _park_join(self, action: FanOut) -> bool:
        join = as_step(action.join) if action.join is not None else None
        # Resolved up front so a bad branch fails the parent before any
        # child is registered with the scheduler.
        child_steps = [as_step(branch.step) for branch in action.branches]
        with self._lock:
            if self._cancel_requested:
                return True
            if not action.branches:
                self.context[CHILD_OUTCOMES] = []
                self._step = join
                return True

            self._token += 1
            token = self._token
            self._parked = "join"
            self._state = TaskState.SUSPENDED
            self._end_slice_locked()
            self._join_step = join
            self._breadcrumbs.append(f"[fan-out x{len(action.branches)}]")
            self._child_outcomes = [None] * len(action.branches)
            self._unfinished = set(range(len(action.branches)))
            self._children = []
            for index, (branch, child_step) in enumerate(zip(action.branches, child_steps)):
                if branch.context is not None:
                    child_context = branch.context
                elif branch.fork:
                    child_context = self.context.fork()
                else:
                    child_context = self.context
                self._children.append(
                    self._scheduler._new_task(
                        child_step,
                        child_context,
                        on_done=partial(self._child_done, token, index),
                        name=f"{self.name}[{index}]",
                        parent=self,
                    )
                )
            children = list(self._children)

            timeout = action.timeout if action.timeout is not None else self._scheduler.fan_out_timeout
            if timeout is not None:
                # None on a closed scheduler; the children then fail on dispatch.
                self._timer = self._scheduler._call_later(
                    timeout, partial(self._join_timed_out, token, timeout)
                )

        logger.debug("task.fan_out", task=self.name, children=len(children), timeout=timeout)
        for child in children:
            self._scheduler._dispatch(child)
        return False

    def _unpark_locked(self) -> None:
        """Invalidate the current parking (caller holds the lock)."""
        self._token += 1
        self._parked = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _end_slice_locked(self) -> None:
        """The worker is about to let go of this Task (caller holds the lock)."""
        self._running = False
        self._early_resume = None

    # =========================================================================
    # Wake-up sources
    # =========================================================================

    def _resume(self, token: int, value: Any, *, failed: bool) -> bool:
        _check_resume_value(value, failed)
        with self._lock:
            if token != self._token or self._parked != "suspend":
                stale = True
            else:
                stale = False
                self._unpark_locked()
                self._state = TaskState.RUNNABLE
                if failed:
                    self._pending_error = value
                elif isinstance(value, Context):
                    self.context = value
                elif value is not None:
                    self.context.update(value)
        if stale:
            logger.warning(
                "task.resume_ignored",
                task=self.name,
                task_id=self.task_id,
                state=self._state.value,
            )
            return False
        self._scheduler._dispatch(self)
        return True

    def _wake_from_timer(self, token: int) -> None:
        with self._lock:
            if token != self._token or self._parked != "retry":
                return
            self._timer = None
            self._unpark_locked()
        self._scheduler._dispatch(self)

    def _child_done(self, token: int, index: int, outcome: TaskOutcome) -> None:
        with self._lock:
            if token != self._token or self._parked != "join":
                return
            if index not in self._unfinished:
                return
            self._unfinished.discard(index)
            # A timed-out child keeps its timeout outcome unless it finished
            # on its own before noticing the cancellation.
            if self._child_outcomes[index] is None or not outcome.cancelled:
                self._child_outcomes[index] = outcome
            if self._unfinished:
                return
            self._complete_join_locked()
        self._scheduler._dispatch(self)

    def _join_timed_out(self, token: int, timeout: float) -> None:
        """Cancel the stragglers; the join runs once they have all stopped."""
        with self._lock:
            if token != self._token or self._parked != "join":
                return
            self._timer = None
            stragglers: list[Task] = []
            for index in sorted(self._unfinished):
                child = self._children[index]
                stragglers.append(child)
                self._child_outcomes[index] = TaskOutcome(
                    task_id=child.task_id,
                    name=child.name,
                    status=TaskStatus.CANCELLED,
                    error=FanOutTimeoutError(index, timeout),
                    context=child.context,
                    breadcrumbs=child.breadcrumbs(),
                )

        logger.warning("task.fan_out_timeout", task=self.name, stragglers=len(stragglers), timeout=timeout)
        for child in stragglers:
            child.cancel()

    def _complete_join_locked(self) -> None:
        self._unpark_locked()
        self.context[CHILD_OUTCOMES] = list(self._child_outcomes)
        self._step = self._join_step
        self._join_step = None
        if not self._cancel_requested:
            self._state = TaskState.RUNNABLE

    # =========================================================================
    # Completion
    # =========================================================================

    def _finish(
        self,
        status: TaskStatus,
        *,
        result: Any = None,
        error: Any = None,
        step: str | None = None,
    ) -> None:
        with self._lock:
            if self._state is TaskState.DONE:
                return
            self._state = TaskState.DONE
            self._unpark_locked()
            self._end_slice_locked()
            self._step = None
            outcome = TaskOutcome(
                task_id=self.task_id,
                name=self.name,
                status=status,
                result=result,
                error=error,
                context=self.context,
                breadcrumbs=self.breadcrumbs(),
            )
            self._outcome = outcome

        if status is TaskStatus.FAILED:
            logger.warning(
                "task.failed",
                task=self.name,
                task_id=self.task_id,
                step=step,
                error=repr(error),
                breadcrumbs=outcome.breadcrumbs,
                exc_info=error if isinstance(error, BaseException) else None,
            )
        elif status is TaskStatus.CANCELLED:
            logger.info("task.cancelled", task=self.name, task_id=self.task_id)
        else:
            logger.debug("task.succeeded", task=self.name, task_id=self.task_id)

        self._scheduler._task_finished(self, outcome)
        try:
            if self._on_done is not None:
                self._on_done(outcome)
        except Exception:
            logger.exception("task.on_done_failed", task=self.name, task_id=self.task_id)
        finally:
            self._done_event.set()


__all__ = ["OnDone", "Resumption", "Task", "TaskState"]
