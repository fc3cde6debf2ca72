"""
Actions - what the engine should do after a step runs.

Every step execution returns exactly one Action. The Task interprets it:

::

    Continue(step)              ── run ``step`` next, same Context, no delay
    Suspend(step, on_suspend)   ── park; an external resume() continues at ``step``
    Retry(delay, step)          ── park; re-run ``step`` after at least ``delay`` seconds
    FanOut(branches, join)      ── run child Tasks, then ``join`` once all finished
    Done(result, error)         ── finish the workflow, success or failure

A successor of ``None`` means "whatever comes next": the following step
when the Action passes through a :func:`~reconcile.engine.steps.chain`,
otherwise the end of the workflow (``Retry`` instead re-runs the step
that returned it). ``NEXT`` is the ready-made ``Continue()``.

Manifesto:
    Actions are plain frozen values. Steps never touch the Task or the
    Scheduler; they describe the next move and the engine makes it.

Related modules:
    steps.py  — combinators that produce and rewrite Actions
    task.py   — interprets Actions; defines the Resumption handle

Example::

    def read_pod(ctx):
        api = ctx.component("api")
        return call_async(
            lambda callback: api.read_pod(ctx["name"], ctx["namespace"], callback),
            result_key="pod",
            error_key="pod_error",
        )

Tags:
    reconcile, engine, actions, continuation

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import CancelledError, Future
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Union

from reconcile.engine.context import Context, ContextKey

if TYPE_CHECKING:
    from reconcile.engine.steps import Step
    from reconcile.engine.task import Resumption


@dataclass(frozen=True)
class Continue:
    """Proceed immediately to ``step`` with the same Context."""

    step: Step | None = None


@dataclass(frozen=True)
class Suspend:
    """Park the Task until an external actor resumes it.

    Attributes:
        step: Where execution continues after a successful resume.
        on_suspend: Called with a :class:`~reconcile.engine.task.Resumption`
            once the Task is parked. This is where the async call is issued
            and its completion callback is wired to ``resumption.resume``.
    """

    step: Step | None = None
    on_suspend: Callable[[Resumption], None] | None = None


@dataclass(frozen=True)
class Retry:
    """Re-run ``step`` (default: the current step) after ``delay`` seconds."""

    delay: float
    step: Step | None = None

    def __post_init__(self):
        if self.delay < 0:
            raise ValueError(f"Retry delay must be >= 0, got {self.delay}")


@dataclass(frozen=True)
class Branch:
    """One fan-out child.

    ``context`` given: the child runs on it. Otherwise the child gets the
    parent's Context, forked (``fork=True``) or shared as-is.
    """

    step: Step
    context: Context | None = None
    fork: bool = True

    def __post_init__(self):
        object.__setattr__(self, "context", _maybe_context(self.context))


@dataclass(frozen=True)
class FanOut:
    """Run ``branches`` as child Tasks, then continue the parent at ``join``.

    The join step sees every child's outcome, in branch order, under
    ``CHILD_OUTCOMES`` in the parent's Context. ``timeout`` bounds the
    wait; ``None`` uses the scheduler's configured default.
    """

    branches: tuple[Branch, ...] = field(default_factory=tuple)
    join: Step | None = None
    timeout: float | None = None

    def __post_init__(self):
        object.__setattr__(self, "branches", tuple(_as_branch(b) for b in self.branches))
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"FanOut timeout must be > 0, got {self.timeout}")


@dataclass(frozen=True)
class Done:
    """Terminate the workflow.

    ``error`` set means a business failure: the Task finishes as failed
    and ``on_done`` receives the error.
    """

    result: Any = None
    error: Any = None

    @classmethod
    def ok(cls, result: Any = None) -> Done:
        return cls(result=result)

    @classmethod
    def failure(cls, error: Any) -> Done:
        if error is None:
            raise ValueError("Done.failure() needs an error value")
        return cls(error=error)

    @property
    def succeeded(self) -> bool:
        return self.error is None


Action = Union[Continue, Suspend, Retry, FanOut, Done]

ACTION_TYPES = (Continue, Suspend, Retry, FanOut, Done)

NEXT = Continue()

#: Join-step view of fan-out results: list of TaskOutcome, in branch order.
CHILD_OUTCOMES: ContextKey[list] = ContextKey("reconcile.child_outcomes", default=())


def _as_branch(value: Any) -> Branch:
    if isinstance(value, Branch):
        return value
    if isinstance(value, tuple) and len(value) == 2:
        step, context = value
        return Branch(step=step, context=context)
    return Branch(step=value)


def _maybe_context(value: Any) -> Context | None:
    if value is None or isinstance(value, Context):
        return value
    if isinstance(value, Mapping):
        return Context(value)
    raise TypeError(f"Branch context must be a Context or mapping, not {type(value).__name__}")


def branches(pairs: Iterable[Any]) -> tuple[Branch, ...]:
    """Normalize steps, ``(step, context)`` pairs and Branches to Branches."""
    return tuple(_as_branch(p) for p in pairs)


# =============================================================================
# Suspension helpers for asynchronous collaborators
# =============================================================================


def await_future(
    future: Future,
    step: Step | None = None,
    result_key: str | ContextKey[Any] | None = None,
) -> Suspend:
    """Suspend until ``future`` completes.

    The future's result is written under ``result_key`` (when given) and
    the Task resumes at ``step``. An exception from the future fails the
    Task with that exception; a cancelled future fails it with
    ``CancelledError``.
    """

    def on_suspend(resumption: Resumption) -> None:
        def done(fut: Future) -> None:
            if fut.cancelled():
                resumption.fail(CancelledError())
                return
            error = fut.exception()
            if error is not None:
                resumption.fail(error)
            elif result_key is not None:
                resumption.resume({result_key: fut.result()})
            else:
                resumption.resume()

        future.add_done_callback(done)

    return Suspend(step=step, on_suspend=on_suspend)


def call_async(
    call: Callable[[Callable[[Any, BaseException | None], None]], Any],
    step: Step | None = None,
    result_key: str | ContextKey[Any] = "result",
    error_key: str | ContextKey[Any] | None = None,
) -> Suspend:
    """Suspend around a callback-style client primitive.

    ``call`` is invoked with a ``callback(result, error)``; the client
    must invoke it exactly once. With ``error_key`` set, an error is
    stored in the Context (and ``result_key`` cleared) so the next step
    can decide between ``Retry`` and ``Done``. Without it, an error fails
    the Task.
    """

    def on_suspend(resumption: Resumption) -> None:
        def callback(result: Any, error: BaseException | None = None) -> None:
            if error is None:
                updates: dict[Any, Any] = {result_key: result}
                if error_key is not None:
                    updates[error_key] = None
                resumption.resume(updates)
            elif error_key is not None:
                resumption.resume({result_key: None, error_key: error})
            else:
                resumption.fail(error)

        call(callback)

    return Suspend(step=step, on_suspend=on_suspend)


__all__ = [
    "Action",
    "ACTION_TYPES",
    "Branch",
    "CHILD_OUTCOMES",
    "Continue",
    "Done",
    "FanOut",
    "NEXT",
    "Retry",
    "Suspend",
    "await_future",
    "branches",
    "call_async",
]
