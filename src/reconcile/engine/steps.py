"""Steps — the unit of workflow logic and the combinators that compose them.

Manifesto:
A workflow is a sequence of steps, but authors should not hand-wire
each step to the next.  A step is anything with ``execute(context) ->
Action`` (or a plain function of the Context); the combinators here
compose steps into chains, conditionals and fan-outs as immutable
values, so there is no mutable "next" pointer hiding in step objects.

ARCHITECTURE
────────────
::

    Step (protocol)     ── execute(context) -> Action
      ├── FunctionStep       ── wraps a plain function (``@step``)
      ├── Chain              ── head + fixed successor (``chain(a, b, c)``)
      ├── Conditional        ── predicate → one of two successors (``branch``)
      ├── Parallel           ── builds a FanOut over child steps (``parallel``)
      └── Terminal           ── returns Done (``terminate``)

    A Chain rewrites the Action its head returns:
      Continue(None)  → Continue(successor)
      Suspend(None)   → Suspend(successor)
      FanOut(join=None) → FanOut(join=successor)
      Retry(step=None)  → Retry(step=<this chain link>)
      Continue(arm) from a Conditional head → Continue(chain(arm, successor))

Related modules:
    actions.py  — the Action values steps return
    task.py     — executes steps and interprets their Actions

Example::

    from reconcile.engine import NEXT, Done, chain, branch, parallel, step

    @step
    def list_pods(ctx):
        ctx["pods"] = ctx.component("api").list_pods(ctx["namespace"])
        return NEXT

    @step(name="delete_pod")
    def delete_pod(ctx):
        ...

    workflow = chain(
        list_pods,
        branch(lambda ctx: bool(ctx["pods"]), parallel_deletes),
        record_status,
    )

Tags:
    reconcile, engine, steps, combinators

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from reconcile.engine.actions import (
    NEXT,
    Action,
    Branch,
    Continue,
    Done,
    FanOut,
    Retry,
    Suspend,
    branches,
)
from reconcile.engine.context import Context


# =============================================================================
# Step Protocol
# =============================================================================


@runtime_checkable
class Step(Protocol):
    """
    Protocol for workflow steps.

    Steps can be:
    - Objects: class ReadPod: def execute(self, ctx) -> Action
    - Functions: def read_pod(ctx) -> Action (coerced with ``as_step``)

    The engine calls ``execute`` at most once at a time per Task. It may
    have external effects; everything it wants the engine to do next is
    expressed by the returned Action.
    """

    def execute(self, context: Context) -> Action:
        """Run the step."""
        ...


# Type alias for Context predicates
ConditionFn = Callable[[Context], bool]


def step_name(step: Any) -> str:
    """Human-readable name of a step, for breadcrumbs and logs."""
    name = getattr(step, "name", None)
    if isinstance(name, str) and name:
        return name
    fn = getattr(step, "__qualname__", None)
    if fn:
        return fn
    return type(step).__name__


def as_step(value: Any) -> Step:
    """Coerce a plain callable into a Step; Steps pass through unchanged."""
    if value is None:
        raise TypeError("Expected a step, got None")
    if hasattr(value, "execute") and callable(value.execute):
        return value
    if callable(value):
        return FunctionStep(value)
    raise TypeError(f"{type(value).__name__} is neither a Step nor callable")


@dataclass(frozen=True)
class FunctionStep:
    """A plain function of the Context, exposed as a Step."""

    fn: Callable[[Context], Action]
    label: str | None = None

    @property
    def name(self) -> str:
        return self.label or getattr(self.fn, "__name__", None) or repr(self.fn)

    def execute(self, context: Context) -> Action:
        return self.fn(context)

    def __repr__(self) -> str:
        return f"FunctionStep({self.name})"


def step(fn: Callable[[Context], Action] | None = None, *, name: str | None = None) -> Any:
    """Decorator turning a function of the Context into a Step.

    Usable bare (``@step``) or with a name (``@step(name="read_pod")``).
    """

    def decorator(func: Callable[[Context], Action]) -> FunctionStep:
        return FunctionStep(func, label=name)

    if fn is not None:
        return decorator(fn)
    return decorator


# =============================================================================
# Combinators
# =============================================================================


@dataclass(frozen=True)
class Chain:
    """A step with a fixed successor.

    The head decides *whether* to go on (by returning ``NEXT``, a
    ``Suspend`` or ``FanOut`` without an explicit successor); the chain
    decides *where*.
    """

    head: Step
    successor: Step | None = None

    @property
    def name(self) -> str:
        return step_name(self.head)

    def execute(self, context: Context) -> Action:
        action = self.head.execute(context)
        if (
            isinstance(self.head, Conditional)
            and self.successor is not None
            and isinstance(action, Continue)
            and action.step is not None
        ):
            # The selected arm rejoins this chain when it runs out of links.
            return Continue(chain(action.step, self.successor))
        return self._link(action)

    def _link(self, action: Any) -> Any:
        if isinstance(action, Continue) and action.step is None:
            return Continue(self.successor) if self.successor is not None else action
        if isinstance(action, Suspend) and action.step is None:
            return Suspend(step=self.successor, on_suspend=action.on_suspend)
        if isinstance(action, FanOut) and action.join is None:
            return FanOut(action.branches, join=self.successor, timeout=action.timeout)
        if isinstance(action, Retry) and action.step is None:
            return Retry(action.delay, step=self)
        return action

    def then(self, tail: Step) -> Chain:
        """Return a new chain with ``tail`` appended after the last link."""
        if self.successor is None:
            return Chain(self.head, tail)
        if isinstance(self.successor, Chain):
            return Chain(self.head, self.successor.then(tail))
        return Chain(self.head, Chain(self.successor, tail))

    def __repr__(self) -> str:
        return f"Chain({self.name} -> {step_name(self.successor) if self.successor else 'end'})"


def chain(*steps: Any) -> Step:
    """Compose steps so each one's unresolved successor is the next one.

    Nested chains are flattened: ``chain(a, chain(b, c), d)`` runs
    a, b, c, d.
    """
    if not steps:
        raise ValueError("chain() needs at least one step")
    result: Step | None = None
    for item in reversed(steps):
        current = as_step(item)
        if result is None:
            result = current
        elif isinstance(current, Chain):
            result = current.then(result)
        else:
            result = Chain(current, result)
    return result


@dataclass(frozen=True)
class Conditional:
    """Continue at ``if_true`` or ``if_false`` depending on a Context predicate.

    Inside a chain, the selected arm runs and then continues with whatever
    follows the conditional; a missing ``if_false`` goes there directly.
    """

    predicate: ConditionFn
    if_true: Step
    if_false: Step | None = None
    label: str = "branch"

    @property
    def name(self) -> str:
        return self.label

    def execute(self, context: Context) -> Action:
        if self.predicate(context):
            return Continue(self.if_true)
        if self.if_false is not None:
            return Continue(self.if_false)
        return NEXT


def branch(
    predicate: ConditionFn,
    if_true: Any,
    if_false: Any | None = None,
    *,
    name: str = "branch",
) -> Conditional:
    """Conditional combinator over the Context."""
    return Conditional(
        predicate=predicate,
        if_true=as_step(if_true),
        if_false=as_step(if_false) if if_false is not None else None,
        label=name,
    )


@dataclass(frozen=True)
class Parallel:
    """A step that fans out over its children and joins at ``join``."""

    children: tuple[Branch, ...]
    join: Step | None = None
    timeout: float | None = None
    label: str = "parallel"

    @property
    def name(self) -> str:
        return self.label

    def execute(self, context: Context) -> Action:
        return FanOut(self.children, join=self.join, timeout=self.timeout)


def parallel(
    children: Iterable[Any],
    join: Any | None = None,
    *,
    fork: bool = True,
    timeout: float | None = None,
    name: str = "parallel",
) -> Parallel:
    """Fan out over ``children`` (steps or Branches), then run ``join``.

    Bare steps become Branches on the parent's Context, forked unless
    ``fork=False``.
    """
    normalized = tuple(
        child if isinstance(child, Branch) else Branch(step=as_step(child), fork=fork)
        for child in children
    )
    return Parallel(
        children=normalized,
        join=as_step(join) if join is not None else None,
        timeout=timeout,
        label=name,
    )


def fan_out(pairs: Iterable[Any], join: Any | None = None, *, timeout: float | None = None) -> FanOut:
    """Build a FanOut Action directly from ``(step, context)`` pairs."""
    normalized = tuple(
        Branch(as_step(b.step), b.context, b.fork) for b in branches(pairs)
    )
    return FanOut(normalized, join=as_step(join) if join is not None else None, timeout=timeout)


@dataclass(frozen=True)
class Terminal:
    """A step that finishes the workflow with a fixed result."""

    result: Any = None
    label: str = "terminate"

    @property
    def name(self) -> str:
        return self.label

    def execute(self, context: Context) -> Action:
        return Done(result=self.result)


def terminate(result: Any = None) -> Terminal:
    return Terminal(result=result)


__all__ = [
    "Chain",
    "ConditionFn",
    "Conditional",
    "FunctionStep",
    "Parallel",
    "Step",
    "Terminal",
    "as_step",
    "branch",
    "chain",
    "fan_out",
    "parallel",
    "step",
    "step_name",
    "terminate",
]
