"""Reconcile Engine — cooperative execution of multi-step reconcile workflows.

WHY
───
A controller drives many multi-step workflows against a slow, flaky
cluster API: read, patch, wait for the response, retry on conflict, fan
out per server, resume when a watch event arrives.  Binding one OS
thread to each in-flight workflow does not scale, and letting two
workflows touch the same resource at once breaks it.  The engine runs
workflows as continuations on a small worker pool and serializes them
per resource.

ARCHITECTURE
────────────
::

    Context  ─ per-workflow key/value store + collaborator components
    Action   ─ Continue | Suspend | Retry | FanOut | Done
    Step     ─ execute(context) -> Action; composed with chain/branch/parallel
      │
      ▼
    Task     ─ one traversal: current step, parking token, children, cancel flag
      │
      ▼
    Scheduler ─ ThreadPoolExecutor workers + DelayTimer
      │
      ▼
    ResourceGate ─ one admitted Task per resource key, FIFO behind it

MODULE MAP (recommended reading order)
──────────────────────────────────────
  1. context.py    ─ Context, ContextKey
  2. actions.py    ─ Action values, await_future / call_async bridges
  3. steps.py      ─ Step protocol and combinators
  4. outcome.py    ─ TaskOutcome, TaskStatus
  5. task.py       ─ Task state machine, Resumption
  6. timers.py     ─ DelayTimer
  7. scheduler.py  ─ Scheduler
  8. gate.py       ─ ResourceGate
  9. retry.py      ─ backoff strategies and polling for business steps
"""

from reconcile.engine.actions import (
    ACTION_TYPES,
    CHILD_OUTCOMES,
    NEXT,
    Action,
    Branch,
    Continue,
    Done,
    FanOut,
    Retry,
    Suspend,
    await_future,
    call_async,
)
from reconcile.engine.context import Context, ContextKey, as_context
from reconcile.engine.gate import ResourceGate
from reconcile.engine.outcome import (
    TaskOutcome,
    TaskStatus,
    all_succeeded,
    child_failures,
    child_outcomes,
)
from reconcile.engine.retry import (
    ConstantBackoff,
    ExponentialBackoff,
    LinearBackoff,
    NoRetry,
    RetryStrategy,
    poll_until,
    reset_attempts,
    retry_or_fail,
)
from reconcile.engine.scheduler import Scheduler, SchedulerStats
from reconcile.engine.steps import (
    Chain,
    Conditional,
    FunctionStep,
    Parallel,
    Step,
    as_step,
    branch,
    chain,
    fan_out,
    parallel,
    step,
    step_name,
    terminate,
)
from reconcile.engine.task import Resumption, Task, TaskState
from reconcile.engine.timers import DelayTimer, TimerHandle

__all__ = [
    # Actions
    "ACTION_TYPES",
    "CHILD_OUTCOMES",
    "NEXT",
    "Action",
    "Branch",
    "Continue",
    "Done",
    "FanOut",
    "Retry",
    "Suspend",
    "await_future",
    "call_async",
    # Context
    "Context",
    "ContextKey",
    "as_context",
    # Steps
    "Chain",
    "Conditional",
    "FunctionStep",
    "Parallel",
    "Step",
    "as_step",
    "branch",
    "chain",
    "fan_out",
    "parallel",
    "step",
    "step_name",
    "terminate",
    # Tasks
    "Resumption",
    "Task",
    "TaskOutcome",
    "TaskState",
    "TaskStatus",
    "all_succeeded",
    "child_failures",
    "child_outcomes",
    # Scheduling
    "DelayTimer",
    "ResourceGate",
    "Scheduler",
    "SchedulerStats",
    "TimerHandle",
    # Retry
    "ConstantBackoff",
    "ExponentialBackoff",
    "LinearBackoff",
    "NoRetry",
    "RetryStrategy",
    "poll_until",
    "reset_attempts",
    "retry_or_fail",
]
