"""Task outcomes — what ``on_done`` receives when a workflow ends."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from reconcile.engine.actions import CHILD_OUTCOMES
from reconcile.engine.context import Context


class TaskStatus(str, Enum):
    """How a Task ended."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"  # Done.failure(...) or an uncaught exception
    CANCELLED = "cancelled"  # Not an error: superseded or shut down


@dataclass(frozen=True)
class TaskOutcome:
    """
    Terminal result of a Task.

    Attributes:
        task_id: Id of the Task, or None for gate entries dropped before start
        name: Task name (usually the resource key or workflow name)
        status: SUCCEEDED, FAILED or CANCELLED
        result: Value carried by ``Done(result=...)``
        error: Failure value (exception or business error), if any
        context: The Context the Task finished with
        breadcrumbs: Rendered trail of visited steps
    """

    task_id: str | None
    name: str
    status: TaskStatus
    result: Any = None
    error: Any = None
    context: Context | None = None
    breadcrumbs: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == TaskStatus.FAILED

    @property
    def cancelled(self) -> bool:
        return self.status == TaskStatus.CANCELLED

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging."""
        result: dict[str, Any] = {
            "task_id": self.task_id,
            "name": self.name,
            "status": self.status.value,
        }
        if self.error is not None:
            result["error"] = repr(self.error)
        if self.breadcrumbs:
            result["breadcrumbs"] = self.breadcrumbs
        return result

    def __repr__(self) -> str:
        return f"TaskOutcome({self.name}, {self.status.value})"


def child_outcomes(context: Context) -> list[TaskOutcome]:
    """Outcomes of the most recent fan-out, in branch order."""
    return list(context.get(CHILD_OUTCOMES))


def child_failures(context: Context) -> list[TaskOutcome]:
    """Fan-out children that did not succeed (failed or cancelled)."""
    return [o for o in child_outcomes(context) if not o.succeeded]


def all_succeeded(outcomes: Iterable[TaskOutcome]) -> bool:
    return all(o.succeeded for o in outcomes)


__all__ = [
    "TaskOutcome",
    "TaskStatus",
    "all_succeeded",
    "child_failures",
    "child_outcomes",
]
