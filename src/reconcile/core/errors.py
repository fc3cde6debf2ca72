"""
Structured error types for the reconcile engine.

Provides a small hierarchy of typed errors carrying the metadata that
retry decisions and outcome reporting need: a category, whether the
failure is retryable, an optional minimum delay before retrying, and the
chained underlying exception.

Manifesto:
    - **Typed Error Hierarchy:** transient API trouble, engine misuse and
      exhausted budgets are different things and look different
    - **Explicit Retry Semantics:** each error knows if it's retryable
    - **Error Chaining:** the original exception is kept as ``cause``

Architecture:
    ::

        ┌──────────────────────────────────────────────────────────────┐
        │                      ReconcileError                          │
        │  (category, retryable, retry_after, cause, details)          │
        ├──────────────────────────────────────────────────────────────┤
        │                                                              │
        │  TransientError      EngineError            (budgets)        │
        │  (retryable=True)    (ORCHESTRATION)        DEADLINE         │
        │       │                   │                     │            │
        │  ConflictError       InvalidActionError    RetryExhausted    │
        │  RateLimitError      SchedulerClosedError  DeadlineExceeded  │
        │  UnavailableError    FanOutTimeoutError                      │
        │                      TaskCancelledError                      │
        │                      ComponentNotFoundError                  │
        └──────────────────────────────────────────────────────────────┘

Usage:
    from reconcile.core.errors import ConflictError, is_retryable

    def on_response(result, error):
        if error is not None and error.status == 409:
            raise ConflictError("resourceVersion changed", cause=error)

Tags:
    error-handling, exception-hierarchy, retry-logic, reconcile

Doc-Types:
    - API Reference
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """
    Standard error categories for classification and routing.

    Categories are grouped by their typical retry behavior:
    - **Cluster API (usually transient):** CONFLICT, RATE_LIMIT, UNAVAILABLE
    - **Engine:** ORCHESTRATION, CANCELLED
    - **Budgets:** DEADLINE
    - **Internal errors:** INTERNAL, UNKNOWN
    """

    # Cluster API errors (usually transient)
    CONFLICT = "CONFLICT"             # Optimistic concurrency clash
    RATE_LIMIT = "RATE_LIMIT"         # 429 / client-side throttling
    UNAVAILABLE = "UNAVAILABLE"       # 5xx, connection refused, timeouts

    # Engine errors
    ORCHESTRATION = "ORCHESTRATION"   # Misused engine primitives
    CANCELLED = "CANCELLED"           # Superseded or cancelled work

    # Budget errors
    DEADLINE = "DEADLINE"             # Retry cap or polling deadline hit

    # Internal errors
    INTERNAL = "INTERNAL"             # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"               # Uncategorized errors


class ReconcileError(Exception):
    """
    Base exception for all reconcile engine errors.

    All ReconcileError instances carry:
    - **category:** ErrorCategory enum for classification
    - **retryable:** Boolean indicating if the work can be retried
    - **retry_after:** Optional minimum seconds to wait before retry
    - **details:** Free-form metadata (resource key, step name, ...)
    - **cause:** Optional underlying exception for chaining

    Subclasses set ``default_category`` and ``default_retryable``.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.retry_after = retry_after
        self.details = dict(details or {})
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_details(self, **kwargs: Any) -> ReconcileError:
        """
        Add metadata to this error (fluent API).

        Usage:
            raise ConflictError("stale write").with_details(key="ns/pod-1")
        """
        self.details.update(kwargs)
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.details:
            result["details"] = dict(self.details)
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Usually Retryable)
# =============================================================================


class TransientError(ReconcileError):
    """
    Temporary error that may succeed on retry.

    Raised or returned by business steps when the cluster API reports a
    condition that goes away on its own. Steps answer these with a
    ``Retry`` action rather than failing the workflow.
    """

    default_category = ErrorCategory.UNAVAILABLE
    default_retryable = True


class ConflictError(TransientError):
    """The resource changed underneath a replace/patch call."""

    default_category = ErrorCategory.CONFLICT


class RateLimitError(TransientError):
    """Rate limit exceeded."""

    default_category = ErrorCategory.RATE_LIMIT

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float = 5.0,
        **kwargs: Any,
    ):
        super().__init__(message, retry_after=retry_after, **kwargs)


class UnavailableError(TransientError):
    """The cluster API is temporarily unreachable or overloaded."""

    default_category = ErrorCategory.UNAVAILABLE


# =============================================================================
# ENGINE ERRORS
# =============================================================================


class EngineError(ReconcileError):
    """Base for errors raised by the engine itself."""

    default_category = ErrorCategory.ORCHESTRATION


class InvalidActionError(EngineError):
    """A step returned something other than an Action."""

    def __init__(self, step_name: str, value: Any):
        self.step_name = step_name
        self.value = value
        super().__init__(
            f"Step '{step_name}' returned {type(value).__name__}, expected an Action",
            details={"step": step_name},
        )


class SchedulerClosedError(EngineError):
    """Work was submitted to a scheduler that has been shut down."""

    def __init__(self, scheduler_name: str):
        self.scheduler_name = scheduler_name
        super().__init__(f"Scheduler '{scheduler_name}' is shut down")


class FanOutTimeoutError(EngineError):
    """A fan-out child did not finish before the join timeout."""

    def __init__(self, branch_index: int, timeout: float):
        self.branch_index = branch_index
        self.timeout = timeout
        super().__init__(
            f"Fan-out branch {branch_index} did not finish within {timeout}s",
            category=ErrorCategory.DEADLINE,
            details={"branch": branch_index, "timeout": timeout},
        )


class TaskCancelledError(EngineError):
    """Carried by cancelled outcomes that were never started."""

    default_category = ErrorCategory.CANCELLED


class ComponentNotFoundError(EngineError, KeyError):
    """A Context component lookup found nothing under the name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"No component registered under '{name}'")

    def __str__(self) -> str:
        return self.message


# =============================================================================
# BUDGET ERRORS
# =============================================================================


class RetryExhaustedError(ReconcileError):
    """A retry policy ran out of attempts."""

    default_category = ErrorCategory.DEADLINE

    def __init__(self, attempts: int, last_error: BaseException | None = None):
        self.attempts = attempts
        self.last_error = last_error
        message = f"Gave up after {attempts} attempt(s)"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message, cause=last_error)


class DeadlineExceededError(ReconcileError):
    """A polling step passed its deadline before its condition held."""

    default_category = ErrorCategory.DEADLINE

    def __init__(self, step_name: str, timeout: float):
        self.step_name = step_name
        self.timeout = timeout
        super().__init__(
            f"Step '{step_name}' did not observe its condition within {timeout}s",
            details={"step": step_name, "timeout": timeout},
        )


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, ReconcileError):
        return error.retryable
    # Common Python exceptions that are usually retryable
    retryable_types = (
        ConnectionError,
        TimeoutError,
    )
    return isinstance(error, retryable_types)


def get_retry_after(error: BaseException) -> float | None:
    """Get retry delay from error, if specified."""
    if isinstance(error, ReconcileError):
        return error.retry_after
    return None


def categorize_error(error: BaseException) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, ReconcileError):
        return error.category
    if isinstance(error, (ConnectionError, TimeoutError)):
        return ErrorCategory.UNAVAILABLE
    return ErrorCategory.UNKNOWN


__all__ = [
    # Category enum
    "ErrorCategory",
    # Base
    "ReconcileError",
    # Transient
    "TransientError",
    "ConflictError",
    "RateLimitError",
    "UnavailableError",
    # Engine
    "EngineError",
    "InvalidActionError",
    "SchedulerClosedError",
    "FanOutTimeoutError",
    "TaskCancelledError",
    "ComponentNotFoundError",
    # Budgets
    "RetryExhaustedError",
    "DeadlineExceededError",
    # Utilities
    "is_retryable",
    "get_retry_after",
    "categorize_error",
]
