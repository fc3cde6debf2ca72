"""Reconcile core — errors, logging and settings shared by the engine."""

from reconcile.core.errors import (
    ComponentNotFoundError,
    ConflictError,
    DeadlineExceededError,
    EngineError,
    ErrorCategory,
    FanOutTimeoutError,
    InvalidActionError,
    RateLimitError,
    ReconcileError,
    RetryExhaustedError,
    SchedulerClosedError,
    TaskCancelledError,
    TransientError,
    UnavailableError,
    categorize_error,
    get_retry_after,
    is_retryable,
)
from reconcile.core.logging import (
    LogContext,
    configure_logging,
    configure_logging_from_settings,
    get_logger,
)
from reconcile.core.settings import EngineSettings, get_settings

__all__ = [
    "ComponentNotFoundError",
    "ConflictError",
    "DeadlineExceededError",
    "EngineError",
    "ErrorCategory",
    "FanOutTimeoutError",
    "InvalidActionError",
    "RateLimitError",
    "ReconcileError",
    "RetryExhaustedError",
    "SchedulerClosedError",
    "TaskCancelledError",
    "TransientError",
    "UnavailableError",
    "categorize_error",
    "get_retry_after",
    "is_retryable",
    "LogContext",
    "configure_logging",
    "configure_logging_from_settings",
    "get_logger",
    "EngineSettings",
    "get_settings",
]
