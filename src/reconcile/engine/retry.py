"""Retry strategies with exponential backoff, jitter, and caller-side policies.

The engine imposes no backoff curve: a step that wants another try
returns ``Retry(delay)``.  This module gives business steps the usual
curves and the bookkeeping to turn them into Actions, with the attempt
counter kept in the Context so it survives across step executions.

Example:
    >>> from reconcile.engine.retry import ExponentialBackoff, retry_or_fail
    >>>
    >>> BACKOFF = ExponentialBackoff(max_retries=5, base_delay=0.5, max_delay=30.0)
    >>>
    >>> def replace_service(ctx):
    ...     error = ctx.get("replace_error")
    ...     if error is not None:
    ...         return retry_or_fail(ctx, None, error, BACKOFF, key="replace_service")
    ...     reset_attempts(ctx, "replace_service")
    ...     return NEXT
"""

from __future__ import annotations

import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from reconcile.core.errors import (
    DeadlineExceededError,
    ErrorCategory,
    RetryExhaustedError,
    categorize_error,
    get_retry_after,
    is_retryable,
)
from reconcile.engine.actions import NEXT, Action, Continue, Done, Retry
from reconcile.engine.context import Context
from reconcile.engine.steps import Step, as_step


class RetryStrategy(ABC):
    """How often a failing cluster call is tried again, and how far apart.

    The retry decision is shared by every strategy: an error is retried
    only if :func:`is_retryable` accepts it and its category is in
    ``retry_categories`` (None: any retryable category), and never once
    ``max_retries`` attempts were made.  Subclasses shape the delay curve.
    """

    max_retries: int
    retry_categories: frozenset[ErrorCategory] | None = None

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (zero-based)."""
        ...

    def accepts(self, error: BaseException) -> bool:
        """True if ``error`` is the kind of failure this strategy retries."""
        if not is_retryable(error):
            return False
        return self.retry_categories is None or categorize_error(error) in self.retry_categories

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """True if retry number ``attempt`` may be scheduled for ``error``."""
        if attempt >= self.max_retries:
            return False
        return error is None or self.accepts(error)

    def delay_for(self, attempt: int, error: BaseException | None = None) -> float:
        """Backoff delay, raised to the error's ``retry_after`` hint."""
        delay = self.next_delay(attempt)
        retry_after = get_retry_after(error) if error is not None else None
        if retry_after is not None:
            delay = max(delay, retry_after)
        return delay


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with jitter, the default for API conflicts.

    Delay = min(base_delay * multiplier ** attempt, max_delay) +/- jitter

    Jitter spreads the retries of many reconcilers that hit the same
    conflict at the same moment.

    Attributes:
        max_retries: Retries allowed before giving up
        base_delay: First delay in seconds
        max_delay: Cap on the curve, before jitter
        multiplier: Growth factor per attempt
        jitter: Randomize each delay by up to ``jitter_range`` of it
        jitter_range: Fraction of the delay used as jitter (0.0-1.0)
        retry_categories: Error categories to retry (None = any retryable)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25
    retry_categories: frozenset[ErrorCategory] | None = None

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        if self.jitter:
            spread = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return delay


@dataclass
class LinearBackoff(RetryStrategy):
    """Delay grows by ``increment`` per attempt, capped at ``max_delay``."""

    max_retries: int = 3
    base_delay: float = 1.0
    increment: float = 1.0
    max_delay: float = 30.0
    retry_categories: frozenset[ErrorCategory] | None = None

    def next_delay(self, attempt: int) -> float:
        return min(self.base_delay + self.increment * attempt, self.max_delay)


@dataclass
class ConstantBackoff(RetryStrategy):
    """Same delay every time; suits polling an eventually consistent read."""

    max_retries: int = 3
    delay: float = 1.0
    retry_categories: frozenset[ErrorCategory] | None = None

    def next_delay(self, attempt: int) -> float:
        return self.delay


@dataclass
class NoRetry(RetryStrategy):
    """Fail on the first error."""

    max_retries: int = 0

    def next_delay(self, attempt: int) -> float:
        return 0.0

# =============================================================================
# Action helpers
# =============================================================================


def _attempts_key(key: str) -> str:
    return f"reconcile.retry.{key}"


def attempts(context: Context, key: str = "default") -> int:
    """Retries already scheduled under ``key``."""
    return context.get(_attempts_key(key), 0)


def reset_attempts(context: Context, key: str = "default") -> None:
    """Forget the attempt count, e.g. after the call finally succeeded."""
    context.pop(_attempts_key(key), None)


def retry_or_fail(
    context: Context,
    step: Step | None,
    error: BaseException | None,
    strategy: RetryStrategy,
    key: str = "default",
) -> Retry | Done:
    """Turn a failed attempt into ``Retry`` or a final ``Done.failure``.

    - An ``error`` the strategy does not accept (see
      :meth:`RetryStrategy.accepts`) fails immediately with that error.
    - Past the strategy's cap the workflow fails with
      :class:`RetryExhaustedError` chaining the last error.
    - A ``retry_after`` on the error is honored as a minimum delay.

    ``step=None`` retries the step that is running (inside a chain: the
    chain link).
    """
    if error is not None and not strategy.accepts(error):
        return Done.failure(error)

    attempt = attempts(context, key)
    if not strategy.should_retry(attempt, error):
        return Done.failure(RetryExhaustedError(attempt + 1, error))

    delay = strategy.delay_for(attempt, error)
    context[_attempts_key(key)] = attempt + 1
    return Retry(delay, step)


@dataclass(frozen=True)
class PollUntil:
    """Re-check a Context predicate until it holds or a deadline passes.

    The deadline is stored in the Context on the first execution, so it
    spans every retry of this step.
    """

    predicate: Callable[[Context], bool]
    interval: float
    timeout: float
    then: Step | None = None
    label: str = "poll"
    clock: Callable[[], float] = time.monotonic

    @property
    def name(self) -> str:
        return self.label

    @property
    def deadline_key(self) -> str:
        return f"reconcile.poll.{self.label}.deadline"

    def execute(self, context: Context) -> Action:
        now = self.clock()
        deadline = context.get(self.deadline_key)
        if deadline is None:
            deadline = now + self.timeout
            context[self.deadline_key] = deadline

        if self.predicate(context):
            context.pop(self.deadline_key, None)
            return Continue(self.then) if self.then is not None else NEXT
        if now >= deadline:
            context.pop(self.deadline_key, None)
            return Done.failure(DeadlineExceededError(self.label, self.timeout))
        return Retry(min(self.interval, deadline - now))


def poll_until(
    predicate: Callable[[Context], bool],
    interval: float,
    timeout: float,
    then: Any | None = None,
    *,
    name: str = "poll",
) -> PollUntil:
    """Step that waits for ``predicate`` by polling with ``Retry``."""
    if interval <= 0 or timeout <= 0:
        raise ValueError("interval and timeout must be > 0")
    return PollUntil(
        predicate=predicate,
        interval=interval,
        timeout=timeout,
        then=as_step(then) if then is not None else None,
        label=name,
    )


__all__ = [
    "ConstantBackoff",
    "ExponentialBackoff",
    "LinearBackoff",
    "NoRetry",
    "PollUntil",
    "RetryStrategy",
    "attempts",
    "poll_until",
    "reset_attempts",
    "retry_or_fail",
]
