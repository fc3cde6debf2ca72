"""Delay-timer service for retries and join timeouts.

One daemon thread sleeps until the earliest deadline in a heap, then
hands the due callbacks back to the caller (the Scheduler, which only
re-enqueues Tasks from them). No worker ever sleeps for a retry delay.

┌──────────────────────────────────────────────────────────────────────┐
│  DelayTimer                                                          │
│                                                                      │
│   schedule(delay, cb) ──► heap[(due, seq, handle)] ──► notify        │
│                                                                      │
│   daemon thread:                                                     │
│     while running:                                                   │
│        wait(cond, until earliest due)                                │
│        pop every handle with due <= now                              │
│        run callbacks outside the lock                                │
│                                                                      │
│   TimerHandle.cancel() marks the entry; it is skipped when popped    │
└──────────────────────────────────────────────────────────────────────┘

Timing is best-effort: a callback never runs *before* its delay, but may
run later if the callbacks ahead of it are slow.
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections.abc import Callable

from reconcile.core.logging import get_logger

logger = get_logger(__name__)


class TimerHandle:
    """A scheduled callback; cancellable until it fires."""

    __slots__ = ("due", "callback", "_cancelled", "_fired")

    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self._cancelled = False
        self._fired = False

    def cancel(self) -> bool:
        """Cancel the callback. Returns False if it already fired."""
        if self._fired:
            return False
        self._cancelled = True
        return True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def fired(self) -> bool:
        return self._fired


class DelayTimer:
    """Heap-ordered timer thread.

    Example:
        >>> timer = DelayTimer(name="reconcile-timer")
        >>> handle = timer.schedule(0.5, lambda: print("due"))
        >>> handle.cancel()
        >>> timer.stop()
    """

    def __init__(self, name: str = "reconcile-timer", clock: Callable[[], float] = time.monotonic) -> None:
        self._name = name
        self._clock = clock
        self._heap: list[tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._running = False
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        with self._cond:
            if self._running:
                return
            self._running = True
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self._name)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the thread; pending callbacks are dropped."""
        with self._cond:
            if not self._running:
                return
            self._running = False
            dropped = len(self._heap)
            self._heap.clear()
            self._cond.notify_all()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("timer.stop_timeout", timer=self._name)
        if dropped:
            logger.debug("timer.dropped_pending", timer=self._name, count=dropped)

    @property
    def is_running(self) -> bool:
        return self._running

    def pending(self) -> int:
        with self._cond:
            return sum(1 for _, _, h in self._heap if not h.cancelled)

    def schedule(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` on the timer thread no earlier than ``delay`` seconds from now."""
        if delay < 0:
            raise ValueError(f"delay must be >= 0, got {delay}")
        handle = TimerHandle(self._clock() + delay, callback)
        with self._cond:
            if not self._running:
                raise RuntimeError(f"DelayTimer '{self._name}' is not running")
            heapq.heappush(self._heap, (handle.due, next(self._seq), handle))
            if self._heap[0][2] is handle:
                self._cond.notify()
        return handle

    def _loop(self) -> None:
        logger.debug("timer.started", timer=self._name)
        while True:
            with self._cond:
                due = self._pop_due()
                while not due:
                    if not self._running:
                        logger.debug("timer.stopped", timer=self._name)
                        return
                    timeout = None
                    if self._heap:
                        timeout = max(0.0, self._heap[0][0] - self._clock())
                    self._cond.wait(timeout)
                    due = self._pop_due()

            for handle in due:
                try:
                    handle.callback()
                except Exception:
                    logger.exception("timer.callback_failed", timer=self._name)

    def _pop_due(self) -> list[TimerHandle]:
        """Pop every live handle whose deadline passed (caller holds the lock)."""
        now = self._clock()
        due: list[TimerHandle] = []
        while self._heap and self._heap[0][0] <= now:
            _, _, handle = heapq.heappop(self._heap)
            if handle.cancelled:
                continue
            handle._fired = True
            due.append(handle)
        return due


__all__ = ["DelayTimer", "TimerHandle"]
