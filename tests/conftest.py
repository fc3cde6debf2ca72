"""
Shared pytest fixtures and configuration for reconcile tests.

This module provides:
- Settings isolation (no .env file, fresh cache per test)
- A scheduler fixture that is always shut down
- An outcome recorder usable as an ``on_done`` callback

Usage:
    def test_something(scheduler, recorder):
        scheduler.start(my_step, {}, recorder)
        assert recorder.wait_for(1)
"""

import sys
import threading
from pathlib import Path
from typing import Generator

import pytest

# Ensure reconcile package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from reconcile.core.settings import EngineSettings, clear_settings_cache
from reconcile.engine import ResourceGate, Scheduler, TaskOutcome

#: Upper bound for every wait in the suite.
WAIT = 5.0


class OutcomeRecorder:
    """Thread-safe ``on_done`` callback that remembers every outcome."""

    def __init__(self) -> None:
        self.outcomes: list[TaskOutcome] = []
        self._cond = threading.Condition()

    def __call__(self, outcome: TaskOutcome) -> None:
        with self._cond:
            self.outcomes.append(outcome)
            self._cond.notify_all()

    def wait_for(self, count: int, timeout: float = WAIT) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self.outcomes) >= count, timeout)

    @property
    def names(self) -> list[str]:
        return [o.name for o in self.outcomes]


@pytest.fixture(autouse=True)
def clean_settings_cache() -> Generator[None, None, None]:
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(_env_file=None, max_workers=4)


@pytest.fixture
def scheduler(settings: EngineSettings) -> Generator[Scheduler, None, None]:
    sched = Scheduler(name="test", settings=settings)
    yield sched
    sched.shutdown(wait=True, cancel_tasks=True)


@pytest.fixture
def gate(scheduler: Scheduler) -> ResourceGate:
    return ResourceGate(scheduler)


@pytest.fixture
def recorder() -> OutcomeRecorder:
    return OutcomeRecorder()
