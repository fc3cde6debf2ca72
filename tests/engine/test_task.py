"""
Tests for the Task state machine.

Covers step ordering, suspend/resume, retry delays, cancellation at step
boundaries, failure capture and the single-completion guarantee.
"""

from __future__ import annotations

import threading
import time

import pytest

from reconcile.core.errors import InvalidActionError, SchedulerClosedError
from reconcile.core.settings import EngineSettings
from reconcile.engine import (
    NEXT,
    Context,
    Continue,
    Done,
    Retry,
    Scheduler,
    Suspend,
    TaskState,
    TaskStatus,
    branch,
    chain,
    step,
)

WAIT = 5.0


def wait_until(predicate, timeout=WAIT):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


def recording(visited, name, action=NEXT):
    @step(name=name)
    def _step(ctx):
        visited.append(name)
        return action

    return _step


class SuspendCapture:
    """on_suspend hook that hands the Resumption to the test thread."""

    def __init__(self):
        self.resumption = None
        self.parked = threading.Event()

    def __call__(self, resumption):
        self.resumption = resumption
        self.parked.set()


# ---------------------------------------------------------------------------
# Sequencing
# ---------------------------------------------------------------------------


class TestSequencing:
    """Steps run in order on one Context."""

    def test_chain_runs_in_order(self, scheduler, recorder):
        visited = []
        workflow = chain(*(recording(visited, n) for n in ("read", "patch", "verify")))
        task = scheduler.start(workflow, {}, recorder)

        outcome = task.wait(WAIT)
        assert outcome.status is TaskStatus.SUCCEEDED
        assert visited == ["read", "patch", "verify"]
        assert outcome.breadcrumbs == "read -> patch -> verify"
        assert task.state is TaskState.DONE
        assert recorder.wait_for(1)
        assert recorder.outcomes == [outcome]

    def test_explicit_continue_routes(self, scheduler):
        visited = []
        last = recording(visited, "last")
        first = recording(visited, "first", Continue(last))
        assert scheduler.start(first).wait(WAIT).succeeded
        assert visited == ["first", "last"]

    def test_context_flows_between_steps(self, scheduler):
        def produce(ctx):
            ctx["pod"] = "server-1"
            return NEXT

        def consume(ctx):
            return Done.ok(ctx["pod"].upper())

        outcome = scheduler.start(chain(produce, consume), {"ns": "ns1"}).wait(WAIT)
        assert outcome.result == "SERVER-1"
        assert outcome.context["ns"] == "ns1"

    def test_done_result(self, scheduler):
        outcome = scheduler.start(lambda ctx: Done.ok({"replicas": 3})).wait(WAIT)
        assert outcome.succeeded
        assert outcome.result == {"replicas": 3}

    def test_many_steps_with_small_slices(self):
        """A long Continue loop yields between slices and still finishes."""
        settings = EngineSettings(_env_file=None, max_steps_per_slice=3, max_workers=1)
        count = {"n": 0}

        def loop(ctx):
            count["n"] += 1
            return Continue(loop) if count["n"] < 10 else Done.ok(count["n"])

        with Scheduler(settings=settings) as scheduler:
            outcome = scheduler.start(loop).wait(WAIT)
        assert outcome.result == 10
        assert outcome.breadcrumbs.count("loop") == 10

    @pytest.mark.parametrize("exists", [True, False], ids=["patch-arm", "create-arm"])
    def test_branch_arm_rejoins_chain(self, scheduler, exists):
        visited = []
        workflow = chain(
            recording(visited, "read"),
            branch(
                lambda ctx: ctx["exists"],
                recording(visited, "patch"),
                recording(visited, "create"),
            ),
            recording(visited, "record_status"),
        )
        assert scheduler.start(workflow, {"exists": exists}).wait(WAIT).succeeded
        assert visited == ["read", "patch" if exists else "create", "record_status"]


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    """Uncaught exceptions and business failures end the Task as failed."""

    def test_done_failure(self, scheduler, recorder):
        outcome = scheduler.start(lambda ctx: Done.failure("quota"), on_done=recorder).wait(WAIT)
        assert outcome.status is TaskStatus.FAILED
        assert outcome.error == "quota"

    def test_uncaught_exception(self, scheduler, recorder):
        visited = []
        err = RuntimeError("api exploded")

        def explode(ctx):
            raise err

        workflow = chain(recording(visited, "read"), explode, recording(visited, "never"))
        outcome = scheduler.start(workflow, on_done=recorder).wait(WAIT)

        assert outcome.failed
        assert outcome.error is err
        assert visited == ["read"]
        assert outcome.breadcrumbs == "read -> explode"
        assert recorder.wait_for(1)
        assert len(recorder.outcomes) == 1

    def test_invalid_action(self, scheduler):
        outcome = scheduler.start(lambda ctx: "not an action").wait(WAIT)
        assert outcome.failed
        assert isinstance(outcome.error, InvalidActionError)

    def test_on_done_failure_is_contained(self, scheduler):
        def broken_callback(outcome):
            raise RuntimeError("callback bug")

        task = scheduler.start(lambda ctx: Done.ok(1), on_done=broken_callback)
        assert task.wait(WAIT).succeeded
        assert scheduler.stats().succeeded == 1


# ---------------------------------------------------------------------------
# Suspend / resume
# ---------------------------------------------------------------------------


class TestSuspendResume:
    """A suspended Task holds no worker and continues on resume."""

    def test_resume_merges_mapping(self, scheduler, recorder):
        seen = {}
        capture = SuspendCapture()

        def finish(ctx):
            seen["x"] = ctx["x"]
            return Done.ok()

        def wait_for_api(ctx):
            return Suspend(step=finish, on_suspend=capture)

        task = scheduler.start(wait_for_api, {}, recorder)
        assert capture.parked.wait(WAIT)
        assert task.state is TaskState.SUSPENDED

        assert task.resume({"x": 1}) is True
        assert task.wait(WAIT).succeeded
        assert seen == {"x": 1}
        assert "[suspend]" in task.outcome.breadcrumbs

    def test_second_resume_is_ignored(self, scheduler, recorder):
        capture = SuspendCapture()
        task = scheduler.start(lambda ctx: Suspend(on_suspend=capture), on_done=recorder)
        assert capture.parked.wait(WAIT)

        assert capture.resumption.resume() is True
        assert capture.resumption.resume() is False
        assert task.wait(WAIT).succeeded
        assert task.resume() is False
        assert recorder.wait_for(1)
        assert len(recorder.outcomes) == 1

    def test_resume_with_context_replaces(self, scheduler):
        capture = SuspendCapture()
        replacement = Context({"fresh": True})
        task = scheduler.start(lambda ctx: Suspend(on_suspend=capture), {"stale": True})
        assert capture.parked.wait(WAIT)
        capture.resumption.resume(replacement)
        assert task.wait(WAIT).context is replacement

    def test_resume_with_exception_fails(self, scheduler):
        capture = SuspendCapture()
        task = scheduler.start(lambda ctx: Suspend(on_suspend=capture))
        assert capture.parked.wait(WAIT)
        err = ConnectionError("watch closed")
        assert task.resume(err) is True
        outcome = task.wait(WAIT)
        assert outcome.failed
        assert outcome.error is err

    def test_resumption_fail(self, scheduler):
        capture = SuspendCapture()
        task = scheduler.start(lambda ctx: Suspend(on_suspend=capture))
        assert capture.parked.wait(WAIT)
        err = TimeoutError()
        assert capture.resumption.fail(err) is True
        assert task.wait(WAIT).error is err

    def test_resume_rejects_non_mapping(self, scheduler):
        capture = SuspendCapture()
        task = scheduler.start(lambda ctx: Suspend(on_suspend=capture))
        assert capture.parked.wait(WAIT)
        with pytest.raises(TypeError):
            task.resume(42)
        assert task.state is TaskState.SUSPENDED
        task.resume()
        assert task.wait(WAIT).succeeded

    def test_immediate_resume_inside_on_suspend(self, scheduler):
        """A client that answers synchronously still resumes correctly."""

        def read(ctx):
            return Suspend(
                step=lambda c: Done.ok(c["y"]),
                on_suspend=lambda resumption: resumption.resume({"y": 2}),
            )

        assert scheduler.start(read).wait(WAIT).result == 2

    def test_resume_before_parking_is_held(self, scheduler):
        """A callback that fires before the step returns still wakes the Task."""
        holder = {}
        answered = threading.Event()

        def issue(ctx):
            def callback():
                holder["resumed"] = holder["task"].resume({"pod": "server-1"})
                answered.set()

            threading.Thread(target=callback).start()
            answered.wait(WAIT)
            return Suspend(step=lambda c: Done.ok(c["pod"]))

        task = scheduler.create_task(issue)
        holder["task"] = task
        scheduler.submit(task)
        assert task.wait(WAIT).result == "server-1"
        assert holder["resumed"] is True

    def test_held_resume_counts_once(self, scheduler):
        holder = {}
        results = []

        def issue(ctx):
            results.append(holder["task"].resume())
            results.append(holder["task"].resume())
            return Suspend(step=lambda c: Done.ok())

        task = scheduler.create_task(issue)
        holder["task"] = task
        scheduler.submit(task)
        assert task.wait(WAIT).succeeded
        assert results == [True, False]

    def test_held_resume_dropped_when_step_finishes(self, scheduler):
        holder = {}

        def finish(ctx):
            holder["resumed"] = holder["task"].resume()
            return Done.ok("no wait")

        task = scheduler.create_task(finish)
        holder["task"] = task
        scheduler.submit(task)
        assert task.wait(WAIT).result == "no wait"
        assert holder["resumed"] is True
        assert task.resume() is False

    def test_on_suspend_error_fails_task(self, scheduler):
        err = ValueError("could not issue call")

        def issue(resumption):
            raise err

        outcome = scheduler.start(lambda ctx: Suspend(on_suspend=issue)).wait(WAIT)
        assert outcome.failed
        assert outcome.error is err

    def test_suspended_task_holds_no_worker(self):
        """With one worker, parked Tasks do not block a new one."""
        settings = EngineSettings(_env_file=None, max_workers=1)
        captures = [SuspendCapture() for _ in range(5)]
        with Scheduler(settings=settings) as scheduler:
            parked = [scheduler.start(lambda ctx, c=c: Suspend(on_suspend=c)) for c in captures]
            for capture in captures:
                assert capture.parked.wait(WAIT)

            assert scheduler.start(lambda ctx: Done.ok("ran")).wait(WAIT).result == "ran"

            for task in parked:
                task.resume()
            for task in parked:
                assert task.wait(WAIT).succeeded


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


class TestRetry:
    """Retry re-runs a step after at least the requested delay."""

    def test_delay_is_respected(self, scheduler):
        times = []

        def flaky(ctx):
            times.append(time.monotonic())
            if len(times) == 1:
                return Retry(0.2)
            return Done.ok()

        assert scheduler.start(flaky).wait(WAIT).succeeded
        assert len(times) == 2
        assert times[1] >= times[0] + 0.2

    def test_retry_explicit_step(self, scheduler):
        visited = []
        other = recording(visited, "other", Done.ok())
        outcome = scheduler.start(lambda ctx: Retry(0, other)).wait(WAIT)
        assert outcome.succeeded
        assert visited == ["other"]

    def test_retry_inside_chain_reruns_link(self, scheduler):
        calls = {"read": 0}
        visited = []

        def read(ctx):
            calls["read"] += 1
            return Retry(0.01) if calls["read"] < 3 else NEXT

        outcome = scheduler.start(chain(read, recording(visited, "after"))).wait(WAIT)
        assert outcome.succeeded
        assert calls["read"] == 3
        assert visited == ["after"]
        assert scheduler.stats().retries == 2

    def test_retry_after_shutdown_fails(self, settings):
        scheduler = Scheduler(settings=settings)
        gate_open = threading.Event()
        released = threading.Event()

        def slow(ctx):
            gate_open.set()
            released.wait(WAIT)
            return Retry(0.01)

        task = scheduler.start(slow)
        assert gate_open.wait(WAIT)
        closer = threading.Thread(target=scheduler.shutdown)
        closer.start()
        assert wait_until(lambda: scheduler.closed)
        released.set()
        closer.join(WAIT)

        outcome = task.wait(WAIT)
        assert outcome.failed
        assert isinstance(outcome.error, SchedulerClosedError)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    """Cancellation is acknowledged at the next step boundary."""

    def test_cancel_before_boundary(self, scheduler, recorder):
        visited = []
        started = threading.Event()
        release = threading.Event()

        def long_step(ctx):
            started.set()
            release.wait(WAIT)
            return NEXT

        task = scheduler.start(chain(long_step, recording(visited, "never")), on_done=recorder)
        assert started.wait(WAIT)
        assert task.cancel() is True
        assert task.state is TaskState.CANCELLED
        release.set()

        outcome = task.wait(WAIT)
        assert outcome.status is TaskStatus.CANCELLED
        assert visited == []
        assert recorder.wait_for(1)

    def test_cancel_suspended(self, scheduler):
        capture = SuspendCapture()
        task = scheduler.start(lambda ctx: Suspend(on_suspend=capture))
        assert capture.parked.wait(WAIT)

        task.cancel()
        assert task.wait(WAIT).cancelled
        assert capture.resumption.resume() is False

    def test_cancel_during_retry_delay(self, scheduler):
        started = time.monotonic()
        task = scheduler.start(lambda ctx: Retry(60))
        assert wait_until(lambda: scheduler.stats().retries == 1)
        task.cancel()
        assert task.wait(WAIT).cancelled
        assert time.monotonic() - started < WAIT

    def test_cancel_is_idempotent(self, scheduler):
        capture = SuspendCapture()
        task = scheduler.start(lambda ctx: Suspend(on_suspend=capture))
        assert capture.parked.wait(WAIT)
        assert task.cancel() is True
        assert task.cancel() is True
        assert task.wait(WAIT).cancelled

    def test_cancel_done_task(self, scheduler):
        task = scheduler.start(lambda ctx: Done.ok())
        task.wait(WAIT)
        assert task.cancel() is False

    def test_wait_times_out_while_parked(self, scheduler):
        capture = SuspendCapture()
        task = scheduler.start(lambda ctx: Suspend(on_suspend=capture))
        assert capture.parked.wait(WAIT)
        assert task.wait(0.05) is None
        assert not task.done
