"""
Tests for the Step protocol and combinators.

These run steps directly against a Context; no scheduler is involved.
"""

from __future__ import annotations

import pytest

from reconcile.engine.actions import NEXT, Branch, Continue, Done, FanOut, Retry, Suspend
from reconcile.engine.context import Context
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


@step
def read(ctx):
    return NEXT


@step
def patch(ctx):
    return NEXT


@step
def verify(ctx):
    return NEXT


@step(name="record-status")
def record(ctx):
    return Done.ok("recorded")


def returning(action):
    return FunctionStep(lambda ctx: action, label="fixed")


class ReadPod:
    name = "read_pod"

    def execute(self, context):
        return NEXT


# ---------------------------------------------------------------------------
# Basics
# ---------------------------------------------------------------------------


class TestStepBasics:
    def test_decorator_bare(self):
        assert isinstance(read, FunctionStep)
        assert read.name == "read"
        assert read.execute(Context()) == NEXT

    def test_decorator_named(self):
        assert record.name == "record-status"
        assert record.execute(Context()) == Done.ok("recorded")

    def test_protocol_runtime_check(self):
        assert isinstance(ReadPod(), Step)
        assert isinstance(read, Step)

    def test_as_step_passthrough(self):
        obj = ReadPod()
        assert as_step(obj) is obj

    def test_as_step_wraps_callable(self):
        def delete_pod(ctx):
            return NEXT

        wrapped = as_step(delete_pod)
        assert isinstance(wrapped, FunctionStep)
        assert wrapped.name == "delete_pod"

    @pytest.mark.parametrize("value", [None, 42, "read_pod"])
    def test_as_step_rejects(self, value):
        with pytest.raises(TypeError):
            as_step(value)

    def test_step_name(self):
        assert step_name(ReadPod()) == "read_pod"
        assert step_name(read) == "read"
        assert step_name(chain(read, patch)) == "read"


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------


class TestChain:
    """Chain resolves unresolved successors to the next link."""

    def test_continue_goes_to_successor(self):
        assert Chain(read, patch).execute(Context()) == Continue(patch)

    def test_last_link_keeps_next(self):
        assert Chain(read).execute(Context()) == NEXT

    def test_suspend_resumes_at_successor(self):
        hook = print
        link = Chain(returning(Suspend(on_suspend=hook)), patch)
        assert link.execute(Context()) == Suspend(step=patch, on_suspend=hook)

    def test_fan_out_joins_at_successor(self):
        link = Chain(returning(FanOut([read], timeout=2.0)), patch)
        action = link.execute(Context())
        assert action.join is patch
        assert action.timeout == 2.0
        assert action.branches == (Branch(read),)

    def test_retry_reruns_same_link(self):
        link = Chain(returning(Retry(0.5)), patch)
        assert link.execute(Context()) == Retry(0.5, step=link)

    def test_explicit_successors_untouched(self):
        assert Chain(returning(Continue(verify)), patch).execute(Context()) == Continue(verify)
        assert Chain(returning(Retry(1, verify)), patch).execute(Context()) == Retry(1, verify)
        assert Chain(returning(Done.ok(1)), patch).execute(Context()) == Done.ok(1)

    def test_then_appends_at_end(self):
        extended = Chain(read, patch).then(verify)
        assert extended == Chain(read, Chain(patch, verify))


class TestChainFunction:
    def test_single_step(self):
        assert chain(read) is read

    def test_empty(self):
        with pytest.raises(ValueError):
            chain()

    def test_builds_links(self):
        assert chain(read, patch, verify) == Chain(read, Chain(patch, verify))

    def test_flattens_nested(self):
        """chain(a, chain(b, c), d) runs a, b, c, d."""
        assert chain(read, chain(patch, verify), record) == Chain(
            read, Chain(patch, Chain(verify, record))
        )

    def test_accepts_plain_functions(self):
        def first(ctx):
            return NEXT

        result = chain(first, patch)
        assert isinstance(result, Chain)
        assert result.head.name == "first"


# ---------------------------------------------------------------------------
# Conditional, Parallel, Terminal
# ---------------------------------------------------------------------------


class TestBranch:
    def test_true_path(self):
        cond = branch(lambda ctx: ctx["exists"], patch, read, name="exists?")
        assert isinstance(cond, Conditional)
        assert cond.name == "exists?"
        assert cond.execute(Context({"exists": True})) == Continue(patch)
        assert cond.execute(Context({"exists": False})) == Continue(read)

    def test_missing_else_falls_through(self):
        cond = branch(lambda ctx: False, patch)
        assert cond.execute(Context()) == NEXT

    def test_fall_through_inside_chain(self):
        workflow = chain(branch(lambda ctx: False, patch), verify)
        assert workflow.execute(Context()) == Continue(verify)

    def test_selected_arm_rejoins_chain(self):
        workflow = chain(branch(lambda ctx: ctx["exists"], patch, read), verify)
        assert workflow.execute(Context({"exists": True})) == Continue(Chain(patch, verify))
        assert workflow.execute(Context({"exists": False})) == Continue(Chain(read, verify))

    def test_chained_arm_is_extended(self):
        workflow = chain(branch(lambda ctx: True, chain(read, patch)), verify)
        assert workflow.execute(Context()) == Continue(Chain(read, Chain(patch, verify)))

    def test_last_link_arm_is_unchanged(self):
        workflow = chain(read, branch(lambda ctx: True, patch))
        assert workflow.successor.execute(Context()) == Continue(patch)


class TestParallel:
    def test_builds_fan_out(self):
        par = parallel([read, patch], join=verify, timeout=3.0)
        assert isinstance(par, Parallel)
        action = par.execute(Context())
        assert isinstance(action, FanOut)
        assert action.branches == (Branch(read), Branch(patch))
        assert action.join is verify
        assert action.timeout == 3.0

    def test_shared_context(self):
        action = parallel([read], fork=False).execute(Context())
        assert action.branches[0].fork is False

    def test_explicit_branch_kept(self):
        ctx = Context({"server": "s2"})
        action = parallel([Branch(read, ctx)]).execute(Context())
        assert action.branches[0].context is ctx

    def test_join_from_chain(self):
        workflow = chain(parallel([read, patch]), verify)
        assert workflow.execute(Context()).join is verify


class TestFanOutBuilder:
    def test_pairs(self):
        action = fan_out([(read, {"i": 0}), (patch, {"i": 1})], join=verify)
        assert [b.context["i"] for b in action.branches] == [0, 1]
        assert action.join is verify

    def test_plain_function_branches(self):
        def child(ctx):
            return NEXT

        action = fan_out([child])
        assert isinstance(action.branches[0].step, FunctionStep)


class TestTerminate:
    def test_done_with_result(self):
        term = terminate("ok")
        assert term.execute(Context()) == Done(result="ok")
        assert term.name == "terminate"
