from __future__ import annotations

import pytest

from tests.helpers import FakeRunner, group, task
from tide.executor.budget import ConcurrencyBudget
from tide.executor.credentials import NO_SESSION
from tide.executor.events import CollectingSink, EventKind
from tide.executor.group import GroupExecutor
from tide.executor.types import UPSTREAM_FAILURE_REASON, GroupOutcome, TaskStatus


def run(executor: GroupExecutor, grp, limit: int = 4, **kwargs):
    return executor.run_group(grp, ConcurrencyBudget(limit), NO_SESSION, **kwargs)


def test_sequential_runs_in_declared_order() -> None:
    runner = FakeRunner()
    report = run(GroupExecutor(runner), group("g", task("a"), task("b"), task("c")))

    assert runner.calls == ["a", "b", "c"]
    assert [r.task for r in report] == ["a", "b", "c"]
    assert report.outcome == GroupOutcome.ALL_OK


def test_sequential_required_failure_aborts_rest_of_group() -> None:
    runner = FakeRunner({"b": "fail"})
    report = run(GroupExecutor(runner), group("g", task("a"), task("b"), task("c")))

    assert runner.calls == ["a", "b"]
    assert [r.task for r in report] == ["a", "b"]
    assert report.outcome == GroupOutcome.HAS_REQUIRED_FAILURE


def test_sequential_timeout_counts_as_required_failure() -> None:
    runner = FakeRunner({"a": "timeout"})
    report = run(GroupExecutor(runner), group("g", task("a"), task("b")))

    assert runner.calls == ["a"]
    assert report.get("a").status == TaskStatus.TIMED_OUT
    assert report.outcome == GroupOutcome.HAS_REQUIRED_FAILURE


def test_keep_going_runs_past_required_failure() -> None:
    runner = FakeRunner({"a": "fail"})
    executor = GroupExecutor(runner, continue_on_required_failure=True)
    report = run(executor, group("g", task("a"), task("b")))

    assert runner.calls == ["a", "b"]
    assert report.outcome == GroupOutcome.HAS_REQUIRED_FAILURE


def test_optional_failure_does_not_abort() -> None:
    runner = FakeRunner({"a": "fail"})
    report = run(GroupExecutor(runner), group("g", task("a", required=False), task("b")))

    assert runner.calls == ["a", "b"]
    assert report.get("a").status == TaskStatus.FAILED
    assert report.outcome == GroupOutcome.HAS_OPTIONAL_FAILURES


def test_disabled_task_has_no_result() -> None:
    runner = FakeRunner()
    report = run(GroupExecutor(runner), group("g", task("a", enabled=False), task("b")))

    assert runner.calls == ["b"]
    with pytest.raises(KeyError):
        report.get("a")


def test_precondition_skip_is_reported_and_not_run() -> None:
    runner = FakeRunner()
    grp = group("g", task("a", check_command="tide-definitely-missing"), task("b"))
    report = run(GroupExecutor(runner), grp)

    assert runner.calls == ["b"]
    skipped = report.get("a")
    assert skipped.status == TaskStatus.SKIPPED
    assert skipped.reason == "missing command: tide-definitely-missing"
    assert report.outcome == GroupOutcome.ALL_OK


@pytest.mark.parametrize("parallel", [False, True])
def test_skip_optional_skips_without_running(parallel: bool) -> None:
    runner = FakeRunner()
    grp = group("g", task("a"), task("opt", required=False))
    report = run(GroupExecutor(runner), grp, parallel=parallel, skip_optional=True)

    assert runner.calls == ["a"]
    assert report.get("opt").status == TaskStatus.SKIPPED
    assert report.get("opt").reason == UPSTREAM_FAILURE_REASON


def test_parallel_siblings_all_resolve_after_failure() -> None:
    runner = FakeRunner({"a": "fail"}, delay_s=0.05)
    grp = group("g", task("a"), task("b"), task("c"), parallel=True)
    report = run(GroupExecutor(runner), grp)

    assert sorted(runner.calls) == ["a", "b", "c"]
    assert [r.task for r in report] == ["a", "b", "c"]
    assert report.get("a").status == TaskStatus.FAILED
    assert report.get("b").status == TaskStatus.SUCCESS
    assert report.get("c").status == TaskStatus.SUCCESS
    assert report.outcome == GroupOutcome.HAS_REQUIRED_FAILURE


def test_parallel_override_beats_group_setting() -> None:
    runner = FakeRunner({"a": "fail"})
    grp = group("g", task("a"), task("b"), parallel=False)
    report = run(GroupExecutor(runner), grp, parallel=True)
    assert len(report) == 2


def test_parallel_respects_the_budget() -> None:
    runner = FakeRunner(delay_s=0.1)
    budget = ConcurrencyBudget(2)
    grp = group("g", *(task(f"t{i}") for i in range(6)), parallel=True)

    report = GroupExecutor(runner).run_group(grp, budget, NO_SESSION)

    assert len(report) == 6
    assert runner.max_concurrent <= 2
    assert budget.peak <= 2
    assert budget.in_flight == 0


def test_parallel_with_limit_one_is_effectively_serial() -> None:
    runner = FakeRunner(delay_s=0.02)
    grp = group("g", *(task(f"t{i}") for i in range(4)), parallel=True)
    run(GroupExecutor(runner), grp, limit=1)
    assert runner.max_concurrent == 1


def test_events_for_each_resolution() -> None:
    sink = CollectingSink()
    runner = FakeRunner({"a": "timeout", "b": "fail"})
    grp = group("g", task("a", required=False), task("b"), task("c"))
    run(GroupExecutor(runner, events=sink), grp)

    resolved = sink.of_kind(EventKind.TASK_RESOLVED)
    assert [(e.group, e.task) for e in resolved] == [("g", "a"), ("g", "b")]
    assert [e.task for e in sink.of_kind(EventKind.TASK_TIMED_OUT)] == ["a"]
    assert [e.task for e in sink.of_kind(EventKind.REQUIRED_TASK_FAILED)] == ["b"]
    assert all(e.is_alert for e in sink.of_kind(EventKind.REQUIRED_TASK_FAILED))


def test_failing_sink_does_not_break_the_group() -> None:
    class BrokenSink:
        def emit(self, event) -> None:
            raise RuntimeError("listener down")

    runner = FakeRunner()
    report = run(GroupExecutor(runner, events=BrokenSink()), group("g", task("a"), task("b")))
    assert report.outcome == GroupOutcome.ALL_OK


def test_escalation_warning_only_when_verbose() -> None:
    grp = group("g", task("a", command=("sh", "-c", "sudo true")))

    quiet = CollectingSink()
    run(GroupExecutor(FakeRunner(), events=quiet), grp)
    assert quiet.of_kind(EventKind.ESCALATION_SUSPECTED) == []

    loud = CollectingSink()
    run(GroupExecutor(FakeRunner(), events=loud, verbose=True), grp)
    warnings = loud.of_kind(EventKind.ESCALATION_SUSPECTED)
    assert len(warnings) == 1
    assert "sudo: true" in warnings[0].message


def test_cancelled_runner_stops_scheduling() -> None:
    runner = FakeRunner()
    runner.cancel()
    report = run(GroupExecutor(runner), group("g", task("a"), task("b")))
    assert runner.calls == []
    assert len(report) == 0
