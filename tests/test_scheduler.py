from __future__ import annotations

import threading
import time

import pytest

from gateci.dsl import stage, wf
from gateci.errors import DefinitionError
from gateci.model import FailureKind, StageResult, StageState, Verdict
from gateci.scheduler import Scheduler, aggregate_verdict


def _passed(stage_id: str) -> StageResult:
    return StageResult(stage_id=stage_id, state=StageState.PASSED)


def _failed(stage_id: str, kind: FailureKind = FailureKind.JOB_CRASH) -> StageResult:
    return StageResult(stage_id=stage_id, state=StageState.FAILED, kind=kind, message="boom")


def scripted(failing=(), log=None):
    """A stage runner that fails the named stages and passes the rest."""
    lock = threading.Lock()

    def run_stage(s):
        if log is not None:
            with lock:
                log.append(s.id)
        return _failed(s.id) if s.id in failing else _passed(s.id)

    return run_stage


@pytest.fixture
def scheduler():
    return Scheduler(max_workers=4, poll_interval=0.01)


def test_fail_fast_skips_dependent_of_failed_stage(scheduler):
    p = wf("p", stage("A", "true"), stage("B", "true"), stage("C", "true", needs=["A", "B"]))
    outcome = scheduler.run(p, scripted(failing={"B"}))
    states = {k: r.state for k, r in outcome.results.items()}
    assert states == {"A": StageState.PASSED, "B": StageState.FAILED, "C": StageState.SKIPPED}
    assert outcome.verdict == Verdict.FAILURE
    assert "C" not in outcome.started


def test_fail_fast_skips_transitive_dependents_but_not_unrelated_stages(scheduler):
    p = wf(
        "p",
        stage("a", "true"),
        stage("b", "true", needs=["a"]),
        stage("c", "true", needs=["b"], tolerate_failures=True),
        stage("d", "true"),
    )
    log = []
    outcome = scheduler.run(p, scripted(failing={"a"}, log=log))
    assert outcome.results["b"].state == StageState.SKIPPED
    # fail-fast wins over tolerance further down the graph
    assert outcome.results["c"].state == StageState.SKIPPED
    assert outcome.results["d"].state == StageState.PASSED
    assert sorted(log) == ["a", "d"]


def test_continue_policy_lets_tolerant_dependents_run(scheduler):
    p = wf(
        "p",
        stage("sast", "true", policy="continue"),
        stage("deploy", "true", needs=["sast"]),
        stage("notify", "true", needs=["deploy"]),
        stage("archive", "true", needs=["sast"], tolerate_failures=True),
        stage("unit", "true"),
    )
    outcome = scheduler.run(p, scripted(failing={"sast"}))
    r = outcome.results
    assert r["deploy"].state == StageState.SKIPPED
    assert "failed" in r["deploy"].message
    assert r["notify"].state == StageState.SKIPPED
    assert r["archive"].state == StageState.PASSED
    assert r["unit"].state == StageState.PASSED
    assert outcome.verdict == Verdict.FAILURE


def test_stage_starts_only_after_all_needs_are_terminal():
    finished = set()
    lock = threading.Lock()
    violations = []
    p = wf(
        "p",
        stage("a", "true"),
        stage("b", "true"),
        stage("c", "true", needs=["a", "b"]),
        stage("d", "true", needs=["c"]),
    )

    def run_stage(s):
        with lock:
            if not set(s.needs) <= finished:
                violations.append(s.id)
        time.sleep(0.02)
        with lock:
            finished.add(s.id)
        return _passed(s.id)

    outcome = Scheduler(max_workers=4, poll_interval=0.01).run(p, run_stage)
    assert violations == []
    assert outcome.started.index("c") > max(outcome.started.index("a"), outcome.started.index("b"))
    assert outcome.verdict == Verdict.SUCCESS


def test_concurrency_is_bounded_by_max_workers():
    active = 0
    peak = 0
    lock = threading.Lock()

    def run_stage(s):
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.05)
        with lock:
            active -= 1
        return _passed(s.id)

    p = wf("p", *[stage(f"s{i}", "true") for i in range(6)])
    outcome = Scheduler(max_workers=2, poll_interval=0.01).run(p, run_stage)
    assert peak <= 2
    assert outcome.started == [f"s{i}" for i in range(6)]
    assert outcome.verdict == Verdict.SUCCESS


def test_cancel_skips_pending_and_waits_for_in_flight():
    cancel = threading.Event()
    b_started = threading.Event()

    def run_stage(s):
        if s.id == "B":
            b_started.set()
            cancel.wait(5)
            return _failed("B", FailureKind.CANCELLED)
        return _passed(s.id)

    p = wf("p", stage("B", "true"), stage("C", "true"))
    result = {}
    t = threading.Thread(
        target=lambda: result.update(
            outcome=Scheduler(max_workers=1, poll_interval=0.01).run(p, run_stage, cancel_event=cancel)
        )
    )
    t.start()
    assert b_started.wait(5)
    cancel.set()
    t.join(5)

    outcome = result["outcome"]
    assert outcome.results["B"].state == StageState.FAILED
    assert outcome.results["B"].kind == FailureKind.CANCELLED
    assert outcome.results["C"].state == StageState.SKIPPED
    assert outcome.started == ["B"]
    assert outcome.verdict == Verdict.CANCELLED


def test_runner_exception_becomes_internal_error(scheduler):
    def run_stage(s):
        if s.id == "a":
            raise RuntimeError("kaboom")
        return _passed(s.id)

    p = wf("p", stage("a", "true"), stage("b", "true", needs=["a"]))
    outcome = scheduler.run(p, run_stage)
    assert outcome.results["a"].kind == FailureKind.INTERNAL_ERROR
    assert "kaboom" in outcome.results["a"].message
    assert outcome.results["b"].state == StageState.SKIPPED


def test_non_terminal_result_is_treated_as_failure(scheduler):
    p = wf("p", stage("a", "true"))
    outcome = scheduler.run(p, lambda s: StageResult(stage_id=s.id, state=StageState.RUNNING))
    assert outcome.results["a"].state == StageState.FAILED
    assert outcome.results["a"].kind == FailureKind.INTERNAL_ERROR


def test_updates_are_reported_in_order(scheduler):
    seen = []
    p = wf("p", stage("a", "true"), stage("b", "true", needs=["a"]))
    scheduler.run(p, scripted(failing={"a"}), on_update=lambda r: seen.append((r.stage_id, r.state)))
    assert seen == [
        ("a", StageState.RUNNING),
        ("a", StageState.FAILED),
        ("b", StageState.SKIPPED),
    ]


def test_cyclic_pipeline_runs_nothing(scheduler):
    log = []
    p = wf("p", stage("a", "true", needs=["b"]), stage("b", "true", needs=["a"]))
    with pytest.raises(DefinitionError):
        scheduler.run(p, scripted(log=log))
    assert log == []


def test_aggregate_verdict():
    assert aggregate_verdict([_passed("a")]) == Verdict.SUCCESS
    assert aggregate_verdict([_passed("a"), _failed("b")]) == Verdict.FAILURE
    assert aggregate_verdict([_failed("b")], cancelled=True) == Verdict.CANCELLED
