from __future__ import annotations

import threading
import time

import pytest

from stageci.dsl import pipeline, post, sh, stage
from stageci.executor import PipelineExecutor, context_variables
from stageci.locks import LockRegistry
from stageci.model import ConcurrencyPolicy, Outcome, RunContext, TriggerInfo
from stageci.process import CommandRunner


class CountingLocks(LockRegistry):
    def __init__(self):
        super().__init__()
        self.acquired = 0
        self.released = 0

    def try_acquire(self, identity, build_number):
        ok = super().try_acquire(identity, build_number)
        self.acquired += ok
        return ok

    def release(self, identity, build_number):
        self.released += 1
        super().release(identity, build_number)


class ExplodingRunner(CommandRunner):
    def __init__(self, workdir, exc):
        super().__init__(workdir)
        self.exc = exc

    def run(self, command, timeout=None, **kwargs):
        raise self.exc


def _ctx(tmp_path, number=1, **kwargs):
    return RunContext(build_number=number, workspace=tmp_path, **kwargs)


def _recording_post(calls):
    return post(
        success=[lambda run: calls.append("success")],
        failure=[lambda run: calls.append("failure")],
        always=[lambda run: calls.append("always")],
    )


# -------------------- fail-fast --------------------

def test_failing_stage_stops_the_run(executor, tmp_path):
    calls = []
    p = pipeline(
        "p",
        stage("A", sh(None, "exit 0")),
        stage("B", sh(None, "exit 1")),
        stage("C", sh(None, "touch c-ran")),
        post=_recording_post(calls),
    )

    run = executor.run(p, _ctx(tmp_path))

    assert run.outcome is Outcome.FAILURE
    assert [s.name for s in run.stages] == ["A", "B"]
    assert [s.outcome for s in run.stages] == [Outcome.SUCCESS, Outcome.FAILURE]
    assert run.stages[1].exit_code == 1
    assert run.stages[1].error_kind == "NonZeroExit"
    assert not (tmp_path / "c-ran").exists()
    assert calls == ["failure", "always"]
    assert run.finalized


def test_successful_run(executor, tmp_path):
    calls = []
    p = pipeline("p", stage("A", sh(None, "true")), stage("B", sh(None, "true")), post=_recording_post(calls))

    run = executor.run(p, _ctx(tmp_path))

    assert run.outcome is Outcome.SUCCESS
    assert run.reason is None
    assert calls == ["success", "always"]


# -------------------- timeouts --------------------

def test_stage_timeout_aborts_run(executor, tmp_path):
    calls = []
    p = pipeline(
        "p",
        stage("slow", sh(None, "sleep 10"), timeout=1),
        stage("next", sh(None, "touch next-ran")),
        post=_recording_post(calls),
    )

    start = time.monotonic()
    run = executor.run(p, _ctx(tmp_path))

    assert time.monotonic() - start < 8
    assert run.outcome is Outcome.ABORTED
    assert run.stages[0].outcome is Outcome.ABORTED
    assert run.reason == "stage timeout of 1s exceeded"
    assert len(run.stages) == 1
    assert not (tmp_path / "next-ran").exists()
    assert calls == ["failure", "always"]


def test_pipeline_timeout_aborts_run(executor, tmp_path):
    calls = []
    p = pipeline(
        "p",
        stage("A", sh(None, "sleep 0.1")),
        stage("B", sh(None, "sleep 10")),
        post=_recording_post(calls),
        timeout=1,
    )

    run = executor.run(p, _ctx(tmp_path))

    assert run.outcome is Outcome.ABORTED
    assert run.stages[-1].reason == "pipeline timeout of 1s exceeded"
    assert calls == ["failure", "always"]


def test_cleanup_hooks_run_after_pipeline_budget(executor, tmp_path):
    p = pipeline(
        "p",
        stage("slow", sh(None, "sleep 10")),
        post=post(always=[sh(None, "touch cleaned")]),
        timeout=0.5,
    )

    run = executor.run(p, _ctx(tmp_path))

    assert run.outcome is Outcome.ABORTED
    assert (tmp_path / "cleaned").exists()
    assert run.hook_failures == []


def test_abort_between_stages(executor, tmp_path):
    def request_abort(result):
        executor.abort("p", reason="stop requested")

    p = pipeline(
        "p",
        stage("A", sh(None, "true"), post=post(always=[request_abort])),
        stage("B", sh(None, "touch b-ran")),
    )

    run = executor.run(p, _ctx(tmp_path))

    assert run.outcome is Outcome.ABORTED
    assert run.halt_kind == "Aborted"
    assert run.reason == "stop requested"
    assert [s.name for s in run.stages] == ["A"]
    assert not (tmp_path / "b-ran").exists()


def test_abort_unknown_run_is_a_no_op(executor):
    assert executor.abort("nothing-running") is False


# -------------------- lock --------------------

def test_lock_released_exactly_once(tmp_path):
    locks = CountingLocks()
    executor = PipelineExecutor(CommandRunner(tmp_path), locks=locks)

    executor.run(pipeline("p", stage("A", sh(None, "true"))), _ctx(tmp_path, 1))
    executor.run(pipeline("p", stage("A", sh(None, "exit 1"))), _ctx(tmp_path, 2))

    assert locks.acquired == 2
    assert locks.released == 2
    assert not locks.is_held("p")


def test_lock_released_on_unexpected_error(tmp_path, history):
    locks = CountingLocks()
    executor = PipelineExecutor(ExplodingRunner(tmp_path, RuntimeError("boom")), history=history, locks=locks)

    with pytest.raises(RuntimeError, match="boom"):
        executor.run(pipeline("p", stage("A", sh(None, "true"))), _ctx(tmp_path))

    assert locks.released == 1
    assert not locks.is_held("p")
    recorded = history.get("p", 1)
    assert recorded.outcome is Outcome.FAILURE
    assert recorded.halt_kind == "RuntimeError"


def test_lock_released_on_interrupt(tmp_path, history):
    locks = CountingLocks()
    executor = PipelineExecutor(ExplodingRunner(tmp_path, KeyboardInterrupt()), history=history, locks=locks)

    with pytest.raises(KeyboardInterrupt):
        executor.run(pipeline("p", stage("A", sh(None, "true"))), _ctx(tmp_path))

    assert locks.released == 1
    assert history.get("p", 1).outcome is Outcome.ABORTED


@pytest.mark.parametrize("exc", [KeyboardInterrupt(), RuntimeError("boom")])
def test_pipeline_hooks_fire_when_a_stage_raises(tmp_path, history, exc):
    calls = []
    executor = PipelineExecutor(ExplodingRunner(tmp_path, exc), history=history)
    p = pipeline("p", stage("A", sh(None, "true")), post=_recording_post(calls))

    with pytest.raises(type(exc)):
        executor.run(p, _ctx(tmp_path))

    assert calls == ["failure", "always"]
    assert history.get("p", 1).stages == []


def test_abort_reaches_runs_sharing_a_build_number(executor, tmp_path):
    quick = pipeline("p", stage("A", sh(None, "sleep 0.3")), concurrency_policy=ConcurrencyPolicy.ALLOW)
    slow = pipeline("p", stage("A", sh(None, "sleep 10")), concurrency_policy=ConcurrencyPolicy.ALLOW)
    results = {}

    first = threading.Thread(target=lambda: results.setdefault("quick", executor.run(quick, _ctx(tmp_path))))
    second = threading.Thread(target=lambda: results.setdefault("slow", executor.run(slow, _ctx(tmp_path))))
    first.start()
    second.start()
    deadline = time.monotonic() + 5
    while len(executor._active) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    first.join()

    start = time.monotonic()
    assert executor.abort("p", 1, reason="stop requested") is True
    second.join(timeout=5)

    assert not second.is_alive()
    assert time.monotonic() - start < 5
    assert results["quick"].outcome is Outcome.SUCCESS
    assert results["slow"].outcome is Outcome.ABORTED
    assert results["slow"].reason == "stop requested"
    assert executor._active == {}


def test_concurrent_run_is_rejected(executor, locks, history, tmp_path, capsys):
    p = pipeline("p", stage("A", sh(None, "sleep 1.5")))
    results = {}

    t = threading.Thread(target=lambda: results.setdefault("first", executor.run(p, _ctx(tmp_path, 1))))
    t.start()
    deadline = time.monotonic() + 5
    while not locks.is_held("p") and time.monotonic() < deadline:
        time.sleep(0.01)
    assert locks.holder("p") == 1

    start = time.monotonic()
    second = executor.run(p, _ctx(tmp_path, 2))
    assert time.monotonic() - start < 0.5
    t.join()

    assert second.outcome is Outcome.ABORTED
    assert second.halt_kind == "LockContention"
    assert second.reason == "concurrent run rejected"
    assert second.stages == []
    assert results["first"].outcome is Outcome.SUCCESS
    # rejected runs are not retained
    assert [r.build_number for r in history.list("p")] == [1]
    assert not locks.is_held("p")
    assert "RUN REJECTED" in capsys.readouterr().err


def test_rejected_run_fires_no_hooks(executor, locks, tmp_path):
    calls = []
    locks.try_acquire("p", 99)

    run = executor.run(pipeline("p", stage("A", sh(None, "true")), post=_recording_post(calls)), _ctx(tmp_path))

    assert run.outcome is Outcome.ABORTED
    assert calls == []
    assert locks.holder("p") == 99


def test_allow_concurrent_skips_the_lock(executor, locks, tmp_path):
    locks.try_acquire("p", 99)
    p = pipeline("p", stage("A", sh(None, "true")), concurrency_policy=ConcurrencyPolicy.ALLOW)

    run = executor.run(p, _ctx(tmp_path))

    assert run.outcome is Outcome.SUCCESS
    assert locks.holder("p") == 99


def test_distinct_pipelines_do_not_contend(executor, locks, tmp_path):
    locks.try_acquire("other", 1)
    run = executor.run(pipeline("p", stage("A", sh(None, "true"))), _ctx(tmp_path))
    assert run.outcome is Outcome.SUCCESS


# -------------------- retention --------------------

def test_retention_keeps_most_recent(executor, history, tmp_path):
    p = pipeline("p", stage("A", sh(None, "true")), retention_count=2)
    for n in (1, 2, 3):
        executor.run(p, _ctx(tmp_path, n))
    assert [r.build_number for r in history.list("p")] == [2, 3]


@pytest.mark.parametrize("runs, keep", [(1, 3), (5, 2), (3, 3), (4, 0)])
def test_retention_bound(executor, history, tmp_path, runs, keep):
    p = pipeline("p", stage("A", sh(None, "true")), retention_count=keep)
    for n in range(1, runs + 1):
        executor.run(p, _ctx(tmp_path, n))

    retained = [r.build_number for r in history.list("p")]
    assert len(retained) == min(runs, keep)
    assert retained == list(range(runs - len(retained) + 1, runs + 1))


# -------------------- environment --------------------

def test_context_variables(tmp_path):
    p = pipeline("app", stage("A"))
    ctx = RunContext(build_number=7, trigger=TriggerInfo(branch="main", change_id="12"), workspace=tmp_path)

    env = context_variables(p, ctx)

    assert env["BUILD_NUMBER"] == "7"
    assert env["BUILD_ID"] == "7"
    assert env["JOB_NAME"] == "app"
    assert env["BUILD_TAG"] == "app-7"
    assert env["BRANCH_NAME"] == "main"
    assert env["CHANGE_ID"] == "12"
    assert env["WORKSPACE"] == str(tmp_path.resolve())


def test_missing_trigger_metadata_is_undefined(tmp_path):
    env = context_variables(pipeline("app", stage("A")), _ctx(tmp_path))
    assert "BRANCH_NAME" not in env
    assert "CHANGE_ID" not in env


def test_run_variables_reach_commands(executor, tmp_path):
    p = pipeline(
        "app",
        stage("A", sh(None, "echo ${IMAGE} ${BRANCH_NAME} ${TARGET}")),
        env={"IMAGE": "app:${BUILD_NUMBER}"},
    )
    ctx = _ctx(tmp_path, 7, trigger=TriggerInfo(branch="main"), params={"TARGET": "prod"})

    run = executor.run(p, ctx)

    assert run.stages[0].output == "app:7 main prod\n"


def test_stage_env_does_not_leak(executor, tmp_path):
    p = pipeline(
        "p",
        stage("A", sh(None, "echo ${X}"), env={"X": "stage"}),
        stage("B", sh(None, "echo ${X}")),
        env={"X": "global"},
    )

    run = executor.run(p, _ctx(tmp_path))

    assert [s.output for s in run.stages] == ["stage\n", "global\n"]


def test_bad_pipeline_env_fails_run(executor, tmp_path):
    calls = []
    p = pipeline("p", stage("A", sh(None, "true")), env={"X": "${UNDEFINED}"}, post=_recording_post(calls))

    run = executor.run(p, _ctx(tmp_path))

    assert run.outcome is Outcome.FAILURE
    assert run.halt_kind == "UndefinedVariable"
    assert run.stages == []
    assert calls == ["failure", "always"]


def test_pipeline_hook_failure_keeps_outcome(executor, tmp_path):
    p = pipeline("p", stage("A", sh(None, "true")), post=post(always=[sh("notify", "exit 1")]))

    run = executor.run(p, _ctx(tmp_path))

    assert run.outcome is Outcome.SUCCESS
    assert [f.hook for f in run.hook_failures] == ["notify"]
