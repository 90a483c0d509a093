from __future__ import annotations

import threading

import pytest

from stageci.dsl import cmd, sh
from stageci.errors import ExecutionError
from stageci.model import Outcome
from stageci.process import CommandRunner, Deadline
from stageci.scope import EnvironmentScope


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# -------------------- CommandRunner --------------------

def test_non_zero_exit_is_data(runner):
    result = runner.run(sh(None, "echo out; echo err >&2; exit 3"))

    assert result.exit_code == 3
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert result.outcome is Outcome.FAILURE
    assert not result.ok
    assert not result.timed_out
    assert result.output == "out\nerr\n"


def test_missing_program_raises_execution_error(runner):
    with pytest.raises(ExecutionError) as exc:
        runner.run(cmd("definitely-not-a-real-tool-xyz", "--version"))
    assert exc.value.kind == "ExecutionError"
    assert "definitely-not-a-real-tool-xyz" in exc.value.message


def test_missing_working_directory_raises(runner):
    with pytest.raises(ExecutionError, match="working directory not found"):
        runner.run(sh(None, "true", cwd="nope"))


def test_relative_cwd_resolves_against_workdir(runner, tmp_path):
    (tmp_path / "sub").mkdir()
    result = runner.run(sh(None, "pwd", cwd="sub"))
    assert result.stdout.strip().endswith("sub")


def test_environment_layers(runner):
    scope = EnvironmentScope({"FOO": "scope", "BAR": "scope"})
    result = runner.run(sh(None, 'echo "$FOO $BAR"', env={"FOO": "command"}), scope=scope)
    assert result.ok
    assert result.stdout == "command scope\n"


def test_inherits_process_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("STAGECI_TEST_MARKER", "yes")
    result = CommandRunner(tmp_path).run(sh(None, 'echo "$STAGECI_TEST_MARKER"'))
    assert result.stdout == "yes\n"


def test_timeout_kills_process(runner):
    result = runner.run(cmd("sleep", "10"), 0.3)

    assert result.timed_out
    assert result.exit_code is None
    assert result.outcome is Outcome.ABORTED
    assert result.reason == "timed out after 0.3s"
    assert result.duration < 5


def test_timeout_kills_shell_children(runner):
    # the grandchild holds the output pipes; if it survived, this would block
    result = runner.run(sh(None, "sleep 10; echo done"), 0.3)
    assert result.timed_out
    assert "done" not in result.stdout
    assert result.duration < 5


def test_cancel_event_kills_process(runner):
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()
    try:
        result = runner.run(cmd("sleep", "10"), cancel=cancel)
    finally:
        timer.cancel()

    assert result.timed_out
    assert result.reason == "aborted"
    assert result.duration < 5


def test_non_positive_timeout_rejected(runner):
    with pytest.raises(ValueError):
        runner.run(sh(None, "true"), 0)


def test_output_is_tail_bounded(tmp_path):
    runner = CommandRunner(tmp_path, output_limit=10)
    result = runner.run(sh(None, "printf 0123456789abcdef"))
    assert result.stdout == "6789abcdef"


# -------------------- Deadline --------------------

def test_deadline_expiry_and_reason():
    clock = FakeClock()
    d = Deadline(10, clock=clock)

    assert d.remaining() == 10
    assert d.stop_reason() is None
    clock.now += 11
    assert d.expired
    assert d.stop_reason() == "pipeline timeout of 10s exceeded"


def test_unbounded_deadline():
    d = Deadline()
    assert d.remaining() is None
    assert not d.expired
    assert d.timeout_for(None) == (None, "pipeline")
    assert d.timeout_for(5) == (5, "command")


def test_narrowed_takes_the_earlier_expiry():
    clock = FakeClock()
    pipeline = Deadline(10, clock=clock)

    stage = pipeline.narrowed(5, label="stage")
    assert stage.label == "stage"
    assert stage.remaining() == 5

    loose = pipeline.narrowed(50, label="stage")
    assert loose.label == "pipeline"
    assert loose.remaining() == 10


def test_timeout_for_picks_the_tighter_budget():
    clock = FakeClock()
    d = Deadline(10, clock=clock)

    assert d.timeout_for(3) == (3, "command")
    assert d.timeout_for(20) == (10, "pipeline")
    assert d.timeout_for(None) == (10, "pipeline")


def test_cancel_is_shared_with_narrowed_budgets():
    pipeline = Deadline(10)
    stage = pipeline.narrowed(5, label="stage")

    pipeline.cancel("stop requested")

    assert stage.cancelled
    assert stage.stop_reason() == "stop requested"
