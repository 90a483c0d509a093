from __future__ import annotations

import pytest

from stageci.executor import PipelineExecutor
from stageci.history import RunHistory
from stageci.hooks import PostConditionDispatcher
from stageci.locks import LockRegistry
from stageci.process import CommandRunner
from stageci.stages import StageRunner
from stageci.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def console():
    c = Console()
    set_console(c)
    yield c
    set_console(Console())


@pytest.fixture
def runner(tmp_path):
    return CommandRunner(tmp_path, poll_interval=0.02)


@pytest.fixture
def locks():
    return LockRegistry()


@pytest.fixture
def history():
    return RunHistory()


@pytest.fixture
def executor(runner, history, locks):
    return PipelineExecutor(runner, history=history, locks=locks)


@pytest.fixture
def dispatcher(runner):
    return PostConditionDispatcher(runner, hook_timeout=5)


@pytest.fixture
def stage_runner(runner, dispatcher):
    return StageRunner(runner, dispatcher)
