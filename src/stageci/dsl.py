# src/stageci/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Dict, Iterable, List, Optional, Union

from . import settings
from .model import (
    Command,
    ConcurrencyPolicy,
    HookAction,
    HookCallback,
    Hooks,
    Pipeline,
    PipelineOptions,
    Stage,
    TriggerKind,
)

HookLike = Union[Command, HookAction, HookCallback]


# ---------------------------------------------------------------------
# Command helpers
# ---------------------------------------------------------------------

def sh(
    name: str | None,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    halt_on_failure: bool = True,
    timeout: float | None = None,
) -> Command:
    """Create a shell step (`sh -c <cmd>`)."""
    return Command(
        program="sh",
        args=("-c", cmd),
        env=env or {},
        cwd=cwd,
        name=name,
        halt_on_failure=halt_on_failure,
        timeout=timeout,
    )


def cmd(
    program: str,
    *args: str,
    name: str | None = None,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    halt_on_failure: bool = True,
    timeout: float | None = None,
) -> Command:
    """Create a direct program invocation, no shell involved."""
    return Command(
        program=program,
        args=tuple(args),
        env=env or {},
        cwd=cwd,
        name=name,
        halt_on_failure=halt_on_failure,
        timeout=timeout,
    )


def echo(message: str, *, name: str | None = None) -> Command:
    return Command(program="echo", args=(message,), name=name or f"echo {message}")


def ignore_failure(command: Command) -> Command:
    """The same command, but a non-zero exit no longer halts the stage."""
    return replace(command, halt_on_failure=False)


# ---------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------

def _hook(item: HookLike, when: TriggerKind | None = None) -> HookAction:
    if isinstance(item, HookAction):
        return item if when is None else replace(item, when=when)
    if isinstance(item, Command) or callable(item):
        return HookAction(action=item, when=when)
    raise TypeError(f"hook must be a Command, HookAction or callable, got {type(item).__name__}")


def on_branch(item: HookLike, *, name: str | None = None) -> HookAction:
    """Run only for branch builds (no change id)."""
    action = _hook(item, TriggerKind.BRANCH)
    return replace(action, name=name) if name else action


def on_change(item: HookLike, *, name: str | None = None) -> HookAction:
    """Run only for change-request builds."""
    action = _hook(item, TriggerKind.CHANGE)
    return replace(action, name=name) if name else action


def post(
    *,
    success: Optional[Iterable[HookLike]] = None,
    failure: Optional[Iterable[HookLike]] = None,
    always: Optional[Iterable[HookLike]] = None,
) -> Hooks:
    return Hooks(
        success=tuple(_hook(h) for h in success or ()),
        failure=tuple(_hook(h) for h in failure or ()),
        always=tuple(_hook(h) for h in always or ()),
    )


# ---------------------------------------------------------------------
# Functional stage helper
# ---------------------------------------------------------------------

def stage(
    name: str,
    *commands: Command,  # allow: stage("x", sh(...), sh(...))
    steps_list: Optional[List[Command]] = None,
    env: Optional[Dict[str, str]] = None,
    post: Optional[Hooks] = None,
    timeout: float | None = None,
    cwd: str | None = None,  # default cwd applied to commands missing cwd
) -> Stage:
    body: List[Command] = []
    if steps_list:
        body.extend(steps_list)
    body.extend(commands)

    if cwd is not None:
        body = [c if c.cwd is not None else replace(c, cwd=cwd) for c in body]

    return Stage(
        name=name,
        body=tuple(body),
        env=env or {},
        post=post or Hooks(),
        timeout=timeout,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class StageBuilder:
    def __init__(self, name: str):
        self.name = name
        self._body: list[Command] = []
        self._env: dict[str, str] = {}
        self._timeout: float | None = None
        self._success: list[HookAction] = []
        self._failure: list[HookAction] = []
        self._always: list[HookAction] = []

    def step(self, name: str | None, run: str, cwd: str | None = None, *, halt_on_failure: bool = True):
        self._body.append(sh(name, run, cwd=cwd, halt_on_failure=halt_on_failure))
        return self

    def command(self, command: Command):
        self._body.append(command)
        return self

    def with_env(self, **env):
        # force values to str for env compatibility
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def timeout(self, seconds: float):
        self._timeout = seconds
        return self

    def on_success(self, *hooks: HookLike):
        self._success.extend(_hook(h) for h in hooks)
        return self

    def on_failure(self, *hooks: HookLike):
        self._failure.extend(_hook(h) for h in hooks)
        return self

    def always(self, *hooks: HookLike):
        self._always.extend(_hook(h) for h in hooks)
        return self

    def build(self) -> Stage:
        return Stage(
            name=self.name,
            body=tuple(self._body),
            env=self._env,
            post=Hooks(success=tuple(self._success), failure=tuple(self._failure), always=tuple(self._always)),
            timeout=self._timeout,
        )


def build(name: str) -> StageBuilder:
    """Convenience: build('smoke').step(...).always(...).build()"""
    return StageBuilder(name)


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *stages: Stage,
    env: Optional[Dict[str, str]] = None,
    post: Optional[Hooks] = None,
    timeout: float | None = settings.TIMEOUT_SECONDS,
    retention_count: int = settings.RETENTION_COUNT,
    concurrency_policy: ConcurrencyPolicy | str = ConcurrencyPolicy.REJECT,
    hook_timeout: float = settings.HOOK_TIMEOUT_SECONDS,
) -> Pipeline:
    """
    Pipeline definition helper.

    Users can write:
        from stageci import pipeline, stage, sh, post

        PIPELINE = pipeline(
            "app",
            stage("build", sh("Build image", "docker build -t app:${BUILD_NUMBER} .")),
            post=post(always=[sh(None, "docker rmi app:${BUILD_NUMBER}")]),
        )
    """
    return Pipeline(
        name=name,
        stages=tuple(stages),
        env=env or {},
        post=post or Hooks(),
        options=PipelineOptions(
            timeout=timeout,
            retention_count=retention_count,
            concurrency_policy=ConcurrencyPolicy(concurrency_policy),
            hook_timeout=hook_timeout,
        ),
    )
