# process.py
from __future__ import annotations

import os
import shutil
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from . import settings
from .errors import ExecutionError
from .model import Command, CommandOutcome
from .scope import EnvironmentScope


# ----------------------------------------------------------------------
# Budgets
# ----------------------------------------------------------------------

class Deadline:
    """
    Wall-clock budget shared by everything inside a run, plus the run's
    abort flag. `seconds=None` means unbounded.
    """

    def __init__(
        self,
        seconds: float | None = None,
        *,
        label: str = "pipeline",
        cancel: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._clock = clock
        self.started = clock()
        self.expires_at = None if seconds is None else self.started + seconds
        self.seconds = seconds
        self.label = label
        self.cancel_event = cancel or threading.Event()
        # narrowed children report the reason set on the run-level budget
        self._root = self
        self._reason: str | None = None

    def remaining(self) -> float | None:
        if self.expires_at is None:
            return None
        return self.expires_at - self._clock()

    @property
    def expired(self) -> bool:
        rem = self.remaining()
        return rem is not None and rem <= 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def cancel_reason(self) -> str | None:
        return self._root._reason

    def cancel(self, reason: str = "aborted") -> None:
        self._root._reason = reason
        self.cancel_event.set()

    def narrowed(self, seconds: float | None, *, label: str) -> Deadline:
        """A child budget that expires no later than this one and shares its abort flag."""
        child = Deadline(None, label=self.label, cancel=self.cancel_event, clock=self._clock)
        child.expires_at = self.expires_at
        child.seconds = self.seconds
        if seconds is not None:
            candidate = child.started + seconds
            if child.expires_at is None or candidate < child.expires_at:
                child.expires_at = candidate
                child.seconds = seconds
                child.label = label
        child._root = self._root
        return child

    def timeout_for(self, command_timeout: float | None) -> tuple[float | None, str]:
        """Effective timeout for the next command and which budget it comes from."""
        rem = self.remaining()
        if command_timeout is not None and (rem is None or command_timeout <= rem):
            return command_timeout, "command"
        return rem, self.label

    def stop_reason(self) -> str | None:
        if self.cancelled:
            return self.cancel_reason or "aborted"
        if self.expired:
            return f"{self.label} timeout of {self.seconds:g}s exceeded"
        return None


def _tail(text: str, limit: int) -> str:
    return text[-limit:] if limit and len(text) > limit else text


# ----------------------------------------------------------------------
# Runner
# ----------------------------------------------------------------------

class CommandRunner:
    """
    The single I/O boundary of the engine: spawn a process, wait for it
    (bounded by a timeout and the run's abort flag), capture its output.

    Non-zero exit is returned as data. Only a failure to launch raises.
    """

    def __init__(
        self,
        workdir: str | Path = ".",
        *,
        inherit_env: bool = True,
        output_limit: int = settings.OUTPUT_LIMIT,
        poll_interval: float = settings.POLL_INTERVAL,
    ):
        self.workdir = Path(workdir).resolve()
        self.inherit_env = inherit_env
        self.output_limit = output_limit
        self.poll_interval = poll_interval

    def _environment(self, command: Command, scope: Optional[EnvironmentScope]) -> dict[str, str]:
        env = os.environ.copy() if self.inherit_env else {}
        if scope is not None:
            env.update(scope.flatten())
        env.update(command.env)
        return env

    def _spawn(self, command: Command, env: dict[str, str]) -> subprocess.Popen:
        cwd = (self.workdir / (command.cwd or ".")).resolve()
        if not cwd.is_dir():
            raise ExecutionError(f"working directory not found: {cwd}", command=command.display())

        exe = shutil.which(command.program, path=env.get("PATH"))
        if exe is None:
            raise ExecutionError(
                f"executable not found: {command.program}",
                command=command.display(),
                program=command.program,
            )

        try:
            return subprocess.Popen(
                [exe, *command.args],
                cwd=str(cwd),
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                errors="replace",
                # own process group so a kill reaches `sh -c` children too
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            raise ExecutionError(
                f"could not launch {command.program}: {e}",
                command=command.display(),
                program=command.program,
            ) from e

    @staticmethod
    def _kill(proc: subprocess.Popen) -> tuple[str, str]:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, signal.SIGKILL)
            else:
                proc.kill()
        except (ProcessLookupError, PermissionError):
            proc.kill()
        out, err = proc.communicate()
        return out or "", err or ""

    def run(
        self,
        command: Command,
        timeout: float | None = None,
        *,
        scope: Optional[EnvironmentScope] = None,
        cancel: threading.Event | None = None,
    ) -> CommandOutcome:
        if timeout is not None and timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")

        env = self._environment(command, scope)
        start = time.monotonic()
        proc = self._spawn(command, env)
        expires_at = None if timeout is None else start + timeout

        reason: str | None = None
        while True:
            wait = self.poll_interval
            if expires_at is not None:
                wait = max(0.0, min(wait, expires_at - time.monotonic()))
            try:
                out, err = proc.communicate(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    reason = "aborted"
                elif expires_at is not None and time.monotonic() >= expires_at:
                    reason = f"timed out after {timeout:g}s"
                else:
                    continue
                out, err = self._kill(proc)
                break

        duration = time.monotonic() - start
        return CommandOutcome(
            exit_code=None if reason else proc.returncode,
            stdout=_tail(out or "", self.output_limit),
            stderr=_tail(err or "", self.output_limit),
            duration=duration,
            timed_out=reason is not None,
            reason=reason,
        )
