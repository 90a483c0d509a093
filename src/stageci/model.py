# model.py
from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union


class Outcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"

    @property
    def failed(self) -> bool:
        return self is not Outcome.SUCCESS


class ConcurrencyPolicy(str, Enum):
    ALLOW = "allow-concurrent"
    REJECT = "reject-concurrent"


class TriggerKind(str, Enum):
    BRANCH = "branch"
    CHANGE = "change"


# ---------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Command:
    """A single external invocation inside a stage body or hook."""
    program: str
    args: Tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: str | None = None
    name: str | None = None
    halt_on_failure: bool = True
    timeout: float | None = None

    def __post_init__(self) -> None:
        # frozen: normalise containers so the command can't be changed later
        object.__setattr__(self, "args", tuple(str(a) for a in self.args))
        object.__setattr__(self, "env", MappingProxyType({k: str(v) for k, v in dict(self.env).items()}))
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"command timeout must be positive, got {self.timeout}")

    @property
    def argv(self) -> List[str]:
        return [self.program, *self.args]

    @property
    def label(self) -> str:
        return self.name or self.display()

    def display(self) -> str:
        # sh -c scripts read better unquoted
        if len(self.args) == 2 and self.args[0] == "-c" and Path(self.program).name in ("sh", "bash"):
            return self.args[1]
        return shlex.join(self.argv)


@dataclass(frozen=True)
class CommandOutcome:
    exit_code: int | None
    stdout: str
    stderr: str
    duration: float
    timed_out: bool = False
    reason: str | None = None

    @property
    def outcome(self) -> Outcome:
        if self.timed_out:
            return Outcome.ABORTED
        return Outcome.SUCCESS if self.exit_code == 0 else Outcome.FAILURE

    @property
    def ok(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def output(self) -> str:
        if self.stdout and self.stderr:
            sep = "" if self.stdout.endswith("\n") else "\n"
            return self.stdout + sep + self.stderr
        return self.stdout or self.stderr


# ---------------------------------------------------------------------
# Hooks
# ---------------------------------------------------------------------

HookCallback = Callable[[Any], None]


@dataclass(frozen=True)
class HookAction:
    """
    One post-condition action: either a Command or a Python callback.

    `when` restricts the action to branch builds or change-request builds;
    None runs it for both.
    """
    action: Union[Command, HookCallback]
    when: TriggerKind | None = None
    name: str | None = None

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        if isinstance(self.action, Command):
            return self.action.label
        return getattr(self.action, "__name__", repr(self.action))

    def applies_to(self, trigger: "TriggerInfo") -> bool:
        return self.when is None or self.when is trigger.kind


@dataclass(frozen=True)
class Hooks:
    success: Tuple[HookAction, ...] = ()
    failure: Tuple[HookAction, ...] = ()
    always: Tuple[HookAction, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.success or self.failure or self.always)


@dataclass(frozen=True)
class HookFailure:
    """Record of a hook action that failed; never changes the recorded outcome."""
    block: str          # success | failure | always
    hook: str
    kind: str
    message: str
    stage: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "block": self.block,
            "hook": self.hook,
            "kind": self.kind,
            "message": self.message,
            "stage": self.stage,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> HookFailure:
        return cls(
            block=data["block"],
            hook=data["hook"],
            kind=data["kind"],
            message=data["message"],
            stage=data.get("stage"),
        )


# ---------------------------------------------------------------------
# Stages / pipelines
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Stage:
    """A named unit of pipeline work: ordered commands + post hooks."""
    name: str
    body: Tuple[Command, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    post: Hooks = field(default_factory=Hooks)
    timeout: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "body", tuple(self.body))
        object.__setattr__(self, "env", MappingProxyType({k: str(v) for k, v in dict(self.env).items()}))
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"stage {self.name!r}: timeout must be positive, got {self.timeout}")


@dataclass(frozen=True)
class PipelineOptions:
    timeout: float | None = None
    retention_count: int = 10
    concurrency_policy: ConcurrencyPolicy = ConcurrencyPolicy.REJECT
    hook_timeout: float = 300.0

    def __post_init__(self) -> None:
        if self.retention_count < 0:
            raise ValueError(f"retention_count must be >= 0, got {self.retention_count}")
        if self.timeout is not None and self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.hook_timeout <= 0:
            raise ValueError(f"hook_timeout must be positive, got {self.hook_timeout}")
        object.__setattr__(self, "concurrency_policy", ConcurrencyPolicy(self.concurrency_policy))


@dataclass(frozen=True)
class Pipeline:
    """
    A pipeline definition. `name` is the identity used for locking
    and history.
    """
    name: str
    stages: Tuple[Stage, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    post: Hooks = field(default_factory=Hooks)
    options: PipelineOptions = field(default_factory=PipelineOptions)

    def __post_init__(self) -> None:
        object.__setattr__(self, "stages", tuple(self.stages))
        object.__setattr__(self, "env", MappingProxyType({k: str(v) for k, v in dict(self.env).items()}))
        names = [s.name for s in self.stages]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"Duplicate stage names found: {dupes}")


# ---------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class TriggerInfo:
    """What started the run: a branch push, or a change request on a branch."""
    branch: Optional[str] = None
    change_id: Optional[str] = None

    @property
    def kind(self) -> TriggerKind:
        return TriggerKind.CHANGE if self.change_id else TriggerKind.BRANCH

    def branch_or(self, default: str) -> str:
        return self.branch if self.branch else default

    def change_or(self, default: str) -> str:
        return self.change_id if self.change_id else default

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"branch": self.branch, "change_id": self.change_id}


@dataclass(frozen=True)
class RunContext:
    """Everything a run needs from the outside world, passed down explicitly."""
    build_number: int
    trigger: TriggerInfo = field(default_factory=TriggerInfo)
    workspace: Path = field(default_factory=lambda: Path("."))
    params: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.build_number < 0:
            raise ValueError(f"build_number must be >= 0, got {self.build_number}")
        object.__setattr__(self, "workspace", Path(self.workspace))
        object.__setattr__(self, "params", MappingProxyType({k: str(v) for k, v in dict(self.params).items()}))


# ---------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class StageResult:
    name: str
    outcome: Outcome
    exit_code: int | None = None
    output: str = ""
    duration: float = 0.0
    reason: str | None = None
    error_kind: str | None = None
    hook_failures: Tuple[HookFailure, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "output": self.output,
            "duration": self.duration,
            "reason": self.reason,
            "error_kind": self.error_kind,
            "hook_failures": [h.to_dict() for h in self.hook_failures],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> StageResult:
        return cls(
            name=data["name"],
            outcome=Outcome(data["outcome"]),
            exit_code=data.get("exit_code"),
            output=data.get("output", ""),
            duration=float(data.get("duration", 0.0)),
            reason=data.get("reason"),
            error_kind=data.get("error_kind"),
            hook_failures=tuple(HookFailure.from_dict(h) for h in data.get("hook_failures", [])),
        )


# halts that leave a run ABORTED rather than FAILURE
ABORT_KINDS = frozenset({"TimeoutExceeded", "LockContention", "Aborted"})


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PipelineRun:
    """
    One execution of a pipeline. Appended to while stages complete, then
    finalized; the outcome is derived from the stage results and abort state.
    """
    pipeline: str
    build_number: int
    trigger: TriggerInfo = field(default_factory=TriggerInfo)
    stages: List[StageResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=_now)
    ended_at: datetime | None = None
    halt_kind: str | None = None
    halt_reason: str | None = None
    hook_failures: List[HookFailure] = field(default_factory=list)

    @property
    def outcome(self) -> Outcome:
        if any(s.outcome is Outcome.FAILURE for s in self.stages):
            return Outcome.FAILURE
        if self.halt_kind is not None and self.halt_kind not in ABORT_KINDS:
            return Outcome.FAILURE
        if self.halt_kind is not None or any(s.outcome is Outcome.ABORTED for s in self.stages):
            return Outcome.ABORTED
        return Outcome.SUCCESS

    @property
    def finalized(self) -> bool:
        return self.ended_at is not None

    @property
    def duration(self) -> float | None:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    @property
    def reason(self) -> str | None:
        """Last known reason the run did not succeed."""
        if self.halt_reason:
            return self.halt_reason
        for s in reversed(self.stages):
            if s.outcome.failed:
                return s.reason
        return None

    @property
    def exit_code(self) -> int | None:
        return self.stages[-1].exit_code if self.stages else None

    def append(self, result: StageResult) -> None:
        if self.finalized:
            raise RuntimeError(f"run #{self.build_number} of {self.pipeline!r} is already finalized")
        self.stages.append(result)

    def halt(self, kind: str, reason: str) -> None:
        """Stop the run before or between stages; ABORT_KINDS give ABORTED, anything else FAILURE."""
        self.halt_kind = kind
        self.halt_reason = reason

    def finalize(self) -> None:
        if not self.finalized:
            self.ended_at = _now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline": self.pipeline,
            "build_number": self.build_number,
            "trigger": self.trigger.to_dict(),
            "outcome": self.outcome.value,
            "stages": [s.to_dict() for s in self.stages],
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "halt_kind": self.halt_kind,
            "halt_reason": self.halt_reason,
            "hook_failures": [h.to_dict() for h in self.hook_failures],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> PipelineRun:
        trigger = data.get("trigger") or {}
        ended = data.get("ended_at")
        return cls(
            pipeline=data["pipeline"],
            build_number=int(data["build_number"]),
            trigger=TriggerInfo(branch=trigger.get("branch"), change_id=trigger.get("change_id")),
            stages=[StageResult.from_dict(s) for s in data.get("stages", [])],
            started_at=datetime.fromisoformat(data["started_at"]),
            ended_at=datetime.fromisoformat(ended) if ended else None,
            halt_kind=data.get("halt_kind"),
            halt_reason=data.get("halt_reason"),
            hook_failures=[HookFailure.from_dict(h) for h in data.get("hook_failures", [])],
        )
