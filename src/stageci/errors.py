# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


TOOL_HINTS = {
    "docker": "Install Docker and ensure the daemon is running.",
    "java": "Install a JDK or fix PATH (java).",
    "mvn": "Install Maven or fix PATH (mvn).",
    "git": "Install Git or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "sh": "A POSIX shell is required to run shell steps.",
}


@dataclass
class PipelineError(Exception):
    """
    Structured pipeline error with enough context for:
      - clean CLI output
      - the retained run record (kind + message)
      - debugging without full tracebacks
    """
    kind: str
    message: str
    stage: str | None = None
    command: str | None = None
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.stage:
            lines.append(f"stage={self.stage}")
        if self.command:
            lines.append(f"command={self.command}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


# ----------------------------------------------------------------------
# Taxonomy
# ----------------------------------------------------------------------

class ExecutionError(PipelineError):
    """The command could not be launched at all."""

    def __init__(self, message: str, *, command: str | None = None, program: str | None = None):
        details = {}
        if program and program in TOOL_HINTS:
            details["hint"] = TOOL_HINTS[program]
        super().__init__(kind="ExecutionError", message=message, command=command, details=details)


class UndefinedVariable(PipelineError):
    def __init__(self, name: str, template: str):
        super().__init__(
            kind="UndefinedVariable",
            message=f"variable {name!r} is not defined in any scope",
            details={"template": template},
        )
        self.name = name


class TimeoutExceeded(PipelineError):
    def __init__(self, message: str, *, stage: str | None = None, command: str | None = None):
        super().__init__(kind="TimeoutExceeded", message=message, stage=stage, command=command)


class LockContention(PipelineError):
    def __init__(self, pipeline: str):
        super().__init__(
            kind="LockContention",
            message="concurrent run rejected",
            details={"pipeline": pipeline},
        )


class HookError(PipelineError):
    def __init__(self, message: str, *, hook: str, stage: str | None = None, command: str | None = None):
        super().__init__(kind="HookError", message=message, stage=stage, command=command, details={"hook": hook})
        self.hook = hook


class DefinitionError(PipelineError):
    def __init__(self, message: str, *, path: str | None = None):
        details = {"path": path} if path else {}
        super().__init__(kind="DefinitionError", message=message, details=details)


# Non-zero exits are data on CommandOutcome, not exceptions; this is the
# kind recorded on a StageResult when one halts a stage.
NON_ZERO_EXIT = "NonZeroExit"
