# definition.py
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from . import settings
from .dsl import cmd, sh
from .model import (
    Command,
    ConcurrencyPolicy,
    HookAction,
    Hooks,
    Pipeline,
    PipelineOptions,
    Stage,
    TriggerKind,
)

_DURATION = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|sec|secs|seconds|m|min|mins|minutes|h|hours)?\s*$", re.IGNORECASE)
_UNITS = {
    "ms": 0.001,
    "s": 1, "sec": 1, "secs": 1, "seconds": 1,
    "m": 60, "min": 60, "mins": 60, "minutes": 60,
    "h": 3600, "hours": 3600,
}


def parse_duration(value: Union[str, int, float, None]) -> Optional[float]:
    """Seconds from a number or a string like "30s", "10m", "1.5h"."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        m = _DURATION.match(value)
        if not m:
            raise ValueError(f"invalid duration: {value!r}")
        seconds = float(m.group(1)) * _UNITS[(m.group(2) or "s").lower()]
    if seconds <= 0:
        raise ValueError(f"duration must be positive, got {value!r}")
    return seconds


# -------------------- Schemas --------------------

class _Schema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepSchema(_Schema):
    name: Optional[str] = None
    run: Optional[str] = None
    program: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    cwd: Optional[str] = None
    halt_on_failure: bool = Field(True, validation_alias=AliasChoices("haltOnFailure", "halt_on_failure"))
    timeout: Optional[float] = None

    @field_validator("timeout", mode="before")
    @classmethod
    def _duration(cls, v: Any) -> Optional[float]:
        return parse_duration(v)

    @model_validator(mode="after")
    def _run_or_program(self) -> StepSchema:
        if (self.run is None) == (self.program is None):
            raise ValueError("a step needs exactly one of 'run' or 'program'")
        if self.run is not None and self.args:
            raise ValueError("'args' only applies to 'program' steps")
        return self

    def to_command(self) -> Command:
        if self.run is not None:
            return sh(self.name, self.run, cwd=self.cwd, env=self.env,
                      halt_on_failure=self.halt_on_failure, timeout=self.timeout)
        return cmd(self.program, *self.args, name=self.name, cwd=self.cwd, env=self.env,
                   halt_on_failure=self.halt_on_failure, timeout=self.timeout)


class HookSchema(StepSchema):
    when: Optional[TriggerKind] = None


def _steps(items: List[Any]) -> List[Any]:
    # bare strings are shell steps
    return [{"run": item} if isinstance(item, str) else item for item in items]


class HooksSchema(_Schema):
    success: List[HookSchema] = Field(default_factory=list, validation_alias=AliasChoices("success", "onSuccess"))
    failure: List[HookSchema] = Field(default_factory=list, validation_alias=AliasChoices("failure", "onFailure"))
    always: List[HookSchema] = Field(default_factory=list)

    @field_validator("success", "failure", "always", mode="before")
    @classmethod
    def _bare_strings(cls, v: Any) -> Any:
        return _steps(v) if isinstance(v, list) else v

    def to_hooks(self) -> Hooks:
        def _actions(items: List[HookSchema]) -> tuple:
            return tuple(HookAction(action=h.to_command(), when=h.when, name=h.name) for h in items)

        return Hooks(success=_actions(self.success), failure=_actions(self.failure), always=_actions(self.always))


class StageSchema(_Schema):
    name: str
    steps: List[StepSchema] = Field(default_factory=list)
    environment: Dict[str, str] = Field(default_factory=dict, validation_alias=AliasChoices("environment", "env"))
    timeout: Optional[float] = None
    post: HooksSchema = Field(default_factory=HooksSchema)

    @field_validator("steps", mode="before")
    @classmethod
    def _bare_strings(cls, v: Any) -> Any:
        return _steps(v) if isinstance(v, list) else v

    @field_validator("timeout", mode="before")
    @classmethod
    def _duration(cls, v: Any) -> Optional[float]:
        return parse_duration(v)

    def to_stage(self) -> Stage:
        return Stage(
            name=self.name,
            body=tuple(s.to_command() for s in self.steps),
            env=self.environment,
            post=self.post.to_hooks(),
            timeout=self.timeout,
        )


class OptionsSchema(_Schema):
    retention_count: int = Field(
        settings.RETENTION_COUNT,
        ge=0,
        validation_alias=AliasChoices("retentionCount", "retention_count"),
    )
    timeout: Optional[float] = settings.TIMEOUT_SECONDS
    concurrency_policy: ConcurrencyPolicy = Field(
        ConcurrencyPolicy.REJECT,
        validation_alias=AliasChoices("concurrencyPolicy", "concurrency_policy"),
    )
    hook_timeout: float = Field(
        settings.HOOK_TIMEOUT_SECONDS,
        validation_alias=AliasChoices("hookTimeout", "hook_timeout"),
    )

    @field_validator("timeout", "hook_timeout", mode="before")
    @classmethod
    def _duration(cls, v: Any) -> Optional[float]:
        return parse_duration(v)

    def to_options(self) -> PipelineOptions:
        return PipelineOptions(
            timeout=self.timeout,
            retention_count=self.retention_count,
            concurrency_policy=self.concurrency_policy,
            hook_timeout=self.hook_timeout,
        )


class PipelineSchema(_Schema):
    name: str = Field(min_length=1)
    environment: Dict[str, str] = Field(default_factory=dict, validation_alias=AliasChoices("environment", "env"))
    options: OptionsSchema = Field(default_factory=OptionsSchema)
    stages: List[StageSchema]
    post: HooksSchema = Field(default_factory=HooksSchema)

    @model_validator(mode="after")
    def _unique_stage_names(self) -> PipelineSchema:
        names = [s.name for s in self.stages]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"Duplicate stage names found: {dupes}")
        return self

    def to_pipeline(self) -> Pipeline:
        return Pipeline(
            name=self.name,
            stages=tuple(s.to_stage() for s in self.stages),
            env=self.environment,
            post=self.post.to_hooks(),
            options=self.options.to_options(),
        )


def pipeline_from_dict(data: Dict[str, Any]) -> Pipeline:
    """Validate a pipeline descriptor and convert it to the runtime model."""
    return PipelineSchema.model_validate(data).to_pipeline()
