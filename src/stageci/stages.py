# stages.py
from __future__ import annotations

import time
from dataclasses import replace
from typing import List, Optional

from .errors import NON_ZERO_EXIT, ExecutionError, PipelineError
from .hooks import PostConditionDispatcher
from .model import Outcome, Stage, StageResult, TriggerInfo
from .process import CommandRunner, Deadline, _tail
from .scope import EnvironmentScope, interpolate_command
from .ui.console import get_console


class StageRunner:
    """
    Executes one stage: body commands in order, then the stage's own post
    hooks. Hook failures are attached to the result; they never change
    the outcome the body produced.
    """

    def __init__(self, runner: CommandRunner, dispatcher: PostConditionDispatcher):
        self.runner = runner
        self.dispatcher = dispatcher

    def execute(
        self,
        stage: Stage,
        scope: EnvironmentScope,
        *,
        deadline: Optional[Deadline] = None,
        trigger: Optional[TriggerInfo] = None,
    ) -> StageResult:
        deadline = (deadline or Deadline()).narrowed(stage.timeout, label="stage")
        trigger = trigger or TriggerInfo()
        console = get_console()
        console.print_stage_start(stage.name)

        start = time.monotonic()
        result, stage_scope, hint = self._run_body(stage, scope, deadline)
        result = replace(result, duration=time.monotonic() - start)
        console.print_stage_result(stage.name, result.outcome.value, result.reason, result.exit_code, hint)

        if stage.post:
            failures = self.dispatcher.dispatch(result, stage.post, scope=stage_scope, trigger=trigger, stage=stage.name)
            if failures:
                result = replace(result, hook_failures=tuple(failures))
        return result

    def _run_body(
        self,
        stage: Stage,
        scope: EnvironmentScope,
        deadline: Deadline,
    ) -> tuple[StageResult, EnvironmentScope, Optional[str]]:
        console = get_console()
        outputs: List[str] = []
        exit_code: int | None = None

        def _result(outcome: Outcome, reason: str | None = None, kind: str | None = None) -> StageResult:
            return StageResult(
                name=stage.name,
                outcome=outcome,
                exit_code=exit_code,
                output=_tail("".join(outputs), self.runner.output_limit),
                reason=reason,
                error_kind=kind,
            )

        try:
            stage_scope = scope.with_overlay(scope.interpolate_mapping(stage.env), level="stage")
        except PipelineError as e:
            return _result(Outcome.FAILURE, e.message, e.kind), scope, None

        for command in stage.body:
            # cooperative cancellation point
            stop = deadline.stop_reason()
            if stop is not None:
                kind = "TimeoutExceeded" if deadline.expired else "Aborted"
                return _result(Outcome.ABORTED, stop, kind), stage_scope, None

            try:
                resolved = interpolate_command(command, stage_scope)
            except PipelineError as e:
                return _result(Outcome.FAILURE, e.message, e.kind), stage_scope, None

            console.print_command(resolved.label)
            timeout, budget = deadline.timeout_for(resolved.timeout)
            if timeout is not None and timeout <= 0:
                stop = deadline.stop_reason() or f"{budget} timeout exceeded"
                return _result(Outcome.ABORTED, stop, "TimeoutExceeded"), stage_scope, None

            try:
                outcome = self.runner.run(resolved, timeout, scope=stage_scope, cancel=deadline.cancel_event)
            except ExecutionError as e:
                return _result(Outcome.FAILURE, e.message, e.kind), stage_scope, e.details.get("hint")

            exit_code = outcome.exit_code
            if outcome.output:
                outputs.append(outcome.output if outcome.output.endswith("\n") else outcome.output + "\n")
            console.print_command_output(outcome.output)

            if outcome.timed_out:
                if deadline.cancelled:
                    return _result(Outcome.ABORTED, deadline.stop_reason(), "Aborted"), stage_scope, None
                if budget == "command":
                    reason = f"{resolved.label}: {outcome.reason}"
                else:
                    reason = f"{budget} timeout of {deadline.seconds:g}s exceeded"
                return _result(Outcome.ABORTED, reason, "TimeoutExceeded"), stage_scope, None

            if not outcome.ok:
                if resolved.halt_on_failure:
                    reason = f"{resolved.label} failed (exit={outcome.exit_code})"
                    return _result(Outcome.FAILURE, reason, NON_ZERO_EXIT), stage_scope, None
                console.print_ignored_failure(resolved.label, outcome.exit_code)

        return _result(Outcome.SUCCESS), stage_scope, None
