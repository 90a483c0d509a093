# hooks.py
from __future__ import annotations

from typing import Any, List, Optional, Sequence

from . import settings
from .errors import HookError, PipelineError
from .model import Command, HookAction, HookFailure, Hooks, Outcome, TriggerInfo
from .process import CommandRunner
from .scope import EnvironmentScope, interpolate_command
from .ui.console import get_console


class PostConditionDispatcher:
    """
    Runs the hook blocks matching a terminal outcome.

    Order is fixed: `success` (SUCCESS only), `failure` (FAILURE or
    ABORTED), then `always`. Every action is isolated: its failure is
    recorded and logged, later actions still run, and the outcome of the
    run or stage is never touched. Actions are fired once, never retried.
    """

    def __init__(self, runner: CommandRunner, *, hook_timeout: float = settings.HOOK_TIMEOUT_SECONDS):
        self.runner = runner
        self.hook_timeout = hook_timeout

    def dispatch(
        self,
        subject: Any,
        hooks: Hooks,
        *,
        scope: EnvironmentScope,
        trigger: TriggerInfo,
        stage: Optional[str] = None,
    ) -> List[HookFailure]:
        """
        Run `hooks` for `subject` (a PipelineRun or StageResult; anything
        with an `outcome`). Python callbacks receive the subject.
        """
        outcome: Outcome = subject.outcome
        blocks: list[tuple[str, Sequence[HookAction]]] = []
        if outcome is Outcome.SUCCESS:
            blocks.append(("success", hooks.success))
        else:
            blocks.append(("failure", hooks.failure))
        blocks.append(("always", hooks.always))

        owner = f"stage {stage}" if stage else "pipeline"
        console = get_console()
        failures: List[HookFailure] = []

        for block, actions in blocks:
            selected = [a for a in actions if a.applies_to(trigger)]
            if not selected:
                continue
            console.print_hooks(owner, block)
            for action in selected:
                try:
                    self._fire(action, subject, scope=scope, block=block, stage=stage)
                except PipelineError as e:
                    failure = HookFailure(block=block, hook=action.label, kind=e.kind, message=e.message, stage=stage)
                    failures.append(failure)
                    console.print_hook_failure(owner, action.label, str(e))
                except Exception as e:
                    # user callbacks: isolate anything they raise
                    failure = HookFailure(
                        block=block,
                        hook=action.label,
                        kind=type(e).__name__,
                        message=str(e),
                        stage=stage,
                    )
                    failures.append(failure)
                    console.print_hook_failure(owner, action.label, f"{type(e).__name__}: {e}")

        return failures

    def _fire(self, action: HookAction, subject: Any, *, scope: EnvironmentScope, block: str, stage: Optional[str]) -> None:
        if not isinstance(action.action, Command):
            action.action(subject)
            return

        command = interpolate_command(action.action, scope)
        console = get_console()
        console.print_command(command.label)
        timeout = command.timeout if command.timeout is not None else self.hook_timeout
        result = self.runner.run(command, timeout, scope=scope)
        console.print_command_output(result.output)

        if result.timed_out:
            raise HookError(result.reason or "timed out", hook=block, stage=stage, command=command.display())
        if not result.ok and command.halt_on_failure:
            raise HookError(f"exited with {result.exit_code}", hook=block, stage=stage, command=command.display())

