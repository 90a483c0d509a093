# executor.py
from __future__ import annotations

import threading
from typing import Dict, Optional, Tuple

from .errors import LockContention, PipelineError, TimeoutExceeded
from .history import RunHistory
from .hooks import PostConditionDispatcher
from .locks import LockRegistry, get_lock_registry
from .model import ConcurrencyPolicy, Outcome, Pipeline, PipelineRun, RunContext, TriggerKind
from .process import CommandRunner, Deadline
from .scope import EnvironmentScope
from .stages import StageRunner
from .ui.console import get_console


def context_variables(pipeline: Pipeline, context: RunContext) -> Dict[str, str]:
    """Run-scoped variables every stage can reference."""
    out = {
        "JOB_NAME": pipeline.name,
        "BUILD_NUMBER": str(context.build_number),
        "BUILD_ID": str(context.build_number),
        "BUILD_TAG": f"{pipeline.name}-{context.build_number}",
        "WORKSPACE": str(context.workspace.resolve()),
    }
    # absent trigger metadata is left undefined, not set to ""
    if context.trigger.branch:
        out["BRANCH_NAME"] = context.trigger.branch
    if context.trigger.change_id:
        out["CHANGE_ID"] = context.trigger.change_id
    return out


class PipelineExecutor:
    """
    Runs a pipeline's stages strictly in order:

      1) admission control (reject-concurrent: never wait, never queue)
      2) pipeline deadline starts once control is acquired
      3) stages run one at a time; first non-success stops the run
      4) pipeline post hooks
      5) run recorded + history pruned to the retention count
      6) lock released, whatever happened above
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        *,
        history: Optional[RunHistory] = None,
        locks: Optional[LockRegistry] = None,
        hook_timeout: Optional[float] = None,
    ):
        self.runner = runner or CommandRunner()
        self.history = history if history is not None else RunHistory()
        self.locks = locks or get_lock_registry()
        self.hook_timeout = hook_timeout
        # run token -> (pipeline, build number, deadline)
        self._active: Dict[object, Tuple[str, int, Deadline]] = {}
        self._active_guard = threading.Lock()

    def abort(self, pipeline: str, build_number: Optional[int] = None, *, reason: str = "aborted by user") -> bool:
        """Request cooperative cancellation of active runs of `pipeline`."""
        with self._active_guard:
            targets = [
                d for name, number, d in self._active.values()
                if name == pipeline and (build_number is None or number == build_number)
            ]
        for deadline in targets:
            deadline.cancel(reason)
        return bool(targets)

    def run(self, pipeline: Pipeline, context: RunContext) -> PipelineRun:
        console = get_console()
        run = PipelineRun(pipeline=pipeline.name, build_number=context.build_number, trigger=context.trigger)
        options = pipeline.options

        guarded = options.concurrency_policy is ConcurrencyPolicy.REJECT
        if guarded and not self.locks.try_acquire(pipeline.name, context.build_number):
            err = LockContention(pipeline.name)
            run.halt(err.kind, err.message)
            run.finalize()
            console.print_run_rejected(pipeline.name, context.build_number, err.message)
            return run

        try:
            deadline = Deadline(options.timeout, label="pipeline")
            # allow-concurrent runs may share a build number
            token = object()
            with self._active_guard:
                self._active[token] = (pipeline.name, context.build_number, deadline)
            try:
                self._execute(pipeline, context, run, deadline)
            finally:
                with self._active_guard:
                    self._active.pop(token, None)
                run.finalize()
                self._retain(run, options.retention_count)
        finally:
            if guarded:
                self.locks.release(pipeline.name, context.build_number)

        console.print_results(
            pipeline.name,
            run.build_number,
            run.outcome.value,
            [(s.name, s.outcome.value) for s in run.stages],
            reason=run.reason,
            duration=run.duration,
        )
        return run

    def _execute(self, pipeline: Pipeline, context: RunContext, run: PipelineRun, deadline: Deadline) -> None:
        console = get_console()
        hook_timeout = self.hook_timeout if self.hook_timeout is not None else pipeline.options.hook_timeout
        dispatcher = PostConditionDispatcher(self.runner, hook_timeout=hook_timeout)
        stages = StageRunner(self.runner, dispatcher)

        trigger = context.trigger
        if trigger.kind is TriggerKind.CHANGE:
            trigger_label = f"change {trigger.change_id} on {trigger.branch_or('unknown branch')}"
        else:
            trigger_label = f"branch {trigger.branch_or('unknown')}"
        console.print_run_started(pipeline.name, context.build_number, len(pipeline.stages), trigger_label)

        base = EnvironmentScope(context_variables(pipeline, context), level="global")
        if context.params:
            base = base.with_overlay(context.params, level="global")
        scope = base

        try:
            try:
                scope = base.with_overlay(base.interpolate_mapping(pipeline.env), level="global")
            except PipelineError as e:
                # bad pipeline environment: nothing can run
                run.halt(e.kind, e.message)
                return

            for stage in pipeline.stages:
                stop = deadline.stop_reason()
                if stop is not None:
                    if deadline.expired:
                        err = TimeoutExceeded(stop)
                        run.halt(err.kind, err.message)
                    else:
                        run.halt("Aborted", stop)
                    break
                result = stages.execute(stage, scope, deadline=deadline, trigger=trigger)
                run.append(result)
                if result.outcome is not Outcome.SUCCESS:
                    break
        except KeyboardInterrupt:
            run.halt("Aborted", "interrupted")
            raise
        except Exception as e:
            run.halt(type(e).__name__, str(e))
            raise
        finally:
            # pipeline hooks fire once per admitted run, however the stages ended
            if pipeline.post:
                run.hook_failures.extend(dispatcher.dispatch(run, pipeline.post, scope=scope, trigger=trigger))

    def _retain(self, run: PipelineRun, keep: int) -> None:
        evicted = self.history.record(run, keep=keep)
        if evicted:
            get_console().print_debug(f"history: evicted {run.pipeline} runs {evicted}")
