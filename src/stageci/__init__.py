from .dsl import sh, cmd, echo, ignore_failure, stage, post, on_branch, on_change, pipeline, StageBuilder, build
from .executor import PipelineExecutor
from .model import Command, Stage, Pipeline, PipelineRun, StageResult, Outcome, RunContext, TriggerInfo

__all__ = [
    "sh", "cmd", "echo", "ignore_failure", "stage", "post", "on_branch", "on_change", "pipeline",
    "StageBuilder", "build", "PipelineExecutor",
    "Command", "Stage", "Pipeline", "PipelineRun", "StageResult", "Outcome", "RunContext", "TriggerInfo",
]
