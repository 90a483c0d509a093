# cli.py
from __future__ import annotations

import signal
import sys
from dataclasses import replace
from pathlib import Path

import click

from stageci import settings
from stageci.definition import parse_duration
from stageci.errors import DefinitionError
from stageci.executor import PipelineExecutor
from stageci.git_facts.git import current_branch
from stageci.history import FileRunHistory
from stageci.loader import find_pipeline_files, load_pipeline
from stageci.model import Command, HookAction, Outcome, Pipeline, RunContext, TriggerInfo
from stageci.process import CommandRunner
from stageci.ui.console import Console, get_console, set_console

EXIT_CODES = {
    Outcome.SUCCESS: 0,
    Outcome.FAILURE: 1,
    Outcome.ABORTED: 2,
}


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover pipeline file from argument or default.

    Args:
        pipeline_arg: Optional pipeline argument from CLI

    Returns:
        Path to pipeline file

    Raises:
        SystemExit: If no pipeline can be found or several exist
    """
    console = get_console()

    if pipeline_arg:
        path = Path(pipeline_arg)
        if not path.exists() and path.suffix not in (".py", ".json"):
            path = Path(str(path) + ".py")
        if not path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  stageci run --pipeline my_pipeline.py",
            )
            sys.exit(1)
        return path

    files = find_pipeline_files(".")

    if len(files) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=[
                "Looked for:",
                "  stageci_pipeline.py / stageci_pipeline.json",
                "  *_pipeline.py / *.pipeline.json",
            ],
            suggestion="Specify a pipeline explicitly:\n  stageci run --pipeline my_pipeline.py",
        )
        sys.exit(1)

    if len(files) > 1:
        file_list = "\n".join(f"  {f}" for f in files)
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a pipeline explicitly:\n  stageci run --pipeline stageci_pipeline.py",
        )
        sys.exit(1)

    return files[0]


def _load(ctx, pipeline_arg: str | None) -> Pipeline:
    console = get_console()
    path = discover_pipeline(pipeline_arg)
    try:
        return load_pipeline(path)
    except DefinitionError as e:
        console.print_error("Failed to load pipeline", f"Could not load pipeline from {path}", details=[str(e)])
        sys.exit(1)
    except Exception as e:
        console.print_error("Failed to load pipeline", f"Could not load pipeline from {path}", details=[str(e)])
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


def _parse_params(values: tuple[str, ...]) -> dict[str, str]:
    params: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--param")
        params[key] = value
    return params


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and captured command output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Hide per-command progress lines")
@click.pass_context
def cli(ctx, debug, quiet):
    """stageci: sequential, fail-fast CI pipeline executor."""
    set_console(Console(debug=debug, quiet=quiet))
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help="Pipeline file (.py or .json)")
@click.option("--build-number", type=click.IntRange(min=0), envvar="BUILD_NUMBER", required=True,
              help="Run identifier supplied by the caller [env: BUILD_NUMBER]")
@click.option("--branch", envvar="BRANCH_NAME", default=None,
              help="Branch being built [env: BRANCH_NAME, default: current git branch]")
@click.option("--change-id", envvar="CHANGE_ID", default=None,
              help="Change/pull request id, if any [env: CHANGE_ID]")
@click.option("--param", "-p", "params", multiple=True, help="Extra KEY=VALUE variable (repeatable)")
@click.option("--timeout", default=None, help="Override the pipeline timeout (e.g. 600, 30m)")
@click.option("--retention", type=click.IntRange(min=0), default=None, help="Override the retention count")
@click.option("--history-dir", default=settings.HISTORY_DIR, show_default=True, help="Run history directory")
@click.option("--workdir", default=".", show_default=True, help="Working directory for commands")
@click.pass_context
def run(ctx, pipeline_arg, build_number, branch, change_id, params, timeout, retention, history_dir, workdir):
    """Run a pipeline once."""
    console = get_console()
    pipeline = _load(ctx, pipeline_arg)

    options = pipeline.options
    try:
        if timeout is not None:
            options = replace(options, timeout=parse_duration(timeout))
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--timeout")
    if retention is not None:
        options = replace(options, retention_count=retention)
    pipeline = replace(pipeline, options=options)

    trigger = TriggerInfo(branch=branch or current_branch(workdir), change_id=change_id or None)
    context = RunContext(
        build_number=build_number,
        trigger=trigger,
        workspace=Path(workdir),
        params=_parse_params(params),
    )
    executor = PipelineExecutor(CommandRunner(workdir), history=FileRunHistory(history_dir))

    def _signal_handler(signum, frame):
        console.print_info(f"\nReceived signal {signum}, aborting run...")
        executor.abort(pipeline.name, build_number, reason=f"aborted by signal {signum}")

    previous = {sig: signal.signal(sig, _signal_handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        result = executor.run(pipeline, context)
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    sys.exit(EXIT_CODES[result.outcome])


def _describe(action: HookAction) -> str:
    text = action.action.display() if isinstance(action.action, Command) else action.label
    return f"{text} (only {action.when.value} builds)" if action.when else text


@cli.command()
@click.option("--pipeline", "pipeline_arg", default=None, help="Pipeline file (.py or .json)")
@click.pass_context
def plan(ctx, pipeline_arg):
    """Show the stages, commands and hooks of a pipeline without running it."""
    console = get_console()
    pipeline = _load(ctx, pipeline_arg)
    opts = pipeline.options

    console.print_header(f"Pipeline: {pipeline.name}")
    timeout = f"{opts.timeout:g}s" if opts.timeout else "none"
    console.print_info(
        f"timeout={timeout} retention={opts.retention_count} concurrency={opts.concurrency_policy.value}"
    )
    for key, value in pipeline.env.items():
        console.print_info(f"  env {key}={value}")

    for i, stage in enumerate(pipeline.stages, start=1):
        console.print_info(f"\n{i}. {stage.name}" + (f" (timeout {stage.timeout:g}s)" if stage.timeout else ""))
        for command in stage.body:
            marker = "" if command.halt_on_failure else "  [failure ignored]"
            console.print_info(f"     $ {command.display()}{marker}")
        for block in ("success", "failure", "always"):
            for action in getattr(stage.post, block):
                console.print_info(f"     post {block}: {_describe(action)}")

    for block in ("success", "failure", "always"):
        for action in getattr(pipeline.post, block):
            console.print_info(f"post {block}: {_describe(action)}")


@cli.command()
@click.option("--pipeline", "pipeline_name", default=None, help="Pipeline name (default: all)")
@click.option("--history-dir", default=settings.HISTORY_DIR, show_default=True, help="Run history directory")
@click.pass_context
def history(ctx, pipeline_name, history_dir):
    """List the retained runs."""
    console = get_console()
    store = FileRunHistory(history_dir)
    names = [pipeline_name] if pipeline_name else store.pipelines()

    if not names:
        console.print_info("No runs recorded.")
        return

    for name in names:
        runs = store.list(name)
        console.print_header(f"{name} ({len(runs)} run(s))")
        for r in runs:
            duration = f"{r.duration:.1f}s" if r.duration is not None else "-"
            line = f"  #{r.build_number:<6} {r.outcome.value:<8} {r.started_at:%Y-%m-%d %H:%M:%S} {duration:>8}"
            if r.trigger.branch or r.trigger.change_id:
                line += f"  {r.trigger.branch_or('-')}"
                if r.trigger.change_id:
                    line += f" (change {r.trigger.change_id})"
            if r.outcome is not Outcome.SUCCESS and r.reason:
                line += f"  {r.reason.splitlines()[0]}"
            console.print_info(line)


if __name__ == "__main__":
    cli()
