"""User-facing run log for stageci: progress on stdout, problems on stderr."""

from __future__ import annotations

import sys
from typing import Iterable, Optional


class Console:
    """
    Single sink for everything a run reports.

    `debug` adds tracebacks and captured command output; `quiet` drops the
    per-command and per-hook progress lines.
    """

    def __init__(self, debug: bool = False, quiet: bool = False):
        self.debug = debug
        self.quiet = quiet

    def print_header(self, title: str) -> None:
        print(f"\n{title}\n{'-' * len(title)}")

    def print_run_started(
        self,
        pipeline: str,
        build_number: int,
        stage_count: int,
        trigger: Optional[str] = None,
    ) -> None:
        print("\nRUN STARTED")
        print(f"Pipeline: {pipeline}")
        print(f"Build: #{build_number}")
        if trigger:
            print(f"Trigger: {trigger}")
        print(f"Stages: {stage_count}")
        print()

    def print_run_rejected(self, pipeline: str, build_number: int, reason: str) -> None:
        print(f"\nRUN REJECTED: {pipeline} #{build_number}", file=sys.stderr)
        print(f"Reason: {reason}", file=sys.stderr)

    def print_stage_start(self, name: str) -> None:
        print(f"\nSTAGE STARTED: {name}")

    def print_command(self, label: str) -> None:
        if not self.quiet:
            print(f"COMMAND: {label}")

    def print_command_output(self, output: str) -> None:
        """Captured output is only echoed in debug mode."""
        if self.debug and output:
            for line in output.rstrip("\n").splitlines():
                print(f"  | {line}")

    def print_ignored_failure(self, label: str, exit_code: Optional[int]) -> None:
        print(f"COMMAND FAILED (ignored): {label} (exit={exit_code})")

    def print_stage_result(
        self,
        name: str,
        outcome: str,
        reason: Optional[str] = None,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print the stage status line and, on failure, why.

        Args:
            name: Stage name
            outcome: SUCCESS | FAILURE | ABORTED
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
        """
        if outcome == "SUCCESS":
            print("STATUS: success")
            return
        print(f"STAGE {outcome}: {name}")
        if exit_code is not None:
            print(f"Exit code: {exit_code}")
        if hint:
            print(f"Hint: {hint}")
        if reason:
            if self.debug:
                print(f"Error details: {reason}")
            else:
                # first line only outside debug mode
                print(f"Error: {reason.splitlines()[0]}")

    def print_hooks(self, owner: str, block: str) -> None:
        if not self.quiet:
            print(f"POST ({block}): {owner}")

    def print_hook_failure(self, owner: str, hook: str, message: str) -> None:
        print(f"HOOK FAILED: {owner} [{hook}]", file=sys.stderr)
        print(f"  {message.splitlines()[0] if message else 'Unknown error'}", file=sys.stderr)

    def print_results(
        self,
        pipeline: str,
        build_number: int,
        outcome: str,
        stages: Iterable[tuple[str, str]],
        reason: Optional[str] = None,
        duration: Optional[float] = None,
    ) -> None:
        rule = "=" * 40
        print(f"\n{rule}\nRESULTS: {pipeline} #{build_number}\n{rule}")
        for name, status in stages:
            print(f"  {name}: {status}")
        print(f"Outcome: {outcome}")
        if reason and outcome != "SUCCESS":
            print(f"Reason: {reason.splitlines()[0]}")
        if duration is not None:
            print(f"Duration: {duration:.1f}s")

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Report a problem that stops the CLI before or outside a run
        (no pipeline file, invalid definition, ...).

        Args:
            title: Short headline, printed after "ERROR:"
            message: One-line explanation
            details: Extra lines, indented
            suggestion: What to try next, printed last
        """
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or [])
        if suggestion:
            lines.append(f"\n{suggestion}")
        print("\n".join(lines), file=sys.stderr)

    def print_exception(self, exc: BaseException) -> None:
        if not self.debug:
            print(f"Error: {exc}", file=sys.stderr)
            return
        import traceback
        traceback.print_exception(type(exc), exc, exc.__traceback__)

    def print_info(self, message: str) -> None:
        print(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            print(f"[DEBUG] {message}", file=sys.stderr)


# installed by the CLI; library callers get a default one
_console: Optional[Console] = None


def get_console() -> Console:
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
