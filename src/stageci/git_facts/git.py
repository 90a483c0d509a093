# git.py
# Small, focused wrapper around the Git CLI.
# The CLI uses it to fill in trigger metadata the caller did not supply.

from __future__ import annotations

import subprocess
from typing import Optional


def _git(args: list[str], cwd: Optional[str] = None) -> str:
    """
    Execute a git command and return its stdout as a clean string.

    Args:
        args: List of git arguments (e.g. ["rev-parse", "HEAD"])
        cwd: Optional working directory in which to run the git command.

    Returns:
        Stdout from the git command with surrounding whitespace removed.

    Raises:
        subprocess.CalledProcessError: git exited non-zero
        FileNotFoundError: git is not installed
    """
    out = subprocess.check_output(
        ["git", *args],
        cwd=cwd,
        text=True,
        stderr=subprocess.DEVNULL,
    )
    return out.strip()


def current_branch(cwd: Optional[str] = None) -> Optional[str]:
    """
    Return the checked-out branch name, or None when it can't be known
    (detached HEAD, not a repository, git missing).
    """
    try:
        name = _git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=cwd)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return None
    # detached HEAD reports the literal "HEAD"
    return None if not name or name == "HEAD" else name
