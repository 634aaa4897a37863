"""Shell and git utilities.

Provides simple wrappers around subprocess calls for running shell commands
and git operations, plus output formatting helpers. Every mutating call takes
an explicit ``cwd`` so release steps always run inside the isolated workspace.
"""

from __future__ import annotations

import os
import subprocess
import sys
import threading
from collections.abc import Mapping
from pathlib import Path

# Tier workers print concurrently
_output_lock = threading.Lock()


def git(
    *args: str,
    cwd: Path | str | None = None,
    check: bool = True,
    timeout: float | None = None,
) -> str:
    """Run a git command and return stdout.

    Args:
        *args: Arguments to pass to git (e.g., "status", "--short").
        cwd: Repository to run in. Defaults to the process cwd.
        check: If True (default), raise on non-zero exit. Set to False
               for commands that may legitimately fail (e.g., tag lookup).
        timeout: Seconds before the command is killed.

    Returns:
        Stripped stdout from the git command.
    """
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=check,
        timeout=timeout,
    )
    return result.stdout.strip()


def run(
    *args: str,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
    capture: bool = False,
    timeout: float | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run an arbitrary command.

    Unlike git(), output streams straight to the terminal unless ``capture``
    is set, so users can see build progress.

    Args:
        *args: Command and arguments (e.g., "uv", "build", "pkg/").
        cwd: Working directory.
        env: Extra environment variables layered over os.environ.
        check: If True (default), raise on non-zero exit.
        capture: Capture stdout/stderr instead of streaming them.
        timeout: Seconds before the command is killed.

    Returns:
        CompletedProcess with returncode for checking success.
    """
    full_env = {**os.environ, **env} if env else None
    return subprocess.run(
        args,
        cwd=cwd,
        env=full_env,
        check=check,
        capture_output=capture,
        text=True,
        timeout=timeout,
    )


def step(msg: str) -> None:
    """Print a visually distinct step header.

    Used to separate the phases of a release in terminal output.
    """
    with _output_lock:
        print(f"\n{'─' * 60}\n{msg}\n{'─' * 60}")


def say(msg: str) -> None:
    """Print a progress line (indented under the current step)."""
    with _output_lock:
        print(f"  {msg}")


def warn(msg: str) -> None:
    """Print a warning to stderr."""
    with _output_lock:
        print(f"  WARNING: {msg}", file=sys.stderr)
