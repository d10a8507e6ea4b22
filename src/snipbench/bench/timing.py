"""Timed subprocess execution for measured units.

Each unit runs in its own session so that a timeout can kill the whole
process group (the interpreter and anything it spawned) without touching
sibling units.
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger("snipbench")


# ---------------------------------------------------------------------------
# TimedResult
# ---------------------------------------------------------------------------


@dataclass
class TimedResult:
    """Result of a timed subprocess execution."""

    wall_time_s: float
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False


# ---------------------------------------------------------------------------
# Core timing implementation
# ---------------------------------------------------------------------------


def run_timed(
    command: list[str],
    *,
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
    timeout: float = 30,
) -> TimedResult:
    """Execute a command and capture its output and wall time.

    Args:
        command: Argument list, run without a shell.
        cwd: Working directory for the subprocess.
        env: Extra environment variables, layered over ``os.environ``.
        timeout: Maximum execution time in seconds.

    Returns:
        TimedResult with timing data and process output.  On timeout the
        process group is killed, ``timed_out`` is True and ``exit_code``
        is -1.
    """
    run_env = dict(os.environ)
    if env:
        run_env.update(env)

    wall_start = time.monotonic()
    timed_out = False
    proc = subprocess.Popen(
        command,
        cwd=str(cwd) if cwd else None,
        env=run_env,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        start_new_session=True,
    )
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
        exit_code = proc.returncode
    except subprocess.TimeoutExpired:
        timed_out = True
        log.debug("Timeout after %ss, killing process group of pid %d", timeout, proc.pid)
        _kill_process_group(proc.pid)
        try:
            stdout, stderr = proc.communicate(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            stdout, stderr = proc.communicate()
        exit_code = -1

    wall_time = time.monotonic() - wall_start

    return TimedResult(
        wall_time_s=round(wall_time, 6),
        exit_code=exit_code,
        stdout=stdout or "",
        stderr=stderr or "",
        timed_out=timed_out,
    )


def _kill_process_group(pid: int) -> None:
    """Attempt to kill the entire process group on timeout."""
    try:
        os.killpg(os.getpgid(pid), signal.SIGKILL)
    except (ProcessLookupError, PermissionError, OSError):
        pass
