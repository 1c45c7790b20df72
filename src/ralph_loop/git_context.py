"""Read-only git snapshot for the context memory file."""

from __future__ import annotations

import subprocess
from pathlib import Path

from ralph_loop.contracts import GitSnapshot

_GIT_TIMEOUT_SECONDS = 10


def collect_git_snapshot(
    *,
    cwd: Path,
    diff_stat_max_chars: int,
    timeout_seconds: int = _GIT_TIMEOUT_SECONDS,
) -> GitSnapshot:
    """Return short status and a truncated diff stat; never raises."""

    ok, status, error = _run_git(["status", "--short"], cwd=cwd, timeout_seconds=timeout_seconds)
    if not ok:
        return GitSnapshot(available=False, error=error)

    ok, diff_stat, error = _run_git(["diff", "--stat"], cwd=cwd, timeout_seconds=timeout_seconds)
    if not ok:
        return GitSnapshot(available=True, status=status, diff_stat=f"(diff stat failed: {error})")

    return GitSnapshot(
        available=True,
        status=status,
        diff_stat=_truncate(diff_stat, limit=diff_stat_max_chars),
    )


def _run_git(args: list[str], *, cwd: Path, timeout_seconds: int) -> tuple[bool, str, str | None]:
    try:
        completed = subprocess.run(  # noqa: S603
            ["git", "--no-pager", *args],  # noqa: S607
            cwd=cwd,
            check=False,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired:
        return False, "", f"git {args[0]} timed out"
    except OSError as error:
        return False, "", f"git failed to start: {error}"

    if completed.returncode != 0:
        message = completed.stderr.strip().splitlines()
        return False, "", message[0] if message else f"git {args[0]} exit {completed.returncode}"
    return True, completed.stdout, None


def _truncate(value: str, *, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[:limit].rstrip() + "\n... (truncated)"
