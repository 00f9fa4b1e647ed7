"""Git helpers for run branches and diff capture."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from curb.errors import GitError

logger = logging.getLogger(__name__)

RUN_BRANCH_PREFIX = "curb"


@dataclass(slots=True)
class RunBranch:
    """Branch a run works on and the branch it was cut from."""

    name: str
    base: str | None
    created: bool = True


def in_repo(cwd: Path) -> bool:
    try:
        return _git(cwd, "rev-parse", "--git-dir").returncode == 0
    except GitError:
        return False


def current_branch(cwd: Path) -> str | None:
    """Checked-out branch name; None for a detached HEAD or outside a repository."""

    completed = _git(cwd, "rev-parse", "--abbrev-ref", "HEAD")
    if completed.returncode != 0:
        return None
    name = completed.stdout.strip()
    return None if name in ("", "HEAD") else name


def branch_exists(cwd: Path, name: str) -> bool:
    return _git(cwd, "show-ref", "--verify", "--quiet", f"refs/heads/{name}").returncode == 0


def run_branch_name(session_name: str, started_at: datetime) -> str:
    return f"{RUN_BRANCH_PREFIX}/{session_name}/{started_at:%Y%m%d-%H%M%S}"


def init_run_branch(cwd: Path, *, session_name: str, started_at: datetime) -> RunBranch:
    """Create and check out `curb/<session>/<timestamp>`, reusing it when it exists."""

    if not in_repo(cwd):
        raise GitError(f"{cwd} is not a git repository")
    base = current_branch(cwd)
    name = run_branch_name(session_name, started_at)

    if branch_exists(cwd, name):
        logger.warning("Branch %s already exists; checking it out", name)
        completed = _git(cwd, "checkout", name)
        created = False
    else:
        completed = _git(cwd, "checkout", "-b", name)
        created = True
    if completed.returncode != 0:
        message = completed.stderr.strip() or f"exit {completed.returncode}"
        raise GitError(f"Cannot check out branch {name}: {message}")

    logger.info("Working on branch %s (base: %s)", name, base or "detached")
    return RunBranch(name=name, base=base, created=created)


def diff(cwd: Path) -> str:
    """Working tree changes against HEAD; plain `git diff` when HEAD has no commit."""

    completed = _git(cwd, "diff", "HEAD")
    if completed.returncode != 0:
        completed = _git(cwd, "diff")
    if completed.returncode != 0:
        message = completed.stderr.strip() or f"exit {completed.returncode}"
        raise GitError(f"git diff failed: {message}")
    return completed.stdout


def _git(cwd: Path, *args: str) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            cwd=cwd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
    except FileNotFoundError as error:
        raise GitError("git executable not found") from error
