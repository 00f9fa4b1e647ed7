"""Shared test fixtures."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

_PASSTHROUGH_FLAG_VARS = ("CLAUDE_FLAGS", "CODEX_FLAGS", "GEMINI_FLAGS")
SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture(autouse=True)
def isolated_curb_env(tmp_path: Path, monkeypatch) -> None:
    """Keep user config, logs and `CURB_*` overrides out of every test."""

    for name in list(os.environ):
        if name.startswith("CURB_") or name in _PASSTHROUGH_FLAG_VARS:
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg-config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg-data"))
    # Child processes such as the echo agent import curb from the source tree.
    pythonpath = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join([str(SRC_DIR), pythonpath]) if pythonpath else str(SRC_DIR),
    )


@pytest.fixture()
def git() -> Callable[..., str]:
    """Run a git command in a directory and return its stdout."""

    def _git(cwd: Path, *args: str) -> str:
        completed = subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
        )
        return completed.stdout

    return _git


@pytest.fixture()
def git_repo(tmp_path: Path, monkeypatch, git) -> Path:
    """Fresh repository with one commit containing README.md."""

    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Curb Tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Curb Tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "tests@example.com")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", os.devnull)
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")

    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    (repo / "README.md").write_text("# demo\n", "utf-8")
    git(repo, "add", "README.md")
    git(repo, "commit", "-q", "-m", "init")
    return repo


@pytest.fixture()
def write_prd() -> Callable[..., Path]:
    """Write a `prd.json` backlog with the given task records."""

    def _write(directory: Path, tasks: list[dict[str, object]], *, name: str = "prd.json") -> Path:
        path = directory / name
        path.write_text(
            json.dumps({"prefix": "t", "tasks": tasks}, indent=2),
            "utf-8",
        )
        return path

    return _write
