"""Backlog adapter for the `bd` (beads) issue tracker CLI."""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any

from curb.backlog.base import task_from_mapping
from curb.engine.models import Task, TaskStatus
from curb.errors import BacklogError

logger = logging.getLogger(__name__)

Runner = Callable[[Sequence[str], Path], subprocess.CompletedProcess[str]]


def _run_bd(argv: Sequence[str], cwd: Path) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603
        list(argv),
        cwd=cwd,
        capture_output=True,
        text=True,
        check=False,
    )


class BeadsBacklog:
    """Read and update tasks through the `bd` command line."""

    def __init__(self, project_dir: Path, *, executable: str = "bd", runner: Runner = _run_bd):
        self.project_dir = project_dir
        self.executable = executable
        self.runner = runner

    def list_tasks(self) -> list[Task]:
        output = self._bd("list", "--json")
        try:
            payload = json.loads(output or "[]")
        except json.JSONDecodeError as error:
            raise BacklogError(f"bd list returned invalid JSON: {error}") from error
        if not isinstance(payload, list):
            raise BacklogError("bd list --json must return an array")
        return [
            task_from_mapping(beads_record(raw), position=index)
            for index, raw in enumerate(payload)
            if isinstance(raw, dict)
        ]

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        self._bd("update", task_id, "--status", TaskStatus(status).value)

    def append_note(self, task_id: str, text: str) -> None:
        self._bd("comment", task_id, text)

    def _bd(self, *args: str) -> str:
        argv = [self.executable, *args]
        try:
            completed = self.runner(argv, self.project_dir)
        except FileNotFoundError as error:
            raise BacklogError(f"beads CLI not found: {self.executable}") from error
        if completed.returncode != 0:
            message = completed.stderr.strip() or f"exit code {completed.returncode}"
            raise BacklogError(f"`{' '.join(argv[:3])}` failed: {message}")
        return completed.stdout


def beads_record(raw: dict[str, Any]) -> dict[str, Any]:
    """Map a beads issue onto the backlog task record shape."""

    status = raw.get("status") or TaskStatus.OPEN.value
    if status not in {item.value for item in TaskStatus}:
        # Extra beads states such as `blocked` are neither runnable nor done.
        status = TaskStatus.IN_PROGRESS.value
    priority = raw.get("priority")
    return {
        "id": raw.get("id"),
        "title": raw.get("title"),
        "type": raw.get("issue_type") or raw.get("type") or "task",
        "status": status,
        "priority": f"P{priority}" if isinstance(priority, int) else "P2",
        "description": raw.get("description") or "",
        "acceptanceCriteria": _string_list(raw.get("acceptance_criteria")),
        "dependsOn": _string_list(raw.get("blocks")),
        "parent": raw.get("parent") or None,
        "labels": _string_list(raw.get("labels")),
        "notes": raw.get("notes") or "",
    }


def _string_list(value: object) -> list[str]:
    if isinstance(value, str):
        return [line.strip("- ").strip() for line in value.splitlines() if line.strip()]
    if isinstance(value, list):
        return [str(item) for item in value]
    return []
