"""Per-run artifact bundle stored under `.curb/runs/<session_id>`.

Layout::

    run.json
    tasks/<task_id>/task.json
    tasks/<task_id>/plan.md
    tasks/<task_id>/commands.jsonl
    tasks/<task_id>/changes.patch

Directories are private to the owner (0700) and files are 0600. Write failures
are logged and never stop the run.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from curb.engine import git
from curb.engine.models import Session, Task
from curb.errors import GitError

logger = logging.getLogger(__name__)

RUNS_DIRNAME = Path(".curb") / "runs"
DIR_MODE = 0o700
FILE_MODE = 0o600

_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class ArtifactStore:
    """Write the run record, task records, prompts, command logs and diffs."""

    def __init__(
        self,
        root: Path,
        *,
        project_dir: Path,
        config: dict[str, Any] | None = None,
    ) -> None:
        self.root = root
        self.project_dir = project_dir
        self.config = config or {}

    @classmethod
    def for_session(
        cls,
        *,
        project_dir: Path,
        session_id: str,
        config: dict[str, Any] | None = None,
    ) -> ArtifactStore:
        return cls(project_dir / RUNS_DIRNAME / session_id, project_dir=project_dir, config=config)

    @property
    def run_file(self) -> Path:
        return self.root / "run.json"

    def task_dir(self, task_id: str) -> Path:
        return self.root / "tasks" / _UNSAFE_ID_CHARS.sub("_", task_id)

    def init_run(self, session: Session, *, branch: str | None = None) -> None:
        self._ignore_runs_dir()
        self._write_json(
            self.run_file,
            {
                "run_id": session.session_id,
                "session_name": session.name,
                "started_at": _utc_now(),
                "status": "in_progress",
                "harness": session.harness_name or None,
                "branch": branch,
                "config": self.config,
            },
        )

    def finish_run(self, result: dict[str, Any]) -> None:
        record = self._read_json(self.run_file)
        record.update(result)
        record["status"] = result.get("outcome", "completed")
        record["completed_at"] = _utc_now()
        self._write_json(self.run_file, record)

    def start_task(self, task: Task) -> None:
        path = self.task_dir(task.id) / "task.json"
        previous = self._read_json(path)
        self._write_json(
            path,
            {
                "task_id": task.id,
                "title": task.title,
                "priority": task.priority.label,
                "status": "in_progress",
                "started_at": _utc_now(),
                "iterations": previous.get("iterations", 0),
            },
        )

    def finish_task(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        status: str,
        exit_code: int | None = None,
        duration_seconds: float | None = None,
        usage: dict[str, Any] | None = None,
    ) -> None:
        path = self.task_dir(task_id) / "task.json"
        record = self._read_json(path)
        record.update(
            {
                "task_id": task_id,
                "status": status,
                "completed_at": _utc_now(),
                "iterations": record.get("iterations", 0) + 1,
                "exit_code": exit_code,
                "duration_seconds": (
                    round(duration_seconds, 3) if duration_seconds is not None else None
                ),
                "usage": usage,
            },
        )
        self._write_json(path, record)

    def capture_plan(self, task_id: str, text: str) -> None:
        self._write_text(self.task_dir(task_id) / "plan.md", text)

    def capture_command(  # noqa: PLR0913
        self,
        task_id: str,
        *,
        command: str,
        exit_code: int,
        output: str,
        duration_seconds: float,
    ) -> None:
        line = json.dumps(
            {
                "timestamp": _utc_now(),
                "command": command,
                "exit_code": exit_code,
                "output": output,
                "duration": round(duration_seconds, 3),
            },
            ensure_ascii=False,
        )
        path = self.task_dir(task_id) / "commands.jsonl"
        try:
            self._ensure_dir(path.parent)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
            path.chmod(FILE_MODE)
        except OSError as error:
            logger.warning("Cannot append to %s: %s", path, error)

    def capture_diff(self, task_id: str) -> None:
        try:
            patch = git.diff(self.project_dir)
        except GitError as error:
            logger.warning("Skipping diff for %s: %s", task_id, error)
            return
        self._write_text(self.task_dir(task_id) / "changes.patch", patch)

    def _ignore_runs_dir(self) -> None:
        # Run records stay out of `git add -A`.
        ignore_file = self.root.parent / ".gitignore"
        if ignore_file.exists():
            return
        try:
            ignore_file.parent.mkdir(parents=True, exist_ok=True)
            ignore_file.write_text("*\n", "utf-8")
        except OSError as error:
            logger.warning("Cannot write %s: %s", ignore_file, error)

    def _ensure_dir(self, path: Path) -> None:
        path.mkdir(parents=True, exist_ok=True)
        for directory in (path, *path.parents):
            if directory == self.root.parent:
                break
            directory.chmod(DIR_MODE)

    def _write_json(self, path: Path, payload: dict[str, Any]) -> None:
        self._write_text(
            path,
            json.dumps(payload, ensure_ascii=False, indent=2, default=str) + "\n",
        )

    def _write_text(self, path: Path, text: str) -> None:
        try:
            self._ensure_dir(path.parent)
            path.write_text(text, "utf-8")
            path.chmod(FILE_MODE)
        except OSError as error:
            logger.warning("Cannot write artifact %s: %s", path, error)

    def _read_json(self, path: Path) -> dict[str, Any]:
        if not path.is_file():
            return {}
        try:
            payload = json.loads(path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            logger.warning("Cannot read artifact %s: %s", path, error)
            return {}
        return payload if isinstance(payload, dict) else {}


def _utc_now() -> str:
    return datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
