"""File-backed backlog stored as `prd.json`."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections import Counter
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from curb.backlog.base import task_from_mapping
from curb.engine.models import Task, TaskStatus
from curb.errors import BacklogError

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("id", "title", "status")


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload atomically via a temp file in the same directory."""

    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(payload, ensure_ascii=False, indent=2) + "\n"
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        Path(tmp_name).replace(path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    try:
        payload = json.loads(path.read_text("utf-8"))
    except FileNotFoundError as error:
        raise BacklogError(f"Backlog file not found: {path}") from error
    except json.JSONDecodeError as error:
        raise BacklogError(f"Backlog file {path} is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise BacklogError(f"Expected JSON object in {path}")
    return payload


class JsonBacklog:
    """Backlog kept in a JSON document with a top-level `tasks` array."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def list_tasks(self) -> list[Task]:
        records = self._records(load_json(self.path))
        return [task_from_mapping(raw, position=index) for index, raw in enumerate(records)]

    def get_task(self, task_id: str) -> Task | None:
        for task in self.list_tasks():
            if task.id == task_id:
                return task
        return None

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        payload = load_json(self.path)
        raw = self._find(payload, task_id)
        raw["status"] = TaskStatus(status).value
        write_json(self.path, payload)
        logger.debug("Task %s -> %s", task_id, raw["status"])

    def append_note(self, task_id: str, text: str) -> None:
        payload = load_json(self.path)
        raw = self._find(payload, task_id)
        timestamp = datetime.now(tz=UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        existing = raw.get("notes") or ""
        raw["notes"] = f"{existing}\n[{timestamp}] {text}"
        write_json(self.path, payload)

    def validate(self) -> list[str]:
        """Return every structural problem found; an empty list means valid."""

        try:
            payload = load_json(self.path)
        except BacklogError as error:
            return [str(error)]
        tasks = payload.get("tasks")
        if not isinstance(tasks, list):
            return ["missing 'tasks' array"]

        errors: list[str] = []
        ids: list[str] = []
        for index, raw in enumerate(tasks):
            if not isinstance(raw, dict):
                errors.append(f"task #{index}: expected an object")
                continue
            missing = [name for name in _REQUIRED_FIELDS if raw.get(name) is None]
            if missing:
                errors.append(f"task #{index}: missing required fields: {', '.join(missing)}")
                continue
            try:
                task = task_from_mapping(raw, position=index)
            except BacklogError as error:
                errors.append(str(error))
                continue
            ids.append(task.id)

        duplicates = sorted(task_id for task_id, count in Counter(ids).items() if count > 1)
        if duplicates:
            errors.append(f"duplicate task ids: {', '.join(duplicates)}")

        known = set(ids)
        for raw in tasks:
            if not isinstance(raw, dict):
                continue
            depends_on = raw.get("dependsOn") or raw.get("depends_on") or []
            if not isinstance(depends_on, list):
                continue
            dangling = [dep for dep in depends_on if dep not in known]
            if dangling:
                errors.append(
                    f"task {raw.get('id')!r}: unknown dependencies: {', '.join(map(str, dangling))}",
                )
        return errors

    def _records(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        tasks = payload.get("tasks")
        if not isinstance(tasks, list):
            raise BacklogError(f"{self.path}: missing 'tasks' array")
        for index, raw in enumerate(tasks):
            if not isinstance(raw, dict):
                raise BacklogError(f"{self.path}: task #{index} must be an object")
        return tasks

    def _find(self, payload: dict[str, Any], task_id: str) -> dict[str, Any]:
        for raw in self._records(payload):
            if raw.get("id") == task_id:
                return raw
        raise BacklogError(f"Unknown task id {task_id!r} in {self.path}")
