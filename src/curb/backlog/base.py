"""Backlog store interface and task record parsing."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from curb.engine.models import Priority, Task, TaskStatus, TaskType
from curb.errors import BacklogError


class Backlog(Protocol):
    """Persistent task list the engine reads and mutates."""

    def list_tasks(self) -> list[Task]:
        """Return a fresh snapshot of every task, in backlog order."""

    def update_status(self, task_id: str, status: TaskStatus) -> None:
        """Persist a new status for one task."""

    def append_note(self, task_id: str, text: str) -> None:
        """Attach a free-form note to one task."""


def task_from_mapping(raw: Mapping[str, Any], *, position: int | None = None) -> Task:
    """Build a task from a JSON record, accepting camelCase or snake_case keys."""

    where = f"task #{position}" if position is not None else "task"
    task_id = raw.get("id")
    if not isinstance(task_id, str) or not task_id.strip():
        raise BacklogError(f"{where}: id must be a non-empty string")
    where = f"task {task_id!r}"

    title = raw.get("title")
    if not isinstance(title, str) or not title.strip():
        raise BacklogError(f"{where}: title must be a non-empty string")

    try:
        status = TaskStatus(raw.get("status", TaskStatus.OPEN.value))
    except ValueError as error:
        raise BacklogError(f"{where}: unknown status {raw.get('status')!r}") from error

    try:
        task_type = TaskType(raw.get("type") or TaskType.TASK.value)
    except ValueError as error:
        raise BacklogError(f"{where}: unknown type {raw.get('type')!r}") from error

    try:
        priority = Priority.parse(raw.get("priority", Priority.P2.value))
    except ValueError as error:
        raise BacklogError(f"{where}: {error}") from error

    parent = raw.get("parent")
    if parent is not None and not isinstance(parent, str):
        raise BacklogError(f"{where}: parent must be a string")

    return Task(
        id=task_id,
        title=title,
        type=task_type,
        description=_as_text(raw.get("description"), where=where, field_name="description"),
        acceptance_criteria=_as_strings(
            _first_present(raw, "acceptanceCriteria", "acceptance_criteria"),
            where=where,
            field_name="acceptanceCriteria",
        ),
        priority=priority,
        status=status,
        depends_on=_as_strings(
            _first_present(raw, "dependsOn", "depends_on"),
            where=where,
            field_name="dependsOn",
        ),
        parent=parent or None,
        labels=_as_strings(raw.get("labels"), where=where, field_name="labels"),
        notes=_as_text(raw.get("notes"), where=where, field_name="notes"),
    )


def task_to_mapping(task: Task) -> dict[str, Any]:
    """Serialize a task using the backlog file's camelCase keys."""

    payload: dict[str, Any] = {
        "id": task.id,
        "title": task.title,
        "type": task.type.value,
        "status": task.status.value,
        "priority": task.priority.label,
        "description": task.description,
        "dependsOn": list(task.depends_on),
        "acceptanceCriteria": list(task.acceptance_criteria),
        "labels": list(task.labels),
        "notes": task.notes,
    }
    if task.parent:
        payload["parent"] = task.parent
    return payload


def _first_present(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _as_text(value: object, *, where: str, field_name: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise BacklogError(f"{where}: {field_name} must be a string")
    return value


def _as_strings(value: object, *, where: str, field_name: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise BacklogError(f"{where}: {field_name} must be a list of strings")
    return tuple(value)
