"""Deterministic next-task selection over a backlog snapshot."""

from __future__ import annotations

from collections.abc import Sequence

from curb.engine.models import Task, TaskStatus


def select(
    tasks: Sequence[Task],
    epic_filter: str | None = None,
    label_filter: str | None = None,
) -> Task | None:
    """Return the next task to run, or None when nothing is ready.

    Ready tasks are filtered by epic and label, then ordered by priority with
    ties kept in backlog order. The result depends only on the snapshot.
    """

    candidates = ready_tasks(tasks, epic_filter=epic_filter, label_filter=label_filter)
    if not candidates:
        return None
    return candidates[0]


def ready_tasks(
    tasks: Sequence[Task],
    *,
    epic_filter: str | None = None,
    label_filter: str | None = None,
) -> list[Task]:
    """All selectable tasks in selection order."""

    closed = _closed_ids(tasks)
    ready = [task for task in tasks if _is_ready(task, closed)]
    if epic_filter:
        ready = [task for task in ready if task.parent == epic_filter or task.id == epic_filter]
    if label_filter:
        ready = [task for task in ready if label_filter in task.labels]
    # sorted() is stable, so equal priorities keep backlog order.
    return sorted(ready, key=lambda task: task.priority)


def blocked_tasks(tasks: Sequence[Task]) -> list[Task]:
    """Open tasks waiting on at least one dependency that is not closed."""

    closed = _closed_ids(tasks)
    return [
        task
        for task in tasks
        if task.status == TaskStatus.OPEN and not all(dep in closed for dep in task.depends_on)
    ]


def is_ready(task: Task, tasks: Sequence[Task]) -> bool:
    """Check the ready invariant for one task against a snapshot."""

    return _is_ready(task, _closed_ids(tasks))


def task_counts(tasks: Sequence[Task]) -> dict[str, int]:
    """Totals by status for operator reporting."""

    counts = {"total": len(tasks)}
    for status in TaskStatus:
        counts[status.value] = sum(1 for task in tasks if task.status == status)
    return counts


def all_tasks_closed(tasks: Sequence[Task]) -> bool:
    return all(task.status == TaskStatus.CLOSED for task in tasks)


def _closed_ids(tasks: Sequence[Task]) -> set[str]:
    return {task.id for task in tasks if task.status == TaskStatus.CLOSED}


def _is_ready(task: Task, closed: set[str]) -> bool:
    if task.status != TaskStatus.OPEN:
        return False
    return all(dep in closed for dep in task.depends_on)
