"""Backlog stores the engine reads tasks from."""

from __future__ import annotations

from pathlib import Path

from curb.backlog.base import Backlog, task_from_mapping, task_to_mapping
from curb.backlog.beads_store import BeadsBacklog
from curb.backlog.json_store import JsonBacklog
from curb.config import Settings

__all__ = [
    "Backlog",
    "BeadsBacklog",
    "JsonBacklog",
    "open_backlog",
    "task_from_mapping",
    "task_to_mapping",
]


def open_backlog(settings: Settings, project_dir: Path | None = None) -> Backlog:
    """Return the configured backlog store for a project."""

    root = project_dir or settings.project_dir
    if settings.backlog.backend == "beads":
        return BeadsBacklog(root)
    path = settings.backlog.prd_path
    return JsonBacklog(path if path.is_absolute() else root / path)
