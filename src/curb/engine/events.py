"""Structured event sinks for engine runs."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

SESSION_START = "session_start"
HARNESS_SELECTED = "harness_selected"
HARNESS_FALLBACK = "harness_fallback"
RUN_BRANCH = "run_branch"
TASK_START = "task_start"
TASK_END = "task_end"
VERIFICATION_FAILED = "verification_failed"
BUDGET_WARNING = "budget_warning"
BUDGET_EXCEEDED = "budget_exceeded"
HOOK_FAILURE = "hook_failure"
LOOP_END = "loop_end"


class EventSink(Protocol):
    """Destination for structured engine events."""

    def emit(self, event_type: str, data: dict[str, Any]) -> None:
        """Record one event."""


class NullEventSink:
    """Discard every event."""

    def emit(self, event_type: str, data: dict[str, Any]) -> None:
        return None


@dataclass(slots=True)
class RecordingEventSink:
    """Keep events in memory."""

    events: list[dict[str, Any]] = field(default_factory=list)

    def emit(self, event_type: str, data: dict[str, Any]) -> None:
        self.events.append(_record(event_type, data))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for event in self.events if event["event_type"] == event_type]


class JsonlEventLog:
    """Append one JSON object per line to a per-session log file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def for_session(cls, *, logs_root: Path, project_name: str, session_id: str) -> JsonlEventLog:
        return cls(logs_root / project_name / f"{session_id}.jsonl")

    def emit(self, event_type: str, data: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(_record(event_type, data), ensure_ascii=False, default=str)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")


def read_events(path: Path) -> list[dict[str, Any]]:
    """Load every record from a JSONL event log."""

    events: list[dict[str, Any]] = []
    for line in path.read_text("utf-8").splitlines():
        if line.strip():
            events.append(json.loads(line))
    return events


def _record(event_type: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "timestamp": datetime.now(tz=UTC).isoformat(),
        "event_type": event_type,
        "data": dict(data),
    }
