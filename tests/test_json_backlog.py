from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from curb.backlog import JsonBacklog, task_from_mapping, task_to_mapping
from curb.engine.models import Priority, TaskStatus, TaskType
from curb.errors import BacklogError

pytestmark = [
    allure.epic("Backlog"),
    allure.feature("JSON Store"),
]


def test_list_tasks_reads_camel_and_snake_case_records(tmp_path: Path, write_prd) -> None:
    path = write_prd(
        tmp_path,
        [
            {
                "id": "t-1",
                "title": "Login form",
                "type": "feature",
                "status": "open",
                "priority": "P1",
                "dependsOn": ["t-0"],
                "acceptanceCriteria": ["form renders"],
                "labels": ["ui", "model:opus"],
            },
            {
                "id": "t-2",
                "title": "Fix crash",
                "type": "bug",
                "status": "closed",
                "priority": 0,
                "depends_on": [],
                "parent": "e-1",
            },
        ],
    )

    first, second = JsonBacklog(path).list_tasks()

    assert first.type is TaskType.FEATURE
    assert first.priority is Priority.P1
    assert first.depends_on == ("t-0",)
    assert first.acceptance_criteria == ("form renders",)
    assert first.model_directive == "opus"
    assert second.status is TaskStatus.CLOSED
    assert second.priority is Priority.P0
    assert second.parent == "e-1"


def test_update_status_persists_and_keeps_unknown_fields(tmp_path: Path, write_prd) -> None:
    path = write_prd(
        tmp_path,
        [{"id": "t-1", "title": "One", "status": "open", "estimate": "2h"}],
    )
    backlog = JsonBacklog(path)

    backlog.update_status("t-1", TaskStatus.IN_PROGRESS)

    payload = json.loads(path.read_text("utf-8"))
    assert payload["prefix"] == "t"
    assert payload["tasks"][0]["status"] == "in_progress"
    assert payload["tasks"][0]["estimate"] == "2h"
    assert list(tmp_path.glob(".prd.json.*.tmp")) == []


def test_append_note_adds_timestamped_lines(tmp_path: Path, write_prd) -> None:
    path = write_prd(tmp_path, [{"id": "t-1", "title": "One", "status": "open"}])
    backlog = JsonBacklog(path)

    backlog.append_note("t-1", "first attempt failed")
    backlog.append_note("t-1", "second attempt failed")

    notes = backlog.get_task("t-1").notes.strip().splitlines()
    assert len(notes) == 2
    assert notes[0].startswith("[20")
    assert notes[0].endswith("] first attempt failed")
    assert notes[1].endswith("] second attempt failed")


def test_unknown_task_id_raises(tmp_path: Path, write_prd) -> None:
    path = write_prd(tmp_path, [{"id": "t-1", "title": "One", "status": "open"}])

    with pytest.raises(BacklogError, match="Unknown task id 't-9'"):
        JsonBacklog(path).update_status("t-9", TaskStatus.CLOSED)


def test_missing_or_broken_file_raises_backlog_error(tmp_path: Path) -> None:
    with pytest.raises(BacklogError, match="not found"):
        JsonBacklog(tmp_path / "prd.json").list_tasks()

    broken = tmp_path / "broken.json"
    broken.write_text("[]", "utf-8")
    with pytest.raises(BacklogError, match="Expected JSON object"):
        JsonBacklog(broken).list_tasks()


def test_invalid_record_raises_with_task_context(tmp_path: Path, write_prd) -> None:
    path = write_prd(tmp_path, [{"id": "t-1", "title": "One", "status": "blocked"}])

    with pytest.raises(BacklogError, match="task 't-1': unknown status 'blocked'"):
        JsonBacklog(path).list_tasks()


def test_validate_reports_every_problem(tmp_path: Path, write_prd) -> None:
    path = write_prd(
        tmp_path,
        [
            {"id": "t-1", "title": "One", "status": "open", "dependsOn": ["t-404"]},
            {"id": "t-1", "title": "Duplicate", "status": "open"},
            {"id": "t-2", "status": "open"},
            {"id": "t-3", "title": "Bad priority", "status": "open", "priority": "P9"},
        ],
    )

    errors = JsonBacklog(path).validate()

    assert "task #2: missing required fields: title" in errors
    assert any(error.startswith("task 't-3'") for error in errors)
    assert "duplicate task ids: t-1" in errors
    assert "task 't-1': unknown dependencies: t-404" in errors


def test_validate_accepts_well_formed_backlog(tmp_path: Path, write_prd) -> None:
    path = write_prd(
        tmp_path,
        [
            {"id": "t-1", "title": "One", "status": "closed"},
            {"id": "t-2", "title": "Two", "status": "open", "dependsOn": ["t-1"]},
        ],
    )

    assert JsonBacklog(path).validate() == []
    assert JsonBacklog(tmp_path / "missing.json").validate()[0].startswith("Backlog file not found")


def test_task_mapping_round_trip_keeps_priority_label() -> None:
    task = task_from_mapping(
        {"id": "t-1", "title": "One", "priority": "p3", "parent": "e-1", "notes": "n"},
    )

    payload = task_to_mapping(task)

    assert payload["priority"] == "P3"
    assert payload["parent"] == "e-1"
    assert task_from_mapping(payload) == task
