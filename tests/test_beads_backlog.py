from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from pathlib import Path

import allure
import pytest

from curb.backlog import BeadsBacklog
from curb.backlog.beads_store import beads_record
from curb.engine.models import Priority, TaskStatus
from curb.errors import BacklogError

pytestmark = [
    allure.epic("Backlog"),
    allure.feature("Beads Store"),
]


class FakeBd:
    def __init__(self, stdout: str = "[]", returncode: int = 0, stderr: str = "") -> None:
        self.stdout = stdout
        self.returncode = returncode
        self.stderr = stderr
        self.calls: list[list[str]] = []

    def __call__(self, argv: Sequence[str], cwd: Path) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(argv))
        return subprocess.CompletedProcess(
            args=list(argv),
            returncode=self.returncode,
            stdout=self.stdout,
            stderr=self.stderr,
        )


def test_list_tasks_maps_beads_issues(tmp_path: Path) -> None:
    issues = [
        {
            "id": "bd-1",
            "title": "Set up CI",
            "issue_type": "chore",
            "status": "open",
            "priority": 1,
            "blocks": ["bd-0"],
            "labels": ["infra"],
        },
        {"id": "bd-2", "title": "Waiting on design", "status": "blocked"},
    ]
    runner = FakeBd(stdout=json.dumps(issues))

    first, second = BeadsBacklog(tmp_path, runner=runner).list_tasks()

    assert runner.calls == [["bd", "list", "--json"]]
    assert first.priority is Priority.P1
    assert first.depends_on == ("bd-0",)
    assert first.type.value == "chore"
    assert second.status is TaskStatus.IN_PROGRESS


def test_updates_are_sent_through_bd(tmp_path: Path) -> None:
    runner = FakeBd(stdout="")
    backlog = BeadsBacklog(tmp_path, executable="/opt/bd", runner=runner)

    backlog.update_status("bd-1", TaskStatus.CLOSED)
    backlog.append_note("bd-1", "verification failed")

    assert runner.calls == [
        ["/opt/bd", "update", "bd-1", "--status", "closed"],
        ["/opt/bd", "comment", "bd-1", "verification failed"],
    ]


def test_bd_failures_raise_backlog_error(tmp_path: Path) -> None:
    failing = BeadsBacklog(tmp_path, runner=FakeBd(returncode=1, stderr="no .beads directory"))
    garbage = BeadsBacklog(tmp_path, runner=FakeBd(stdout="not json"))

    with pytest.raises(BacklogError, match="no .beads directory"):
        failing.list_tasks()
    with pytest.raises(BacklogError, match="invalid JSON"):
        garbage.list_tasks()


def test_missing_bd_executable_raises_backlog_error(tmp_path: Path) -> None:
    backlog = BeadsBacklog(tmp_path, executable=str(tmp_path / "no-bd"))

    with pytest.raises(BacklogError, match="beads CLI not found"):
        backlog.list_tasks()


def test_beads_record_splits_text_acceptance_criteria() -> None:
    record = beads_record(
        {"id": "bd-3", "title": "Docs", "acceptance_criteria": "- README updated\n- links work\n"},
    )

    assert record["acceptanceCriteria"] == ["README updated", "links work"]
    assert record["priority"] == "P2"
    assert record["status"] == "open"
