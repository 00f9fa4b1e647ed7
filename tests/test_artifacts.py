from __future__ import annotations

import json
import stat
from datetime import datetime
from pathlib import Path

import allure

from curb.engine.artifacts import ArtifactStore
from curb.engine.models import Priority, Session, Task

pytestmark = [
    allure.epic("Engine"),
    allure.feature("Run Artifacts"),
]


def _session() -> Session:
    return Session(
        session_id="otter-20260314-092653",
        name="otter",
        started_at=datetime(2026, 3, 14, 9, 26, 53),
        harness_name="claude",
    )


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.stat().st_mode)


def test_run_record_holds_session_and_config_snapshot(tmp_path: Path) -> None:
    store = ArtifactStore.for_session(
        project_dir=tmp_path,
        session_id="otter-20260314-092653",
        config={"budget": {"default": 1000}},
    )

    store.init_run(_session(), branch="curb/otter/20260314-092653")

    assert store.root == tmp_path / ".curb" / "runs" / "otter-20260314-092653"
    record = json.loads(store.run_file.read_text("utf-8"))
    assert record["run_id"] == "otter-20260314-092653"
    assert record["session_name"] == "otter"
    assert record["status"] == "in_progress"
    assert record["started_at"].endswith("Z")
    assert record["branch"] == "curb/otter/20260314-092653"
    assert record["config"] == {"budget": {"default": 1000}}
    assert (tmp_path / ".curb" / "runs" / ".gitignore").read_text("utf-8") == "*\n"


def test_artifacts_are_private_to_the_owner(tmp_path: Path) -> None:
    store = ArtifactStore.for_session(project_dir=tmp_path, session_id="s-1")
    store.init_run(_session())
    store.capture_plan("t-1", "## Task t-1: First\n")

    assert _mode(store.root) == 0o700
    assert _mode(store.task_dir("t-1")) == 0o700
    assert _mode(store.run_file) == 0o600
    assert _mode(store.task_dir("t-1") / "plan.md") == 0o600


def test_task_lifecycle_records_status_and_usage(tmp_path: Path) -> None:
    store = ArtifactStore.for_session(project_dir=tmp_path, session_id="s-1")
    task = Task(id="t-1", title="First", priority=Priority.P1)

    store.start_task(task)
    started = json.loads((store.task_dir("t-1") / "task.json").read_text("utf-8"))
    store.finish_task(
        "t-1",
        status="closed",
        exit_code=0,
        duration_seconds=1.23456,
        usage={"input_tokens": 10, "output_tokens": 5},
    )
    finished = json.loads((store.task_dir("t-1") / "task.json").read_text("utf-8"))

    assert started["status"] == "in_progress"
    assert started["priority"] == "P1"
    assert started["iterations"] == 0
    assert finished["status"] == "closed"
    assert finished["iterations"] == 1
    assert finished["duration_seconds"] == 1.235
    assert finished["usage"] == {"input_tokens": 10, "output_tokens": 5}
    assert finished["started_at"] == started["started_at"]


def test_retried_task_keeps_counting_iterations(tmp_path: Path) -> None:
    store = ArtifactStore.for_session(project_dir=tmp_path, session_id="s-1")
    task = Task(id="t-1", title="First")

    for _ in range(2):
        store.start_task(task)
        store.finish_task("t-1", status="open", exit_code=1)

    record = json.loads((store.task_dir("t-1") / "task.json").read_text("utf-8"))
    assert record["iterations"] == 2


def test_commands_are_appended_as_json_lines(tmp_path: Path) -> None:
    store = ArtifactStore.for_session(project_dir=tmp_path, session_id="s-1")

    store.capture_command("t-1", command="claude", exit_code=0, output="ok", duration_seconds=2)
    store.capture_command("t-1", command="codex", exit_code=1, output="é", duration_seconds=0.5)

    lines = (store.task_dir("t-1") / "commands.jsonl").read_text("utf-8").splitlines()
    records = [json.loads(line) for line in lines]
    assert [record["command"] for record in records] == ["claude", "codex"]
    assert records[1] == {
        "timestamp": records[1]["timestamp"],
        "command": "codex",
        "exit_code": 1,
        "output": "é",
        "duration": 0.5,
    }


def test_task_ids_cannot_escape_the_run_directory(tmp_path: Path) -> None:
    store = ArtifactStore.for_session(project_dir=tmp_path, session_id="s-1")

    assert store.task_dir("../evil/t 1") == store.root / "tasks" / ".._evil_t_1"


def test_diff_capture_writes_patch(git_repo: Path) -> None:
    store = ArtifactStore.for_session(project_dir=git_repo, session_id="s-1")
    (git_repo / "README.md").write_text("# changed\n", "utf-8")

    store.capture_diff("t-1")

    patch = (store.task_dir("t-1") / "changes.patch").read_text("utf-8")
    assert "+# changed" in patch


def test_diff_capture_outside_repository_is_skipped(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    store = ArtifactStore.for_session(project_dir=tmp_path, session_id="s-1")

    store.capture_diff("t-1")

    assert not (store.task_dir("t-1") / "changes.patch").exists()


def test_finish_run_marks_outcome(tmp_path: Path) -> None:
    store = ArtifactStore.for_session(project_dir=tmp_path, session_id="s-1")
    store.init_run(_session())

    store.finish_run({"outcome": "done", "iterations": 2})

    record = json.loads(store.run_file.read_text("utf-8"))
    assert record["status"] == "done"
    assert record["iterations"] == 2
    assert record["session_name"] == "otter"
    assert "completed_at" in record
