from __future__ import annotations

import json
import re
import stat
import sys
from pathlib import Path

import allure
from click.testing import CliRunner

from curb.backlog import JsonBacklog
from curb.engine.events import read_events
from curb.engine.models import TaskStatus
from curb.main import curb

pytestmark = [
    allure.epic("Operator Surface"),
    allure.feature("CLI"),
]

ECHO_AGENT = [sys.executable, "-m", "curb.engine.harness.echo_agent"]

THREE_TASKS = [
    {"id": "t-1", "title": "First", "status": "open", "priority": "P1"},
    {"id": "t-2", "title": "Second", "status": "open", "priority": "P2", "dependsOn": ["t-1"]},
    {"id": "t-3", "title": "Third", "status": "open", "priority": "P2"},
]


def _use_echo_agent(project: Path) -> None:
    (project / ".curb.json").write_text(
        json.dumps({"harness": {"default": "claude", "commands": {"claude": ECHO_AGENT}}}),
        "utf-8",
    )


def test_status_lists_counts_ready_and_blocked(tmp_path: Path, write_prd) -> None:
    write_prd(tmp_path, THREE_TASKS)

    result = CliRunner().invoke(curb, ["status", "--project-dir", str(tmp_path)])

    assert result.exit_code == 0
    assert "Tasks: total=3 open=3 in_progress=0 closed=0" in result.output
    assert "Ready (2):" in result.output
    assert "t-1 [P1] First" in result.output
    assert "t-2 [P2] Second (waiting on: t-1)" in result.output


def test_ready_lists_selection_order_and_filters(tmp_path: Path, write_prd) -> None:
    write_prd(
        tmp_path,
        [
            {"id": "t-1", "title": "Low", "status": "open", "priority": "P3", "labels": ["ui"]},
            {"id": "t-2", "title": "High", "status": "open", "priority": "P0"},
        ],
    )
    runner = CliRunner()

    everything = runner.invoke(curb, ["ready", "--project-dir", str(tmp_path)])
    labelled = runner.invoke(curb, ["ready", "--project-dir", str(tmp_path), "--label", "ui"])
    missing = runner.invoke(curb, ["ready", "--project-dir", str(tmp_path), "--label", "api"])

    assert everything.output.splitlines() == ["t-2 [P0] High", "t-1 [P3] Low"]
    assert labelled.output.splitlines() == ["t-1 [P3] Low"]
    assert missing.output.strip() == "No ready tasks."


def test_validate_reports_success_and_errors(tmp_path: Path, write_prd) -> None:
    good = tmp_path / "good"
    bad = tmp_path / "bad"
    good.mkdir()
    bad.mkdir()
    write_prd(good, THREE_TASKS)
    write_prd(bad, [{"id": "t-1", "title": "One", "status": "open", "dependsOn": ["t-9"]}])
    runner = CliRunner()

    ok = runner.invoke(curb, ["validate", "--project-dir", str(good)])
    failed = runner.invoke(curb, ["validate", "--project-dir", str(bad)])

    assert ok.exit_code == 0
    assert "OK:" in ok.output
    assert failed.exit_code == 1
    assert "ERROR: task 't-1': unknown dependencies: t-9" in failed.output
    assert "Backlog validation failed." in failed.output


def test_harness_command_shows_selection_and_capabilities(tmp_path: Path) -> None:
    _use_echo_agent(tmp_path)

    result = CliRunner().invoke(curb, ["harness", "--project-dir", str(tmp_path)])

    assert result.exit_code == 0
    assert "Selected: claude" in result.output
    assert re.search(r"^claude: .+ \[streaming=yes token_reporting=yes", result.output, re.M)
    assert re.search(r"^codex: .+ \[streaming=no", result.output, re.M)


def test_hooks_command_lists_discovered_hooks(tmp_path: Path) -> None:
    hook = tmp_path / ".curb" / "hooks" / "post-task.d" / "10-notify"
    hook.parent.mkdir(parents=True)
    hook.write_text("#!/bin/sh\ntrue\n", "utf-8")
    hook.chmod(hook.stat().st_mode | stat.S_IXUSR)

    result = CliRunner().invoke(curb, ["hooks", "--project-dir", str(tmp_path)])

    assert result.exit_code == 0
    assert "Hooks enabled: yes" in result.output
    assert "post-task: 1" in result.output
    assert f"  project: {hook.resolve()}" in result.output
    assert "pre-loop: 0" in result.output


def test_configuration_errors_are_reported_cleanly(tmp_path: Path, write_prd) -> None:
    write_prd(tmp_path, THREE_TASKS)
    (tmp_path / ".curb.json").write_text('{"budget": {"warn_at": 500}}', "utf-8")

    result = CliRunner().invoke(curb, ["status", "--project-dir", str(tmp_path)])

    assert result.exit_code == 1
    assert "budget.warn_at" in result.output


def test_run_stops_when_budget_is_exhausted(git_repo: Path, write_prd, monkeypatch) -> None:
    write_prd(git_repo, THREE_TASKS)
    _use_echo_agent(git_repo)
    monkeypatch.setenv("CURB_ECHO_INPUT_TOKENS", "400")
    monkeypatch.setenv("CURB_ECHO_OUTPUT_TOKENS", "200")

    result = CliRunner().invoke(
        curb,
        ["run", "--project-dir", str(git_repo), "--budget", "1000", "--name", "otter"],
    )

    assert result.exit_code == 0, result.output
    assert "outcome=done iterations=2 closed=2 failed=0 tokens=1200 budget=1000" in result.output
    assert "Reason: budget exhausted" in result.output
    assert "done: ## Task t-1: First" in result.output
    statuses = {task.id: task.status for task in JsonBacklog(git_repo / "prd.json").list_tasks()}
    assert statuses == {
        "t-1": TaskStatus.CLOSED,
        "t-2": TaskStatus.CLOSED,
        "t-3": TaskStatus.OPEN,
    }

    log_path = Path(re.search(r"^Log: (.+)$", result.output, re.M).group(1))
    assert log_path.name.startswith("otter-")
    event_types = [event["event_type"] for event in read_events(log_path)]
    assert event_types[:2] == ["session_start", "harness_selected"]
    assert "budget_exceeded" in event_types
    assert event_types[-1] == "loop_end"


def test_run_aborts_when_agent_leaves_uncommitted_changes(
    git_repo: Path,
    write_prd,
    monkeypatch,
) -> None:
    write_prd(git_repo, THREE_TASKS)
    _use_echo_agent(git_repo)
    monkeypatch.setenv("CURB_ECHO_TOUCH", "README.md")

    result = CliRunner().invoke(curb, ["run", "--project-dir", str(git_repo)])

    assert result.exit_code == 2, result.output
    assert "outcome=aborted iterations=1 closed=0 failed=1" in result.output
    task = JsonBacklog(git_repo / "prd.json").get_task("t-1")
    assert task.status is TaskStatus.OPEN
    assert "verification failed" in task.notes


def test_run_closes_task_when_agent_commits(git_repo: Path, write_prd, monkeypatch, git) -> None:
    write_prd(git_repo, THREE_TASKS)
    _use_echo_agent(git_repo)
    monkeypatch.setenv("CURB_ECHO_TOUCH", "CHANGELOG.md")
    monkeypatch.setenv("CURB_ECHO_COMMIT", "1")

    result = CliRunner().invoke(curb, ["run", "--project-dir", str(git_repo), "--once"])

    assert result.exit_code == 0, result.output
    assert "closed=1" in result.output
    assert "Reason: reached max iterations (1)" in result.output
    assert "echo: ## Task t-1: First" in git(git_repo, "log", "--format=%s")


def test_run_without_any_harness_exits_with_3(tmp_path: Path, write_prd) -> None:
    write_prd(tmp_path, THREE_TASKS)
    missing = {name: [str(tmp_path / f"missing-{name}")] for name in ("claude", "codex", "gemini")}
    (tmp_path / ".curb.json").write_text(
        json.dumps({"harness": {"commands": missing}}),
        "utf-8",
    )

    result = CliRunner().invoke(curb, ["run", "--project-dir", str(tmp_path)])

    assert result.exit_code == 3, result.output
    assert "outcome=no_harness" in result.output


def test_run_on_branch_writes_artifact_bundle(git_repo: Path, write_prd, monkeypatch, git) -> None:
    write_prd(git_repo, THREE_TASKS)
    _use_echo_agent(git_repo)
    monkeypatch.setenv("CURB_ECHO_TOUCH", "CHANGELOG.md")
    monkeypatch.setenv("CURB_ECHO_COMMIT", "1")

    result = CliRunner().invoke(
        curb,
        ["run", "--project-dir", str(git_repo), "--branch", "--name", "otter"],
    )

    assert result.exit_code == 0, result.output
    assert "closed=3 failed=0" in result.output
    branch = re.search(r"^Branch: (.+)$", result.output, re.M).group(1)
    assert branch.startswith("curb/otter/")
    assert git(git_repo, "rev-parse", "--abbrev-ref", "HEAD").strip() == branch

    run_dir = Path(re.search(r"^Artifacts: (.+)$", result.output, re.M).group(1))
    assert run_dir.parent == git_repo.resolve() / ".curb" / "runs"
    run_record = json.loads((run_dir / "run.json").read_text("utf-8"))
    assert run_record["branch"] == branch
    assert run_record["config"]["git"]["run_branch"] is True
    assert sorted(path.name for path in (run_dir / "tasks").iterdir()) == ["t-1", "t-2", "t-3"]
    assert ".curb/runs" not in git(git_repo, "log", "--name-only", "--format=")


def test_run_without_artifacts_leaves_no_bundle(git_repo: Path, write_prd, monkeypatch) -> None:
    write_prd(git_repo, THREE_TASKS)
    _use_echo_agent(git_repo)
    monkeypatch.setenv("CURB_ECHO_COMMIT", "1")

    result = CliRunner().invoke(
        curb,
        ["run", "--project-dir", str(git_repo), "--once", "--no-artifacts"],
    )

    assert result.exit_code == 0, result.output
    assert "Artifacts:" not in result.output
    assert not (git_repo / ".curb" / "runs").exists()
