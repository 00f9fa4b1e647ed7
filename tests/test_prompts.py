from __future__ import annotations

from pathlib import Path

import allure

from curb.engine.models import Priority, Task, TaskType
from curb.engine.prompts import (
    DEFAULT_SYSTEM_PROMPT,
    load_system_prompt,
    render_task_prompt,
    resolve_model,
)

pytestmark = [
    allure.epic("Engine"),
    allure.feature("Prompts"),
]


def test_task_prompt_includes_every_populated_section() -> None:
    task = Task(
        id="t-4",
        title="Add logout button",
        type=TaskType.FEATURE,
        description="Users need a way to sign out.",
        acceptance_criteria=("button is visible", "session is cleared"),
        priority=Priority.P1,
        parent="e-1",
        notes="\n[2026-01-01T00:00:00Z] verification failed",
    )

    prompt = render_task_prompt(task)

    assert prompt.startswith("## Task t-4: Add logout button\n")
    assert "Type: feature\nPriority: P1\nEpic: e-1\n" in prompt
    assert "### Description\n\nUsers need a way to sign out." in prompt
    assert "- button is visible\n- session is cleared" in prompt
    assert "### Notes from previous attempts" in prompt
    assert prompt.rstrip().endswith("starting with `t-4:`.")


def test_task_prompt_omits_empty_sections() -> None:
    prompt = render_task_prompt(Task(id="t-1", title="Tiny"))

    assert "Epic:" not in prompt
    assert "###" not in prompt


def test_project_prompt_file_replaces_default(tmp_path: Path) -> None:
    assert load_system_prompt(tmp_path) == DEFAULT_SYSTEM_PROMPT

    (tmp_path / "PROMPT.md").write_text("  \n", "utf-8")
    assert load_system_prompt(tmp_path) == DEFAULT_SYSTEM_PROMPT

    (tmp_path / "PROMPT.md").write_text("Use tabs.\n", "utf-8")
    assert load_system_prompt(tmp_path) == "Use tabs."


def test_model_label_wins_over_configured_model() -> None:
    labelled = Task(id="t-1", title="x", labels=("ui", "model:haiku"))
    blank_label = Task(id="t-2", title="y", labels=("model:",))

    assert resolve_model(labelled, "sonnet") == "haiku"
    assert resolve_model(blank_label, "sonnet") == "sonnet"
    assert resolve_model(Task(id="t-3", title="z"), None) is None
