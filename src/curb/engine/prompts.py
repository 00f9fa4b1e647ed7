"""System and task prompt rendering."""

from __future__ import annotations

from pathlib import Path

from curb.engine.models import Task

PROMPT_FILENAME = "PROMPT.md"

DEFAULT_SYSTEM_PROMPT = """\
You are working unattended inside a software repository, one backlog task
at a time. Nobody will answer questions while you work.

Rules:
- Implement only the task you are given. Do not start other backlog items.
- Keep changes focused; do not reformat unrelated code.
- Run the project's tests and fix any failures you introduced.
- When the task is complete, commit all of your changes with a message
  that names the task id.
- If the task cannot be completed, leave the repository in a committed,
  working state and explain what is blocking you in your final message.
"""


def load_system_prompt(project_dir: Path) -> str:
    """Return the project's PROMPT.md, or the built-in default."""

    path = project_dir / PROMPT_FILENAME
    if path.is_file():
        text = path.read_text("utf-8").strip()
        if text:
            return text
    return DEFAULT_SYSTEM_PROMPT


def render_task_prompt(task: Task) -> str:
    """Render one task as the prompt handed to the harness."""

    lines = [
        f"## Task {task.id}: {task.title}",
        "",
        f"Type: {task.type.value}",
        f"Priority: {task.priority.label}",
    ]
    if task.parent:
        lines.append(f"Epic: {task.parent}")
    if task.description.strip():
        lines.extend(["", "### Description", "", task.description.strip()])
    if task.acceptance_criteria:
        lines.extend(["", "### Acceptance criteria", ""])
        lines.extend(f"- {criterion}" for criterion in task.acceptance_criteria)
    if task.notes.strip():
        lines.extend(["", "### Notes from previous attempts", "", task.notes.strip()])
    lines.extend(
        [
            "",
            f"When finished, commit your work with a message starting with `{task.id}:`.",
        ],
    )
    return "\n".join(lines) + "\n"


def resolve_model(task: Task, configured: str | None) -> str | None:
    """A `model:<name>` label on the task wins over the configured model."""

    return task.model_directive or configured
