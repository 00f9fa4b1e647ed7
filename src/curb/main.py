"""CLI entrypoint for curb."""

import logging
import sys
from pathlib import Path

import rich_click as click

from curb import __version__
from curb.controllers import BacklogQueryCommand, CurbCliController, RunCommand
from curb.errors import CurbError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CurbCliController()

_PROJECT_DIR_OPTION = click.option(
    "--project-dir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Project root. Defaults to the current directory.",
)


@click.group()
@click.version_option(version=__version__, prog_name="curb")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def curb(verbose: bool) -> None:
    """Run an AI coding agent over a **dependency-ordered** task backlog."""

    _configure_logging(verbose=verbose)


@curb.command("run")
@_PROJECT_DIR_OPTION
@click.option(
    "--harness",
    type=click.Choice(["auto", "claude", "codex", "gemini"]),
    default=None,
    help="Harness to use. `auto` detects the first installed one.",
)
@click.option("--model", default=None, help="Model passed to the harness.")
@click.option(
    "--budget",
    type=int,
    default=None,
    help="Token budget for the session. 0 means unlimited.",
)
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many tasks.",
)
@click.option("--once", is_flag=True, help="Run a single task and stop.")
@click.option("--epic", default=None, help="Only run tasks of this epic.")
@click.option("--label", default=None, help="Only run tasks carrying this label.")
@click.option(
    "--stream/--no-stream",
    default=None,
    help="Consume harness output as a live event stream when supported.",
)
@click.option(
    "--require-commit/--no-require-commit",
    default=None,
    help="Fail a task that leaves uncommitted changes.",
)
@click.option(
    "--require-tests/--no-require-tests",
    default=None,
    help="Run the project's tests after each task.",
)
@click.option(
    "--abort-on-unclean/--no-abort-on-unclean",
    default=None,
    help="Abort the run when verification fails.",
)
@click.option(
    "--branch/--no-branch",
    "run_branch",
    default=None,
    help="Create a curb/<session>/<timestamp> branch before the first task.",
)
@click.option(
    "--artifacts/--no-artifacts",
    default=None,
    help="Write the per-run artifact bundle under .curb/runs.",
)
@click.option("--name", default=None, help="Session name; random when omitted.")
def run(  # noqa: PLR0913
    project_dir: Path | None,
    harness: str | None,
    model: str | None,
    budget: int | None,
    max_iterations: int | None,
    once: bool,
    epic: str | None,
    label: str | None,
    stream: bool | None,
    require_commit: bool | None,
    require_tests: bool | None,
    abort_on_unclean: bool | None,
    run_branch: bool | None,
    artifacts: bool | None,
    name: str | None,
) -> None:
    """Work through ready tasks until the backlog, budget or iteration limit runs out."""

    result = _call(
        CONTROLLER.run,
        RunCommand(
            project_dir=project_dir,
            harness=harness,
            model=model,
            budget=budget,
            max_iterations=max_iterations,
            once=once,
            epic=epic,
            label=label,
            stream=stream,
            require_commit=require_commit,
            require_tests=require_tests,
            abort_on_unclean=abort_on_unclean,
            run_branch=run_branch,
            artifacts=artifacts,
            name=name,
            on_text=click.echo,
        ),
    )
    _emit_lines(result.lines)
    sys.exit(result.exit_code)


@curb.command("status")
@_PROJECT_DIR_OPTION
def status(project_dir: Path | None) -> None:
    """Show task counts plus ready and blocked tasks."""

    _emit_lines(_call(CONTROLLER.status, BacklogQueryCommand(project_dir=project_dir)))


@curb.command("ready")
@_PROJECT_DIR_OPTION
@click.option("--epic", default=None, help="Only tasks of this epic.")
@click.option("--label", default=None, help="Only tasks carrying this label.")
def ready(project_dir: Path | None, epic: str | None, label: str | None) -> None:
    """List ready tasks in the order they would be picked."""

    _emit_lines(
        _call(
            CONTROLLER.ready,
            BacklogQueryCommand(project_dir=project_dir, epic=epic, label=label),
        ),
    )


@curb.command("validate")
@_PROJECT_DIR_OPTION
def validate(project_dir: Path | None) -> None:
    """Check the JSON backlog for missing fields, duplicate ids and unknown dependencies."""

    result = _call(CONTROLLER.validate, BacklogQueryCommand(project_dir=project_dir))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Backlog validation failed.")


@curb.command("harness")
@_PROJECT_DIR_OPTION
def harness_info(project_dir: Path | None) -> None:
    """Show the detected harness and what each supported harness can do."""

    _emit_lines(_call(CONTROLLER.harness, BacklogQueryCommand(project_dir=project_dir)))


@curb.command("hooks")
@_PROJECT_DIR_OPTION
def hooks(project_dir: Path | None) -> None:
    """List discovered hooks for every hook point."""

    _emit_lines(_call(CONTROLLER.hooks, BacklogQueryCommand(project_dir=project_dir)))


def _call(handler, command):
    try:
        return handler(command)
    except CurbError as error:
        raise click.ClickException(str(error)) from error


def _configure_logging(*, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    curb()
