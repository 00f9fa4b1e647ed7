"""Controllers for curb CLI commands."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from curb.backlog import JsonBacklog, open_backlog
from curb.config import Settings
from curb.engine.artifacts import ArtifactStore
from curb.engine.events import JsonlEventLog
from curb.engine.harness import CliHarness, Harness, available_harnesses, detect, resolve_specs
from curb.engine.hooks import HOOK_POINTS, DirectoryHookDiscovery, HookScheduler
from curb.engine.loop import EngineLoop, LoopPolicy
from curb.engine.models import Task
from curb.engine.prompts import load_system_prompt
from curb.engine.selector import blocked_tasks, ready_tasks, task_counts
from curb.engine.session import new_session
from curb.engine.verifier import StateVerifier
from curb.errors import HarnessNotFoundError


@dataclass(slots=True)
class RunCommand:
    """CLI input for an engine run."""

    project_dir: Path | None
    harness: str | None = None
    model: str | None = None
    budget: int | None = None
    max_iterations: int | None = None
    once: bool = False
    epic: str | None = None
    label: str | None = None
    stream: bool | None = None
    require_commit: bool | None = None
    require_tests: bool | None = None
    abort_on_unclean: bool | None = None
    run_branch: bool | None = None
    artifacts: bool | None = None
    name: str | None = None
    on_text: Callable[[str], None] | None = None


@dataclass(slots=True)
class RunResult:
    """Run report to render in CLI."""

    lines: list[str]
    exit_code: int


@dataclass(slots=True)
class BacklogQueryCommand:
    """CLI input for read-only backlog views."""

    project_dir: Path | None
    epic: str | None = None
    label: str | None = None


@dataclass(slots=True)
class ValidateResult:
    """Backlog validation report."""

    lines: list[str]
    success: bool


class CurbCliController:
    """Coordinates engine runs and backlog inspection CLI operations."""

    def run(self, command: RunCommand) -> RunResult:
        settings = Settings.load(command.project_dir)
        _apply_run_overrides(settings, command)
        project_dir = settings.project_dir

        backlog = open_backlog(settings)
        backlog.list_tasks()

        session = new_session(name=command.name)
        event_log = JsonlEventLog.for_session(
            logs_root=settings.logs_dir,
            project_name=settings.project_name,
            session_id=session.session_id,
        )
        ignore_paths = []
        if settings.backlog.backend == "json":
            try:
                ignore_paths.append(settings.prd_file.relative_to(project_dir).as_posix())
            except ValueError:
                pass

        artifacts = None
        if settings.artifacts.enabled:
            artifacts = ArtifactStore.for_session(
                project_dir=project_dir,
                session_id=session.session_id,
                config=settings.to_dict(),
            )

        loop = EngineLoop(
            backlog=backlog,
            resolve_harness=_harness_resolver(settings, on_text=command.on_text),
            verifier=StateVerifier(project_dir, ignore_paths=ignore_paths),
            hooks=_hook_scheduler(settings),
            session=session,
            system_prompt=load_system_prompt(project_dir),
            project_dir=project_dir,
            policy=LoopPolicy(
                budget_limit=settings.budget.default,
                warn_fraction=settings.budget.warn_fraction,
                max_iterations=1 if command.once else settings.loop.max_iterations,
                require_commit=settings.clean_state.require_commit,
                require_tests=settings.clean_state.require_tests,
                test_command=settings.clean_state.test_command,
                abort_on_unclean=settings.clean_state.abort_on_unclean,
                stream=settings.harness.stream,
                model=settings.harness.model,
                epic_filter=command.epic,
                label_filter=command.label,
                run_branch=settings.git.run_branch,
            ),
            events=event_log,
            artifacts=artifacts,
        )
        summary = loop.run()

        budget = str(summary.budget_limit) if summary.budget_limit > 0 else "unlimited"
        lines = [
            f"Session: {summary.session_id} harness={summary.harness or '-'}",
            "Run summary: "
            f"outcome={summary.outcome.value} iterations={summary.iterations} "
            f"closed={len(summary.succeeded)} failed={len(summary.failed)} "
            f"tokens={summary.tokens_used} budget={budget}",
        ]
        if summary.reason:
            lines.append(f"Reason: {summary.reason}")
        if summary.branch:
            lines.append(f"Branch: {summary.branch}")
        if artifacts is not None and artifacts.run_file.is_file():
            lines.append(f"Artifacts: {artifacts.root}")
        lines.append(f"Log: {event_log.path}")
        return RunResult(lines=lines, exit_code=summary.exit_code)

    def status(self, command: BacklogQueryCommand) -> list[str]:
        settings = Settings.load(command.project_dir)
        tasks = open_backlog(settings).list_tasks()
        counts = task_counts(tasks)
        lines = [
            "Tasks: "
            f"total={counts['total']} open={counts['open']} "
            f"in_progress={counts['in_progress']} closed={counts['closed']}",
        ]
        ready = ready_tasks(tasks)
        lines.append(f"Ready ({len(ready)}):")
        lines.extend(_task_line(task) for task in ready)
        blocked = blocked_tasks(tasks)
        lines.append(f"Blocked ({len(blocked)}):")
        lines.extend(
            f"{_task_line(task)} (waiting on: {', '.join(task.depends_on)})" for task in blocked
        )
        return lines

    def ready(self, command: BacklogQueryCommand) -> list[str]:
        settings = Settings.load(command.project_dir)
        tasks = open_backlog(settings).list_tasks()
        ready = ready_tasks(tasks, epic_filter=command.epic, label_filter=command.label)
        if not ready:
            return ["No ready tasks."]
        return [_task_line(task) for task in ready]

    def validate(self, command: BacklogQueryCommand) -> ValidateResult:
        settings = Settings.load(command.project_dir)
        if settings.backlog.backend != "json":
            return ValidateResult(
                lines=[f"Validation is only available for the json backlog ({settings.prd_file})."],
                success=False,
            )
        errors = JsonBacklog(settings.prd_file).validate()
        if not errors:
            return ValidateResult(lines=[f"OK: {settings.prd_file}"], success=True)
        return ValidateResult(lines=[f"ERROR: {error}" for error in errors], success=False)

    def harness(self, command: BacklogQueryCommand) -> list[str]:
        settings = Settings.load(command.project_dir)
        specs = resolve_specs(settings.harness.commands)
        try:
            selected = detect(
                specs=specs,
                override=settings.harness.override,
                priority=settings.harness.priority,
            ).name
        except HarnessNotFoundError as error:
            selected = f"none ({error})"

        lines = [f"Selected: {selected}"]
        for name, path in available_harnesses(specs).items():
            capabilities = specs[name].capabilities.to_dict()
            flags = " ".join(
                f"{key}={'yes' if value else 'no'}" for key, value in capabilities.items()
            )
            lines.append(f"{name}: {path or 'not installed'} [{flags}]")
        return lines

    def hooks(self, command: BacklogQueryCommand) -> list[str]:
        settings = Settings.load(command.project_dir)
        discovery = _hook_discovery(settings)
        lines = [f"Hooks enabled: {'yes' if settings.hooks.enabled else 'no'}"]
        for hook_point in HOOK_POINTS:
            units = discovery.discover(hook_point)
            lines.append(f"{hook_point}: {len(units)}")
            lines.extend(f"  {unit.source}: {unit.path}" for unit in units)
        return lines


def _apply_run_overrides(settings: Settings, command: RunCommand) -> None:
    if command.harness:
        settings.harness.default = command.harness
    if command.model:
        settings.harness.model = command.model
    if command.budget is not None:
        settings.budget.default = command.budget
    if command.max_iterations is not None:
        settings.loop.max_iterations = command.max_iterations
    if command.stream is not None:
        settings.harness.stream = command.stream
    if command.require_commit is not None:
        settings.clean_state.require_commit = command.require_commit
    if command.require_tests is not None:
        settings.clean_state.require_tests = command.require_tests
    if command.abort_on_unclean is not None:
        settings.clean_state.abort_on_unclean = command.abort_on_unclean
    if command.run_branch is not None:
        settings.git.run_branch = command.run_branch
    if command.artifacts is not None:
        settings.artifacts.enabled = command.artifacts
    settings.validate()


def _harness_resolver(
    settings: Settings,
    *,
    on_text: Callable[[str], None] | None,
) -> Callable[[frozenset[str]], Harness]:
    specs = resolve_specs(settings.harness.commands)

    def _resolve(exclude: frozenset[str]) -> Harness:
        spec = detect(
            specs=specs,
            override=settings.harness.override,
            priority=settings.harness.priority,
            exclude=exclude,
        )
        return CliHarness(
            spec,
            cwd=settings.project_dir,
            model=settings.harness.model,
            extra_flags=settings.harness.flags.get(spec.name, ()),
            timeout_seconds=settings.harness.timeout_seconds,
            on_text=on_text,
        )

    return _resolve


def _hook_discovery(settings: Settings) -> DirectoryHookDiscovery:
    return DirectoryHookDiscovery(
        global_root=settings.hooks.global_dir,
        project_root=settings.hooks.project_dir,
    )


def _hook_scheduler(settings: Settings) -> HookScheduler:
    return HookScheduler(
        _hook_discovery(settings),
        enabled=settings.hooks.enabled,
        fail_fast=settings.hooks.fail_fast,
        timeout_seconds=settings.hooks.timeout_seconds,
        project_dir=settings.project_dir,
    )


def _task_line(task: Task) -> str:
    return f"{task.id} [{task.priority.label}] {task.title}"
