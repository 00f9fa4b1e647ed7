"""Engine loop: select, dispatch, verify, account, decide."""

from __future__ import annotations

import logging
import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from curb.backlog.base import Backlog
from curb.engine import events as ev
from curb.engine import git
from curb.engine.artifacts import ArtifactStore
from curb.engine.budget import BudgetAccountant
from curb.engine.events import EventSink, NullEventSink
from curb.engine.failure_classifier import classify_failure
from curb.engine.harness.base import Harness
from curb.engine.hooks import HookScheduler
from curb.engine.models import (
    EngineState,
    HookContext,
    HookRunResult,
    InvocationMode,
    InvocationResult,
    LoopOutcome,
    Session,
    Task,
    TaskStatus,
    VerifyResult,
)
from curb.engine.prompts import render_task_prompt, resolve_model
from curb.engine.selector import all_tasks_closed, select
from curb.engine.verifier import StateVerifier
from curb.errors import BacklogError, GitError, HarnessNotFoundError

logger = logging.getLogger(__name__)

HarnessResolver = Callable[[frozenset[str]], Harness]


@dataclass(slots=True)
class LoopPolicy:
    """Limits and gates applied by the engine loop."""

    budget_limit: int = 0
    warn_fraction: float = 0.8
    max_iterations: int = 100
    require_commit: bool = True
    require_tests: bool = False
    test_command: str | None = None
    abort_on_unclean: bool = True
    stream: bool = False
    model: str | None = None
    epic_filter: str | None = None
    label_filter: str | None = None
    run_branch: bool = False


@dataclass(slots=True)
class LoopSummary:
    """Aggregate run counters for CLI reporting."""

    outcome: LoopOutcome
    session_id: str
    harness: str | None = None
    reason: str = ""
    iterations: int = 0
    succeeded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    tokens_used: int = 0
    budget_limit: int = 0
    branch: str | None = None

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code


@dataclass(slots=True)
class _TaskDecision:
    outcome: LoopOutcome | None
    reason: str = ""


class EngineLoop:
    """Drive one harness through the backlog until a terminal state."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        backlog: Backlog,
        resolve_harness: HarnessResolver,
        verifier: StateVerifier,
        hooks: HookScheduler,
        session: Session,
        system_prompt: str,
        project_dir: Path,
        policy: LoopPolicy | None = None,
        events: EventSink | None = None,
        artifacts: ArtifactStore | None = None,
    ) -> None:
        self.backlog = backlog
        self.resolve_harness = resolve_harness
        self.verifier = verifier
        self.hooks = hooks
        self.session = session
        self.system_prompt = system_prompt
        self.project_dir = project_dir
        self.policy = policy or LoopPolicy()
        self.events = events or NullEventSink()
        self.artifacts = artifacts
        self.budget = BudgetAccountant(session)
        self.state = EngineState.INIT
        self._harness: Harness | None = None
        self._excluded: set[str] = set()
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._post_loop_ran = False

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "manual") -> None:
        if not self._stop_requested:
            logger.warning("Stop requested (%s); finishing current step", signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def run(self) -> LoopSummary:
        with self._signal_handlers():
            return self._run()

    def _run(self) -> LoopSummary:
        summary = LoopSummary(
            outcome=LoopOutcome.DONE,
            session_id=self.session.session_id,
            budget_limit=self.policy.budget_limit,
        )

        self.state = EngineState.INIT
        try:
            self._harness = self.resolve_harness(frozenset())
        except HarnessNotFoundError as error:
            logger.error("%s", error)
            summary.outcome = LoopOutcome.NO_HARNESS
            summary.reason = str(error)
            self.events.emit(ev.LOOP_END, self._loop_end_data(summary))
            return summary

        self.session.harness_name = self._harness.name
        summary.harness = self._harness.name

        if self.policy.run_branch:
            try:
                branch = git.init_run_branch(
                    self.project_dir,
                    session_name=self.session.name,
                    started_at=self.session.started_at,
                )
            except GitError as error:
                logger.error("%s", error)
                summary.outcome = LoopOutcome.ABORTED
                summary.reason = str(error)
                self.state = EngineState.ABORTED
                self.events.emit(ev.LOOP_END, self._loop_end_data(summary))
                return summary
            summary.branch = branch.name
            self.events.emit(
                ev.RUN_BRANCH,
                {"branch": branch.name, "base": branch.base, "created": branch.created},
            )

        self.budget.init(self.policy.budget_limit)
        self.events.emit(
            ev.SESSION_START,
            {
                "session_id": self.session.session_id,
                "project_dir": str(self.project_dir),
                "budget": self.policy.budget_limit,
                "max_iterations": self.policy.max_iterations,
                "branch": summary.branch,
            },
        )
        if self.artifacts is not None:
            self.artifacts.init_run(self.session, branch=summary.branch)
        self.events.emit(
            ev.HARNESS_SELECTED,
            {
                "harness": self._harness.name,
                "capabilities": self._harness.capabilities.to_dict(),
            },
        )
        logger.info(
            "Session %s using %s (budget: %s)",
            self.session.session_id,
            self._harness.name,
            self.policy.budget_limit if self.policy.budget_limit > 0 else "unlimited",
        )

        pre_loop = self._run_hooks("pre-loop", self._context())
        if pre_loop.escalate:
            return self._finish(summary, LoopOutcome.ABORTED, "pre-loop hook failed")

        while True:
            if self._stop_requested:
                return self._finish(summary, LoopOutcome.INTERRUPTED, "interrupted")
            if summary.iterations >= self.policy.max_iterations:
                return self._finish(
                    summary,
                    LoopOutcome.DONE,
                    f"reached max iterations ({self.policy.max_iterations})",
                )

            self.state = EngineState.SELECT
            try:
                tasks = self.backlog.list_tasks()
            except BacklogError as error:
                logger.error("Cannot read backlog: %s", error)
                return self._finish(summary, LoopOutcome.ABORTED, str(error))
            task = select(
                tasks,
                epic_filter=self.policy.epic_filter,
                label_filter=self.policy.label_filter,
            )
            if task is None:
                reason = "all tasks closed" if all_tasks_closed(tasks) else "no ready tasks"
                return self._finish(summary, LoopOutcome.DONE, reason)

            summary.iterations += 1
            try:
                decision = self._run_task(task, summary)
            except BacklogError as error:
                logger.error("Backlog update failed: %s", error)
                return self._finish(summary, LoopOutcome.ABORTED, str(error))
            if decision.outcome is not None:
                return self._finish(summary, decision.outcome, decision.reason)

    def _run_task(self, task: Task, summary: LoopSummary) -> _TaskDecision:  # noqa: C901, PLR0912, PLR0915
        harness = self._current_harness()
        previous_status = task.status

        self.state = EngineState.DISPATCH
        logger.info("[%s] %s", task.id, task.title)
        self.backlog.update_status(task.id, TaskStatus.IN_PROGRESS)
        self.events.emit(
            ev.TASK_START,
            {"task_id": task.id, "title": task.title, "harness": harness.name},
        )
        task_prompt = render_task_prompt(task)
        if self.artifacts is not None:
            self.artifacts.start_task(task)
            self.artifacts.capture_plan(task.id, task_prompt)

        pre_task = self._run_hooks("pre-task", self._context(task))
        if pre_task.escalate:
            self.backlog.update_status(task.id, previous_status)
            self._finish_task_artifacts(task.id, previous_status)
            return _TaskDecision(LoopOutcome.ABORTED, f"pre-task hook failed for {task.id}")

        result = self._invoke_with_fallback(task, task_prompt)
        if result is None:
            self.backlog.update_status(task.id, previous_status)
            self._finish_task_artifacts(task.id, previous_status)
            return _TaskDecision(LoopOutcome.NO_HARNESS, "no remaining harness available")
        if self.artifacts is not None:
            self.artifacts.capture_command(
                task.id,
                command=result.harness,
                exit_code=result.exit_code,
                output=result.text or result.raw_output,
                duration_seconds=result.duration_seconds,
            )

        if result.interrupted or self._stop_requested:
            self.backlog.update_status(task.id, previous_status)
            self._finish_task_artifacts(task.id, previous_status, result)
            self.events.emit(
                ev.TASK_END,
                {"task_id": task.id, "status": previous_status.value, "interrupted": True},
            )
            return _TaskDecision(LoopOutcome.INTERRUPTED, f"interrupted during {task.id}")

        self.state = EngineState.VERIFY
        verification = self.verifier.verify_clean(
            self.policy.require_commit,
            self.policy.require_tests,
            self.policy.test_command,
        )
        succeeded = result.succeeded and verification.passed
        if succeeded:
            self.backlog.update_status(task.id, TaskStatus.CLOSED)
            summary.succeeded.append(task.id)
            logger.info("[%s] closed", task.id)
        else:
            note = self._failure_note(result, verification)
            self.backlog.update_status(task.id, TaskStatus.OPEN)
            self.backlog.append_note(task.id, note)
            summary.failed.append(task.id)
            logger.warning("[%s] left open: %s", task.id, note)
        if not verification.passed:
            self.events.emit(
                ev.VERIFICATION_FAILED,
                {
                    "task_id": task.id,
                    "clean": verification.clean,
                    "tests_passed": verification.tests_passed,
                    "changed_files": verification.changed_files,
                    "detail": verification.detail,
                },
            )
        if self.artifacts is not None:
            self.artifacts.capture_diff(task.id)
        self._finish_task_artifacts(
            task.id,
            TaskStatus.CLOSED if succeeded else TaskStatus.OPEN,
            result,
        )

        context = self._context(
            task,
            exit_code=result.exit_code,
            duration=result.duration_seconds,
        )
        escalated = self._run_hooks("post-task", context).escalate
        if not succeeded and not escalated:
            escalated = self._run_hooks("on-error", context).escalate

        self.events.emit(
            ev.TASK_END,
            {
                "task_id": task.id,
                "status": (TaskStatus.CLOSED if succeeded else TaskStatus.OPEN).value,
                "exit_code": result.exit_code,
                "duration_seconds": round(result.duration_seconds, 3),
                "tool_calls": len(result.tool_calls),
                "usage": result.usage.to_dict(),
                "verified": verification.passed,
            },
        )

        self.state = EngineState.ACCOUNT
        summary.tokens_used = self.budget.record(result.usage)
        if self.budget.crossed_warning(self.policy.warn_fraction):
            logger.warning(
                "Budget warning: %s of %s tokens used (%.0f%%)",
                self.budget.used,
                self.budget.limit,
                self.budget.percent_used(),
            )
            self.events.emit(
                ev.BUDGET_WARNING,
                {"used": self.budget.used, "limit": self.budget.limit},
            )

        self.state = EngineState.DECIDE
        if escalated:
            return _TaskDecision(LoopOutcome.ABORTED, f"hook failed after {task.id}")
        if self.budget.over_limit():
            logger.info("Budget exhausted: %s/%s tokens", self.budget.used, self.budget.limit)
            self.events.emit(
                ev.BUDGET_EXCEEDED,
                {"used": self.budget.used, "limit": self.budget.limit},
            )
            return _TaskDecision(LoopOutcome.DONE, "budget exhausted")
        if not verification.passed and self.policy.abort_on_unclean:
            return _TaskDecision(
                LoopOutcome.ABORTED,
                f"verification failed after {task.id}: {verification.detail}",
            )
        return _TaskDecision(None)

    def _invoke_with_fallback(self, task: Task, task_prompt: str) -> InvocationResult | None:
        mode = InvocationMode.STREAMING if self.policy.stream else InvocationMode.BLOCKING
        model = resolve_model(task, self.policy.model)
        while True:
            harness = self._current_harness()
            result = harness.invoke(
                self.system_prompt,
                task_prompt,
                mode,
                model=model,
                shutdown_requested=lambda: self._stop_requested,
            )
            if not result.not_found:
                return result

            self._excluded.add(harness.name)
            logger.warning("Harness %s not found; trying the next one", harness.name)
            try:
                self._harness = self.resolve_harness(frozenset(self._excluded))
            except HarnessNotFoundError as error:
                logger.error("%s", error)
                return None
            self.session.harness_name = self._harness.name
            self.events.emit(
                ev.HARNESS_FALLBACK,
                {"from": harness.name, "to": self._harness.name, "task_id": task.id},
            )

    def _finish(self, summary: LoopSummary, outcome: LoopOutcome, reason: str) -> LoopSummary:
        self.state = EngineState.ABORTED if outcome is LoopOutcome.ABORTED else EngineState.DONE
        if not self._post_loop_ran:
            self._post_loop_ran = True
            post_loop = self._run_hooks("post-loop", self._context())
            if post_loop.escalate and outcome is LoopOutcome.DONE:
                outcome = LoopOutcome.ABORTED
                reason = "post-loop hook failed"
                self.state = EngineState.ABORTED
        summary.outcome = outcome
        summary.reason = reason
        summary.harness = self.session.harness_name or summary.harness
        summary.tokens_used = self.budget.used
        logger.info("Loop finished: %s (%s)", outcome.value, reason)
        self.events.emit(ev.LOOP_END, self._loop_end_data(summary))
        if self.artifacts is not None:
            self.artifacts.finish_run(self._loop_end_data(summary))
        return summary

    def _finish_task_artifacts(
        self,
        task_id: str,
        status: TaskStatus,
        result: InvocationResult | None = None,
    ) -> None:
        if self.artifacts is None:
            return
        self.artifacts.finish_task(
            task_id,
            status=status.value,
            exit_code=result.exit_code if result is not None else None,
            duration_seconds=result.duration_seconds if result is not None else None,
            usage=result.usage.to_dict() if result is not None else None,
        )

    def _run_hooks(self, hook_point: str, context: HookContext) -> HookRunResult:
        result = self.hooks.run(hook_point, context)
        for failure in result.failures:
            self.events.emit(
                ev.HOOK_FAILURE,
                {
                    "hook_point": hook_point,
                    "hook": failure.name,
                    "source": failure.source,
                    "exit_code": failure.exit_code,
                    "task_id": context.task_id,
                },
            )
        return result

    def _context(
        self,
        task: Task | None = None,
        *,
        exit_code: int | None = None,
        duration: float | None = None,
    ) -> HookContext:
        return HookContext(
            project_dir=str(self.project_dir),
            session_id=self.session.session_id,
            harness=self.session.harness_name,
            task_id=task.id if task is not None else None,
            task_title=task.title if task is not None else None,
            exit_code=exit_code,
            duration=duration,
        )

    def _current_harness(self) -> Harness:
        if self._harness is None:
            raise RuntimeError("Harness must be resolved before dispatch.")
        return self._harness

    def _failure_note(self, result: InvocationResult, verification: VerifyResult) -> str:
        if not result.succeeded:
            classification = classify_failure(result)
            return (
                f"{result.harness} failed ({classification.failure_class.value}, "
                f"exit {result.exit_code})"
            )
        return f"verification failed: {verification.detail}"

    def _loop_end_data(self, summary: LoopSummary) -> dict[str, object]:
        return {
            "outcome": summary.outcome.value,
            "reason": summary.reason,
            "exit_code": summary.exit_code,
            "iterations": summary.iterations,
            "succeeded": list(summary.succeeded),
            "failed": list(summary.failed),
            "tokens_used": summary.tokens_used,
            "signal": self._stop_signal_name,
        }

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
