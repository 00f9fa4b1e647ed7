"""Lifecycle hook discovery and execution."""

from __future__ import annotations

import logging
import os
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from curb.engine.models import (
    EXIT_NOT_FOUND,
    EXIT_TIMEOUT,
    HookContext,
    HookResult,
    HookRunResult,
    HookUnit,
)

logger = logging.getLogger(__name__)

HOOK_POINTS = ("pre-loop", "pre-task", "post-task", "on-error", "post-loop")


class HookDiscovery(Protocol):
    """Source of ordered hook units for a hook point."""

    def discover(self, hook_point: str) -> list[HookUnit]:
        """Return hooks to run for `hook_point`, in execution order."""


class DirectoryHookDiscovery:
    """Find executables in `<point>.d/` under a global and a project root."""

    def __init__(self, *, global_root: Path | None, project_root: Path | None) -> None:
        self.roots: list[tuple[str, Path]] = []
        if global_root is not None:
            self.roots.append(("global", global_root))
        if project_root is not None:
            self.roots.append(("project", project_root))

    def discover(self, hook_point: str) -> list[HookUnit]:
        units: list[HookUnit] = []
        for source, root in self.roots:
            hook_dir = root / f"{hook_point}.d"
            if not hook_dir.is_dir():
                continue
            for path in sorted(hook_dir.iterdir(), key=lambda item: item.name):
                if path.is_file() and os.access(path, os.X_OK):
                    units.append(HookUnit(name=path.name, path=path, source=source))
        return units


HookRunner = Callable[[HookUnit, dict[str, str], Path | None, float | None], tuple[int, str]]


def run_hook_process(
    unit: HookUnit,
    env: dict[str, str],
    cwd: Path | None,
    timeout_seconds: float | None,
) -> tuple[int, str]:
    """Execute one hook and return its exit code and combined output."""

    try:
        completed = subprocess.run(  # noqa: S603
            [str(unit.path)],
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as error:
        output = error.output if isinstance(error.output, str) else ""
        return EXIT_TIMEOUT, output
    except FileNotFoundError as error:
        return EXIT_NOT_FOUND, str(error)
    except OSError as error:
        return 126, str(error)
    return completed.returncode, completed.stdout


class HookScheduler:
    """Run every hook for a point, isolating failures unless fail-fast is on."""

    def __init__(  # noqa: PLR0913
        self,
        discovery: HookDiscovery,
        *,
        enabled: bool = True,
        fail_fast: bool = False,
        timeout_seconds: float | None = None,
        project_dir: Path | None = None,
        runner: HookRunner = run_hook_process,
    ) -> None:
        self.discovery = discovery
        self.enabled = enabled
        self.fail_fast = fail_fast
        self.timeout_seconds = timeout_seconds
        self.project_dir = project_dir
        self.runner = runner

    def run(self, hook_point: str, context: HookContext) -> HookRunResult:
        if hook_point not in HOOK_POINTS:
            raise ValueError(
                f"Unknown hook point {hook_point!r}. Use one of: {', '.join(HOOK_POINTS)}.",
            )
        if not self.enabled:
            return HookRunResult(hook_point=hook_point, all_succeeded=True)

        env = os.environ.copy()
        context.hook_name = hook_point
        env.update(context.to_env())

        run_result = HookRunResult(hook_point=hook_point, all_succeeded=True)
        for unit in self.discovery.discover(hook_point):
            started = time.monotonic()
            exit_code, output = self.runner(unit, env, self.project_dir, self.timeout_seconds)
            result = HookResult(
                name=unit.name,
                path=unit.path,
                source=unit.source,
                exit_code=exit_code,
                output=output,
                duration_seconds=time.monotonic() - started,
            )
            run_result.results.append(result)
            if output.strip():
                logger.info("[hook %s/%s] %s", hook_point, unit.name, output.rstrip())
            if result.succeeded:
                continue

            run_result.all_succeeded = False
            logger.warning(
                "Hook %s/%s (%s) failed with exit code %s",
                hook_point,
                unit.name,
                unit.source,
                exit_code,
            )
            if self.fail_fast:
                run_result.escalate = True
                break
        return run_result
