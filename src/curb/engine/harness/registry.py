"""Built-in harness specs and executable detection."""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Iterable, Mapping
from dataclasses import replace

from curb.engine.harness.base import (
    CODEX_PROMPT_SEPARATOR,
    HarnessCommand,
    HarnessSpec,
    InvocationRequest,
)
from curb.engine.models import HarnessCapabilities, InvocationMode
from curb.errors import HarnessNotFoundError

logger = logging.getLogger(__name__)

FALLBACK_ORDER = ("claude", "codex", "gemini")


def _claude_command(launcher: tuple[str, ...], request: InvocationRequest) -> HarnessCommand:
    argv = [
        *launcher,
        "-p",
        "--append-system-prompt",
        request.system_prompt,
        "--dangerously-skip-permissions",
    ]
    if request.mode is InvocationMode.STREAMING:
        argv.extend(["--verbose", "--output-format", "stream-json"])
    else:
        argv.extend(["--output-format", "json"])
    if request.model:
        argv.extend(["--model", request.model])
    argv.extend(request.extra_flags)
    return HarnessCommand(argv=argv, stdin_text=request.task_prompt)


def _codex_command(launcher: tuple[str, ...], request: InvocationRequest) -> HarnessCommand:
    argv = [*launcher, "exec", "--full-auto"]
    if request.model:
        argv.extend(["--model", request.model])
    argv.extend(request.extra_flags)
    argv.append("-")
    return HarnessCommand(argv=argv, stdin_text=combine_prompts(request))


def _gemini_command(launcher: tuple[str, ...], request: InvocationRequest) -> HarnessCommand:
    argv = [*launcher, "--approval-mode", "yolo"]
    if request.model:
        argv.extend(["--model", request.model])
    argv.extend(request.extra_flags)
    argv.extend(["--prompt", combine_prompts(request)])
    return HarnessCommand(argv=argv, stdin_text=None)


def combine_prompts(request: InvocationRequest) -> str:
    """Prepend the system prompt for harnesses that cannot inject it separately."""

    if not request.system_prompt.strip():
        return request.task_prompt
    return f"{request.system_prompt}{CODEX_PROMPT_SEPARATOR}{request.task_prompt}"


BUILTIN_SPECS: dict[str, HarnessSpec] = {
    "claude": HarnessSpec(
        name="claude",
        capabilities=HarnessCapabilities(
            streaming=True,
            token_reporting=True,
            system_prompt_injection=True,
            auto_mode=True,
        ),
        build=_claude_command,
    ),
    "codex": HarnessSpec(
        name="codex",
        capabilities=HarnessCapabilities(
            streaming=False,
            token_reporting=False,
            system_prompt_injection=False,
            auto_mode=True,
        ),
        build=_codex_command,
    ),
    "gemini": HarnessSpec(
        name="gemini",
        capabilities=HarnessCapabilities(
            streaming=False,
            token_reporting=False,
            system_prompt_injection=False,
            auto_mode=True,
        ),
        build=_gemini_command,
    ),
}


def resolve_specs(commands: Mapping[str, tuple[str, ...]] | None = None) -> dict[str, HarnessSpec]:
    """Return built-in specs with configured launcher overrides applied."""

    specs = dict(BUILTIN_SPECS)
    for name, command in (commands or {}).items():
        spec = specs.get(name)
        if spec is None or not command:
            continue
        specs[name] = replace(spec, command=tuple(command))
    return specs


def detection_order(
    *,
    override: str | None = None,
    priority: Iterable[str] = (),
    known: Iterable[str] = FALLBACK_ORDER,
) -> list[str]:
    """Order in which harnesses are tried: override, priority list, then fallback."""

    known_names = list(known)
    if override:
        return [override]
    order: list[str] = []
    for name in [*priority, *known_names]:
        if name in known_names and name not in order:
            order.append(name)
    return order


def detect(
    *,
    specs: Mapping[str, HarnessSpec],
    override: str | None = None,
    priority: Iterable[str] = (),
    exclude: Iterable[str] = (),
    which: Callable[[str], str | None] = shutil.which,
) -> HarnessSpec:
    """Pick the first installed harness, raising when none is available."""

    excluded = set(exclude)
    if override and override not in specs:
        raise HarnessNotFoundError(
            f"Unknown harness {override!r}. Use one of: {', '.join(sorted(specs))}.",
        )
    for name in detection_order(override=override, priority=priority, known=specs):
        if name in excluded:
            continue
        spec = specs[name]
        if which(spec.launcher[0]) is None:
            logger.debug("Harness %s not installed (%s)", name, spec.launcher[0])
            continue
        return spec
    if override:
        raise HarnessNotFoundError(f"Harness {override!r} is not installed.")
    raise HarnessNotFoundError(
        "No harness available. Install one of: " + ", ".join(specs) + ".",
    )


def available_harnesses(
    specs: Mapping[str, HarnessSpec],
    *,
    which: Callable[[str], str | None] = shutil.which,
) -> dict[str, str | None]:
    """Map each harness name to its resolved executable path, or None."""

    return {name: which(spec.launcher[0]) for name, spec in specs.items()}
