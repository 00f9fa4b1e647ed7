"""Harness interface shared by the engine loop and concrete adapters."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

from curb.engine.models import HarnessCapabilities, InvocationMode, InvocationResult

CODEX_PROMPT_SEPARATOR = "\n\n---\n\n"


@dataclass(slots=True)
class InvocationRequest:
    """Inputs needed to build one harness command line."""

    system_prompt: str
    task_prompt: str
    mode: InvocationMode
    model: str | None = None
    extra_flags: tuple[str, ...] = ()


@dataclass(slots=True)
class HarnessCommand:
    """Rendered argv plus the text to feed on stdin."""

    argv: list[str]
    stdin_text: str | None


@dataclass(frozen=True, slots=True)
class HarnessSpec:
    """Static description of one supported coding-agent CLI."""

    name: str
    capabilities: HarnessCapabilities
    build: Callable[[tuple[str, ...], InvocationRequest], HarnessCommand]
    command: tuple[str, ...] = field(default=())

    @property
    def launcher(self) -> tuple[str, ...]:
        """Leading argv used to start the harness, the bare name by default."""

        return self.command or (self.name,)

    def render(self, request: InvocationRequest) -> HarnessCommand:
        return self.build(self.launcher, request)


class Harness(Protocol):
    """Contract the engine loop depends on."""

    @property
    def name(self) -> str: ...

    @property
    def capabilities(self) -> HarnessCapabilities: ...

    def invoke(
        self,
        system_prompt: str,
        task_prompt: str,
        mode: InvocationMode,
        *,
        model: str | None = None,
        shutdown_requested: Callable[[], bool] | None = None,
    ) -> InvocationResult:
        """Run the agent once; failures are reported in the result, not raised."""
