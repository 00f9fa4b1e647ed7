"""Subprocess-based adapter that runs coding-agent CLIs."""

from __future__ import annotations

import logging
import os
import queue
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from curb.engine.harness.base import HarnessSpec, InvocationRequest
from curb.engine.harness.stream import StreamAccumulator, parse_blocking_output
from curb.engine.models import (
    EXIT_INTERRUPTED,
    EXIT_MALFORMED_STREAM,
    EXIT_NOT_FOUND,
    EXIT_TIMEOUT,
    HarnessCapabilities,
    InvocationMode,
    InvocationResult,
    UsageRecord,
    UsageSource,
)
from curb.engine.usage import extract_textual_usage, resolve_usage

logger = logging.getLogger(__name__)

EXIT_START_FAILED = 126
_POLL_SECONDS = 0.1
_EOF = object()


@dataclass(slots=True)
class _ProcessOutcome:
    exit_code: int
    stdout_lines: list[str] = field(default_factory=list)
    stderr: str = ""
    timed_out: bool = False
    interrupted: bool = False
    not_found: bool = False


class CliHarness:
    """Run one harness executable per task and normalize what it reports."""

    def __init__(  # noqa: PLR0913
        self,
        spec: HarnessSpec,
        *,
        cwd: Path,
        model: str | None = None,
        extra_flags: tuple[str, ...] = (),
        timeout_seconds: float | None = None,
        env: dict[str, str] | None = None,
        on_text: Callable[[str], None] | None = None,
    ) -> None:
        self.spec = spec
        self.cwd = cwd
        self.model = model
        self.extra_flags = extra_flags
        self.timeout_seconds = timeout_seconds
        self.env = env
        self.on_text = on_text

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def capabilities(self) -> HarnessCapabilities:
        return self.spec.capabilities

    def invoke(
        self,
        system_prompt: str,
        task_prompt: str,
        mode: InvocationMode,
        *,
        model: str | None = None,
        shutdown_requested: Callable[[], bool] | None = None,
    ) -> InvocationResult:
        if mode is InvocationMode.STREAMING and not self.capabilities.streaming:
            logger.debug("%s has no streaming mode; using blocking invocation", self.name)
            mode = InvocationMode.BLOCKING

        effective_model = model or self.model
        command = self.spec.render(
            InvocationRequest(
                system_prompt=system_prompt,
                task_prompt=task_prompt,
                mode=mode,
                model=effective_model,
                extra_flags=self.extra_flags,
            ),
        )
        accumulator = StreamAccumulator(on_text=self.on_text)
        on_line = accumulator.feed_line if mode is InvocationMode.STREAMING else None

        logger.debug("Invoking %s: %s", self.name, command.argv[0])
        started = time.monotonic()
        outcome = _run_process(
            argv=command.argv,
            stdin_text=command.stdin_text,
            cwd=self.cwd,
            env=self._process_env(),
            timeout_seconds=self.timeout_seconds,
            shutdown_requested=shutdown_requested,
            on_line=on_line,
        )
        duration = time.monotonic() - started

        if outcome.not_found:
            return InvocationResult(
                exit_code=EXIT_NOT_FOUND,
                raw_output="",
                usage=UsageRecord(
                    input_tokens=0,
                    output_tokens=0,
                    estimated=True,
                    source=UsageSource.HEURISTIC,
                ),
                harness=self.name,
                stderr=outcome.stderr,
                duration_seconds=duration,
                not_found=True,
            )

        stdout = "".join(outcome.stdout_lines)
        if mode is InvocationMode.BLOCKING:
            accumulator = parse_blocking_output(stdout)
            if self.on_text is not None and accumulator.text:
                self.on_text(accumulator.text)

        exit_code = outcome.exit_code
        if exit_code == 0 and accumulator.result_is_error:
            exit_code = 1
        if (
            exit_code == 0
            and mode is InvocationMode.STREAMING
            and accumulator.framing_failed
        ):
            logger.warning("%s produced no parsable stream events", self.name)
            exit_code = EXIT_MALFORMED_STREAM

        reported = accumulator.reported_usage
        if reported is None:
            reported = extract_textual_usage(
                harness=self.name,
                text=f"{stdout}\n{outcome.stderr}",
            )
        text = accumulator.text or stdout
        usage = resolve_usage(
            harness=self.name,
            model=effective_model,
            reported=reported,
            cost_usd=accumulator.cost_usd,
            prompt_text=f"{system_prompt}\n{task_prompt}",
            output_text=text,
        )
        return InvocationResult(
            exit_code=exit_code,
            raw_output=stdout,
            usage=usage,
            harness=self.name,
            text=text,
            stderr=outcome.stderr,
            duration_seconds=duration,
            timed_out=outcome.timed_out,
            interrupted=outcome.interrupted,
            tool_calls=list(accumulator.tool_calls),
            malformed_lines=accumulator.malformed_lines,
        )

    def _process_env(self) -> dict[str, str]:
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        return env


def _run_process(  # noqa: PLR0913
    *,
    argv: list[str],
    stdin_text: str | None,
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: float | None,
    shutdown_requested: Callable[[], bool] | None,
    on_line: Callable[[str], None] | None,
) -> _ProcessOutcome:
    try:
        process = subprocess.Popen(  # noqa: S603
            argv,
            cwd=cwd,
            env=env,
            stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except FileNotFoundError as error:
        return _ProcessOutcome(exit_code=EXIT_NOT_FOUND, stderr=str(error), not_found=True)
    except OSError as error:
        logger.warning("Harness failed to start: %s", error)
        return _ProcessOutcome(exit_code=EXIT_START_FAILED, stderr=str(error))

    lines: queue.Queue[object] = queue.Queue()
    stderr_parts: list[str] = []
    threads = [
        threading.Thread(target=_pump_lines, args=(process.stdout, lines), daemon=True),
        threading.Thread(target=_collect, args=(process.stderr, stderr_parts), daemon=True),
    ]
    if stdin_text is not None:
        threads.append(
            threading.Thread(target=_feed_stdin, args=(process.stdin, stdin_text), daemon=True),
        )
    for thread in threads:
        thread.start()

    outcome = _ProcessOutcome(exit_code=0)
    start_monotonic = time.monotonic()
    stdout_done = False

    while True:
        try:
            item = lines.get(timeout=_POLL_SECONDS)
        except queue.Empty:
            item = None
        if item is _EOF:
            stdout_done = True
        elif isinstance(item, str):
            outcome.stdout_lines.append(item)
            if on_line is not None:
                on_line(item)

        returncode = process.poll()
        if stdout_done and returncode is not None:
            outcome.exit_code = returncode
            # A terminal Ctrl-C reaches the child too, so it may exit before the
            # stop request is polled below.
            if shutdown_requested is not None and shutdown_requested():
                outcome.exit_code = EXIT_INTERRUPTED
                outcome.interrupted = True
            break

        now = time.monotonic()
        if timeout_seconds is not None and now - start_monotonic >= timeout_seconds:
            logger.warning("Harness timed out after %.0fs", timeout_seconds)
            _terminate_process(process)
            outcome.exit_code = EXIT_TIMEOUT
            outcome.timed_out = True
            break

        if shutdown_requested is not None and shutdown_requested():
            _terminate_process(process)
            outcome.exit_code = EXIT_INTERRUPTED
            outcome.interrupted = True
            break

    for thread in threads:
        thread.join(timeout=2)
    _drain(lines, outcome, on_line)
    outcome.stderr = "".join(stderr_parts)
    return outcome


def _pump_lines(stream, sink: queue.Queue[object]) -> None:
    try:
        for line in iter(stream.readline, ""):
            sink.put(line)
    except ValueError:
        pass
    finally:
        sink.put(_EOF)


def _collect(stream, parts: list[str]) -> None:
    try:
        parts.append(stream.read())
    except ValueError:
        return


def _feed_stdin(stream, text: str) -> None:
    try:
        stream.write(text)
        stream.close()
    except (OSError, ValueError):
        return


def _drain(
    lines: queue.Queue[object],
    outcome: _ProcessOutcome,
    on_line: Callable[[str], None] | None,
) -> None:
    while True:
        try:
            item = lines.get_nowait()
        except queue.Empty:
            return
        if isinstance(item, str):
            outcome.stdout_lines.append(item)
            if on_line is not None and not (outcome.timed_out or outcome.interrupted):
                on_line(item)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
