"""Domain models for the curb execution engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from pathlib import Path

EXIT_OK = 0
EXIT_ABORTED = 2
EXIT_NO_HARNESS = 3
EXIT_MALFORMED_STREAM = 65
EXIT_TIMEOUT = 124
EXIT_NOT_FOUND = 127
EXIT_INTERRUPTED = 130

MODEL_LABEL_PREFIX = "model:"


class TaskStatus(str, Enum):
    """Backlog task lifecycle states."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"


class TaskType(str, Enum):
    """Backlog task kinds."""

    EPIC = "epic"
    FEATURE = "feature"
    TASK = "task"
    BUG = "bug"
    CHORE = "chore"


class Priority(IntEnum):
    """Ordinal task priority, P0 is the most urgent."""

    P0 = 0
    P1 = 1
    P2 = 2
    P3 = 3
    P4 = 4

    @classmethod
    def parse(cls, value: object) -> Priority:
        """Accept `P2`, `p2`, `2` or an int and return the matching priority."""

        if isinstance(value, Priority):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid priority: {value!r}")
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            text = value.strip().upper()
            if text.startswith("P"):
                text = text[1:]
            if text.isdigit():
                return cls(int(text))
        raise ValueError(f"Invalid priority: {value!r}")

    @property
    def label(self) -> str:
        return f"P{self.value}"


@dataclass(slots=True)
class Task:
    """One backlog task as seen by the engine."""

    id: str
    title: str
    type: TaskType = TaskType.TASK
    description: str = ""
    acceptance_criteria: tuple[str, ...] = ()
    priority: Priority = Priority.P2
    status: TaskStatus = TaskStatus.OPEN
    depends_on: tuple[str, ...] = ()
    parent: str | None = None
    labels: tuple[str, ...] = ()
    notes: str = ""

    @property
    def model_directive(self) -> str | None:
        """Model requested through a `model:<name>` label, if any."""

        for label in self.labels:
            if label.startswith(MODEL_LABEL_PREFIX):
                model = label[len(MODEL_LABEL_PREFIX) :].strip()
                if model:
                    return model
        return None


@dataclass(frozen=True, slots=True)
class HarnessCapabilities:
    """Static feature descriptor for one harness."""

    streaming: bool
    token_reporting: bool
    system_prompt_injection: bool
    auto_mode: bool

    def to_dict(self) -> dict[str, bool]:
        return {
            "streaming": self.streaming,
            "token_reporting": self.token_reporting,
            "system_prompt_injection": self.system_prompt_injection,
            "auto_mode": self.auto_mode,
        }


class InvocationMode(str, Enum):
    """How harness output is consumed."""

    BLOCKING = "blocking"
    STREAMING = "streaming"


class UsageSource(str, Enum):
    """Which extraction tier produced a usage record."""

    REPORTED = "reported"
    COST_ESTIMATE = "cost_estimate"
    HEURISTIC = "heuristic"


@dataclass(slots=True)
class UsageRecord:
    """Token consumption of a single invocation."""

    input_tokens: int
    output_tokens: int
    estimated: bool
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    cost_usd: float | None = None
    source: UsageSource = UsageSource.REPORTED

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, object]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_tokens": self.cache_read_tokens,
            "cache_creation_tokens": self.cache_creation_tokens,
            "cost_usd": self.cost_usd,
            "estimated": self.estimated,
            "source": self.source.value,
        }


@dataclass(slots=True)
class InvocationResult:
    """Normalized outcome of one harness invocation."""

    exit_code: int
    raw_output: str
    usage: UsageRecord
    harness: str
    text: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    not_found: bool = False
    timed_out: bool = False
    interrupted: bool = False
    tool_calls: list[str] = field(default_factory=list)
    malformed_lines: int = 0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.interrupted


@dataclass(slots=True)
class VerifyResult:
    """Repository and test state observed after an invocation."""

    clean: bool
    tests_passed: bool | None
    detail: str
    require_commit: bool = True
    changed_files: list[str] = field(default_factory=list)
    test_command: str | None = None

    @property
    def passed(self) -> bool:
        """False when an enforced check failed."""

        if not self.clean and self.require_commit:
            return False
        return self.tests_passed is not False


@dataclass(slots=True)
class HookContext:
    """Values exported to hook executables as `CURB_*` variables."""

    hook_name: str = ""
    project_dir: str = ""
    session_id: str = ""
    harness: str = ""
    task_id: str | None = None
    task_title: str | None = None
    exit_code: int | None = None
    duration: float | None = None

    def to_env(self) -> dict[str, str]:
        values = {
            "CURB_HOOK_NAME": self.hook_name,
            "CURB_PROJECT_DIR": self.project_dir,
            "CURB_SESSION_ID": self.session_id,
            "CURB_HARNESS": self.harness,
        }
        if self.task_id is not None:
            values["CURB_TASK_ID"] = self.task_id
        if self.task_title is not None:
            values["CURB_TASK_TITLE"] = self.task_title
        if self.exit_code is not None:
            values["CURB_EXIT_CODE"] = str(self.exit_code)
        if self.duration is not None:
            values["CURB_DURATION"] = f"{self.duration:.3f}"
        return values


@dataclass(frozen=True, slots=True)
class HookUnit:
    """One discovered hook executable."""

    name: str
    path: Path
    source: str


@dataclass(slots=True)
class HookResult:
    """Outcome of one hook execution."""

    name: str
    path: Path
    source: str
    exit_code: int
    output: str
    duration_seconds: float

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


@dataclass(slots=True)
class HookRunResult:
    """Outcome of every hook run for one hook point."""

    hook_point: str
    all_succeeded: bool
    results: list[HookResult] = field(default_factory=list)
    escalate: bool = False

    @property
    def failures(self) -> list[HookResult]:
        return [result for result in self.results if not result.succeeded]


@dataclass(slots=True)
class Session:
    """State of one engine run; owned by the engine loop."""

    session_id: str
    name: str
    started_at: datetime
    harness_name: str = ""
    budget_limit: int = 0
    cumulative_usage: int = 0
    warning_fired: bool = False


class EngineState(str, Enum):
    """Engine loop state machine states."""

    INIT = "init"
    SELECT = "select"
    DISPATCH = "dispatch"
    VERIFY = "verify"
    ACCOUNT = "account"
    DECIDE = "decide"
    DONE = "done"
    ABORTED = "aborted"


class LoopOutcome(str, Enum):
    """Terminal disposition of an engine run."""

    DONE = "done"
    ABORTED = "aborted"
    NO_HARNESS = "no_harness"
    INTERRUPTED = "interrupted"

    @property
    def exit_code(self) -> int:
        return _OUTCOME_EXIT_CODES[self]


_OUTCOME_EXIT_CODES = {
    LoopOutcome.DONE: EXIT_OK,
    LoopOutcome.ABORTED: EXIT_ABORTED,
    LoopOutcome.NO_HARNESS: EXIT_NO_HARNESS,
    LoopOutcome.INTERRUPTED: EXIT_INTERRUPTED,
}
