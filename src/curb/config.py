"""Runtime configuration layered from defaults, JSON files and environment."""

from __future__ import annotations

import json
import os
import shlex
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from curb.engine.harness.registry import FALLBACK_ORDER
from curb.errors import ConfigError

PROJECT_CONFIG_FILENAME = ".curb.json"
USER_CONFIG_FILENAME = "config.json"
BACKLOG_BACKENDS = ("json", "beads")
AUTO_HARNESS = "auto"


def xdg_config_home() -> Path:
    return Path(os.getenv("XDG_CONFIG_HOME") or Path.home() / ".config")


def xdg_data_home() -> Path:
    return Path(os.getenv("XDG_DATA_HOME") or Path.home() / ".local" / "share")


@dataclass(slots=True)
class HarnessSettings:
    """Harness selection and invocation settings."""

    default: str = AUTO_HARNESS
    priority: tuple[str, ...] = ()
    model: str | None = None
    timeout_seconds: float | None = None
    stream: bool = False
    flags: dict[str, tuple[str, ...]] = field(default_factory=dict)
    commands: dict[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def override(self) -> str | None:
        return None if self.default == AUTO_HARNESS else self.default


@dataclass(slots=True)
class BudgetSettings:
    """Token budget; a limit of 0 means unlimited."""

    default: int = 0
    warn_at: int = 80

    @property
    def warn_fraction(self) -> float:
        return self.warn_at / 100


@dataclass(slots=True)
class CleanStateSettings:
    """Post-task verification policy."""

    require_commit: bool = True
    require_tests: bool = False
    test_command: str | None = None
    abort_on_unclean: bool = True


@dataclass(slots=True)
class HookSettings:
    """Lifecycle hook settings."""

    enabled: bool = True
    fail_fast: bool = False
    timeout_seconds: float | None = None
    global_dir: Path = field(default_factory=lambda: xdg_config_home() / "curb" / "hooks")
    project_dir: Path = Path(".curb/hooks")


@dataclass(slots=True)
class LoopSettings:
    """Engine loop limits."""

    max_iterations: int = 100


@dataclass(slots=True)
class BacklogSettings:
    """Where tasks come from."""

    backend: str = "json"
    prd_path: Path = Path("prd.json")


@dataclass(slots=True)
class ArtifactSettings:
    """Per-run artifact bundle under `.curb/runs`."""

    enabled: bool = True


@dataclass(slots=True)
class GitSettings:
    """Git integration for runs."""

    run_branch: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    project_dir: Path = Path()
    harness: HarnessSettings = field(default_factory=HarnessSettings)
    budget: BudgetSettings = field(default_factory=BudgetSettings)
    clean_state: CleanStateSettings = field(default_factory=CleanStateSettings)
    hooks: HookSettings = field(default_factory=HookSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    backlog: BacklogSettings = field(default_factory=BacklogSettings)
    artifacts: ArtifactSettings = field(default_factory=ArtifactSettings)
    git: GitSettings = field(default_factory=GitSettings)
    logs_dir: Path = field(default_factory=lambda: xdg_data_home() / "curb" / "logs")
    sources: tuple[Path, ...] = ()

    @classmethod
    def load(cls, project_dir: Path | None = None) -> Settings:
        """Merge user config, project config and environment over the defaults."""

        root = (project_dir or Path.cwd()).resolve()
        merged: dict[str, Any] = {}
        sources: list[Path] = []
        for path in (
            xdg_config_home() / "curb" / USER_CONFIG_FILENAME,
            root / PROJECT_CONFIG_FILENAME,
        ):
            if path.is_file():
                merged = _deep_merge(merged, _read_config_file(path))
                sources.append(path)

        settings = cls.from_mapping(merged, project_dir=root)
        settings.sources = tuple(sources)
        settings.apply_env()
        settings.validate()
        return settings

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any], *, project_dir: Path) -> Settings:
        """Build settings from a merged config document with dot-path keys."""

        defaults = cls()
        harness = HarnessSettings(
            default=_str(raw, "harness.default", defaults.harness.default),
            priority=_str_tuple(raw, "harness.priority"),
            model=_optional_str(raw, "harness.model"),
            timeout_seconds=_optional_float(raw, "harness.timeout_seconds"),
            stream=_bool(raw, "harness.stream", defaults.harness.stream),
            flags=_argv_mapping(raw, "harness.flags"),
            commands=_argv_mapping(raw, "harness.commands"),
        )
        hooks = HookSettings(
            enabled=_bool(raw, "hooks.enabled", defaults.hooks.enabled),
            fail_fast=_bool(raw, "hooks.fail_fast", defaults.hooks.fail_fast),
            timeout_seconds=_optional_float(raw, "hooks.timeout_seconds"),
            project_dir=project_dir / ".curb" / "hooks",
        )
        return cls(
            project_dir=project_dir,
            harness=harness,
            budget=BudgetSettings(
                default=_int(raw, "budget.default", defaults.budget.default),
                warn_at=_int(raw, "budget.warn_at", defaults.budget.warn_at),
            ),
            clean_state=CleanStateSettings(
                require_commit=_bool(
                    raw,
                    "clean_state.require_commit",
                    defaults.clean_state.require_commit,
                ),
                require_tests=_bool(
                    raw,
                    "clean_state.require_tests",
                    defaults.clean_state.require_tests,
                ),
                test_command=_optional_str(raw, "clean_state.test_command"),
                abort_on_unclean=_bool(
                    raw,
                    "clean_state.abort_on_unclean",
                    defaults.clean_state.abort_on_unclean,
                ),
            ),
            hooks=hooks,
            loop=LoopSettings(
                max_iterations=_int(raw, "loop.max_iterations", defaults.loop.max_iterations),
            ),
            backlog=BacklogSettings(
                backend=_str(raw, "backlog.backend", defaults.backlog.backend),
                prd_path=Path(_str(raw, "backlog.prd_path", str(defaults.backlog.prd_path))),
            ),
            artifacts=ArtifactSettings(
                enabled=_bool(raw, "artifacts.enabled", defaults.artifacts.enabled),
            ),
            git=GitSettings(
                run_branch=_bool(raw, "git.run_branch", defaults.git.run_branch),
            ),
        )

    def apply_env(self) -> None:
        """Apply `CURB_*` and `<HARNESS>_FLAGS` environment overrides in place."""

        harness = os.getenv("CURB_HARNESS")
        if harness:
            self.harness.default = harness.strip()
        priority = os.getenv("CURB_HARNESS_PRIORITY")
        if priority:
            self.harness.priority = tuple(
                part.strip() for part in priority.split(",") if part.strip()
            )
        model = os.getenv("CURB_MODEL")
        if model:
            self.harness.model = model.strip()
        if os.getenv("CURB_HARNESS_TIMEOUT"):
            self.harness.timeout_seconds = _env_float("CURB_HARNESS_TIMEOUT")
        self.harness.stream = _env_bool("CURB_STREAM", default=self.harness.stream)
        for name in FALLBACK_ORDER:
            flags = os.getenv(f"{name.upper()}_FLAGS")
            if flags:
                self.harness.flags[name] = tuple(shlex.split(flags))

        if os.getenv("CURB_BUDGET"):
            self.budget.default = _env_int("CURB_BUDGET")
        if os.getenv("CURB_BUDGET_WARN_AT"):
            self.budget.warn_at = _env_int("CURB_BUDGET_WARN_AT")

        clean = self.clean_state
        clean.require_commit = _env_bool("CURB_REQUIRE_COMMIT", default=clean.require_commit)
        clean.require_tests = _env_bool("CURB_REQUIRE_TESTS", default=clean.require_tests)
        clean.abort_on_unclean = _env_bool(
            "CURB_ABORT_ON_UNCLEAN",
            default=clean.abort_on_unclean,
        )
        test_command = os.getenv("CURB_TEST_COMMAND")
        if test_command:
            clean.test_command = test_command

        self.hooks.enabled = _env_bool("CURB_HOOKS_ENABLED", default=self.hooks.enabled)
        self.hooks.fail_fast = _env_bool("CURB_HOOKS_FAIL_FAST", default=self.hooks.fail_fast)

        if os.getenv("CURB_MAX_ITERATIONS"):
            self.loop.max_iterations = _env_int("CURB_MAX_ITERATIONS")

        backend = os.getenv("CURB_BACKEND")
        if backend:
            self.backlog.backend = backend.strip().lower()
        prd = os.getenv("CURB_PRD")
        if prd:
            self.backlog.prd_path = Path(prd)

        self.artifacts.enabled = _env_bool("CURB_ARTIFACTS", default=self.artifacts.enabled)
        self.git.run_branch = _env_bool("CURB_RUN_BRANCH", default=self.git.run_branch)

    def validate(self) -> None:
        """Raise configuration error for out-of-range or unknown values."""

        known = (AUTO_HARNESS, *FALLBACK_ORDER)
        if self.harness.default not in known:
            raise ConfigError(
                f"harness.default must be one of {', '.join(known)}: {self.harness.default!r}",
            )
        unknown = [name for name in self.harness.priority if name not in FALLBACK_ORDER]
        if unknown:
            raise ConfigError(f"harness.priority has unknown harnesses: {', '.join(unknown)}")
        if self.harness.timeout_seconds is not None and self.harness.timeout_seconds <= 0:
            raise ConfigError("harness.timeout_seconds must be > 0.")
        if self.hooks.timeout_seconds is not None and self.hooks.timeout_seconds <= 0:
            raise ConfigError("hooks.timeout_seconds must be > 0.")
        if not 1 <= self.budget.warn_at <= 100:
            raise ConfigError("budget.warn_at must be a percentage between 1 and 100.")
        if self.loop.max_iterations <= 0:
            raise ConfigError("loop.max_iterations must be > 0.")
        if self.backlog.backend not in BACKLOG_BACKENDS:
            raise ConfigError(
                f"backlog.backend must be one of {', '.join(BACKLOG_BACKENDS)}: "
                f"{self.backlog.backend!r}",
            )

    @property
    def prd_file(self) -> Path:
        path = self.backlog.prd_path
        return path if path.is_absolute() else self.project_dir / path

    @property
    def project_name(self) -> str:
        return self.project_dir.name or "project"

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready snapshot of the effective settings."""

        return _jsonable(asdict(self))


def _jsonable(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, list | tuple):
        return [_jsonable(item) for item in value]
    if isinstance(value, Path):
        return str(value)
    return value


def _read_config_file(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ConfigError(f"Invalid JSON in config file {path}: {error}") from error
    except OSError as error:
        raise ConfigError(f"Cannot read config file {path}: {error}") from error
    if not isinstance(payload, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return payload


def _deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _lookup(raw: Mapping[str, Any], key: str) -> Any:
    node: Any = raw
    for part in key.split("."):
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def _str(raw: Mapping[str, Any], key: str, default: str) -> str:
    value = _lookup(raw, key)
    if value is None:
        return default
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string")
    return value.strip()


def _optional_str(raw: Mapping[str, Any], key: str) -> str | None:
    value = _lookup(raw, key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string")
    return value.strip() or None


def _int(raw: Mapping[str, Any], key: str, default: int) -> int:
    value = _lookup(raw, key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer: {value!r}")
    return value


def _optional_float(raw: Mapping[str, Any], key: str) -> float | None:
    value = _lookup(raw, key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number: {value!r}")
    return float(value)


def _bool(raw: Mapping[str, Any], key: str, default: bool) -> bool:
    value = _lookup(raw, key)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be true or false: {value!r}")
    return value


def _str_tuple(raw: Mapping[str, Any], key: str) -> tuple[str, ...]:
    value = _lookup(raw, key)
    if value is None:
        return ()
    if isinstance(value, str):
        return tuple(part.strip() for part in value.split(",") if part.strip())
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ConfigError(f"{key} must be a list of strings")
    return tuple(value)


def _argv_mapping(raw: Mapping[str, Any], key: str) -> dict[str, tuple[str, ...]]:
    value = _lookup(raw, key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{key} must be an object keyed by harness name")
    parsed: dict[str, tuple[str, ...]] = {}
    for name, argv in value.items():
        if isinstance(argv, str):
            parsed[name] = tuple(shlex.split(argv))
        elif isinstance(argv, list) and all(isinstance(item, str) for item in argv):
            parsed[name] = tuple(argv)
        else:
            raise ConfigError(f"{key}.{name} must be a string or a list of strings")
    return parsed


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Invalid boolean value for {name}: {value!r}")


def _env_int(name: str) -> int:
    value = os.getenv(name, "")
    try:
        return int(value.strip())
    except ValueError as error:
        raise ConfigError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str) -> float:
    value = os.getenv(name, "")
    try:
        return float(value.strip())
    except ValueError as error:
        raise ConfigError(f"Invalid number for {name}: {value!r}") from error
