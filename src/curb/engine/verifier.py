"""Post-invocation repository and test-suite checks."""

from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from collections.abc import Callable, Iterable
from pathlib import Path

from curb.engine.models import VerifyResult

logger = logging.getLogger(__name__)

_MAKE_TEST_TARGET = re.compile(r"^test\s*:", re.MULTILINE)
_PYTHON_MARKERS = ("pytest.ini", "pyproject.toml", "setup.py", "setup.cfg", "tox.ini")
_OUTPUT_TAIL_CHARS = 2000


class StateVerifier:
    """Check that the working tree is committed and, optionally, tests pass."""

    def __init__(
        self,
        project_dir: Path,
        *,
        ignore_paths: Iterable[str] = (),
        test_timeout_seconds: float | None = None,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        self.project_dir = project_dir
        self.ignore_paths = {_normalize_path(path) for path in ignore_paths}
        self.test_timeout_seconds = test_timeout_seconds
        self.which = which

    def verify_clean(
        self,
        require_commit: bool,
        require_tests: bool,
        test_command: str | None = None,
    ) -> VerifyResult:
        clean, changed, detail = self._check_tree()
        details = [detail]

        tests_passed: bool | None = None
        command: str | None = None
        if require_tests:
            command = test_command or detect_test_command(self.project_dir, which=self.which)
            if command is None:
                details.append("tests unavailable: no test command detected")
            else:
                tests_passed, test_detail = self._run_tests(command)
                details.append(test_detail)

        result = VerifyResult(
            clean=clean,
            tests_passed=tests_passed,
            detail="; ".join(details),
            require_commit=require_commit,
            changed_files=changed,
            test_command=command,
        )
        if not clean:
            logger.info("Working tree not clean: %s", ", ".join(changed) or detail)
        return result

    def _check_tree(self) -> tuple[bool, list[str], str]:
        try:
            completed = subprocess.run(  # noqa: S603
                ["git", "status", "--porcelain", "-z"],  # noqa: S607
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except FileNotFoundError:
            return False, [], "git executable not found"
        if completed.returncode != 0:
            message = completed.stderr.strip() or "git status failed"
            return False, [], f"not a git repository: {message}"

        changed = [
            path
            for path in parse_porcelain(completed.stdout)
            if _normalize_path(path) not in self.ignore_paths
        ]
        if changed:
            return False, changed, f"{len(changed)} uncommitted change(s)"
        return True, [], "working tree clean"

    def _run_tests(self, command: str) -> tuple[bool, str]:
        logger.info("Running tests: %s", command)
        try:
            completed = subprocess.run(  # noqa: S602
                command,
                shell=True,
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                check=False,
                timeout=self.test_timeout_seconds,
            )
        except subprocess.TimeoutExpired:
            return False, f"tests timed out: {command}"
        if completed.returncode == 0:
            return True, f"tests passed: {command}"
        tail = (completed.stdout + completed.stderr)[-_OUTPUT_TAIL_CHARS:]
        logger.debug("Test output tail:\n%s", tail)
        return False, f"tests failed (exit {completed.returncode}): {command}"


def parse_porcelain(output: str) -> list[str]:
    """Return tracked paths reported by `git status --porcelain -z`, skipping untracked.

    Records are NUL-terminated and paths are not quoted. A rename or copy
    record is followed by one extra field holding the source path.
    """

    paths: list[str] = []
    fields = iter(output.split("\0"))
    for record in fields:
        if len(record) < 4:
            continue
        status, path = record[:2], record[3:]
        if "R" in status or "C" in status:
            next(fields, None)
        if status in ("??", "!!"):
            continue
        paths.append(path)
    return paths


def detect_test_command(
    project_dir: Path,
    *,
    which: Callable[[str], str | None] = shutil.which,
) -> str | None:
    """Guess the project's test command from well-known build files."""

    package_json = project_dir / "package.json"
    if package_json.is_file() and _has_npm_test_script(package_json):
        if (project_dir / "yarn.lock").exists() and which("yarn"):
            return "yarn test"
        if which("npm"):
            return "npm test"

    makefile = project_dir / "Makefile"
    if makefile.is_file() and which("make"):
        text = makefile.read_text("utf-8", errors="replace")
        if _MAKE_TEST_TARGET.search(text):
            return "make test"

    if any((project_dir / marker).exists() for marker in _PYTHON_MARKERS) and which("pytest"):
        return "pytest"

    if (project_dir / "go.mod").is_file() and which("go"):
        return "go test ./..."

    if (project_dir / "Cargo.toml").is_file() and which("cargo"):
        return "cargo test"

    if (project_dir / "Rakefile").is_file() and which("rake"):
        return "rake test"

    return None


def _has_npm_test_script(package_json: Path) -> bool:
    try:
        payload = json.loads(package_json.read_text("utf-8"))
    except (OSError, json.JSONDecodeError):
        return False
    scripts = payload.get("scripts") if isinstance(payload, dict) else None
    return isinstance(scripts, dict) and bool(scripts.get("test"))


def _normalize_path(path: str) -> str:
    return Path(path).as_posix()
