"""Deterministic classification of failed harness invocations."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from curb.engine.models import (
    EXIT_MALFORMED_STREAM,
    InvocationResult,
)

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
    "try again later",
)


class FailureClass(str, Enum):
    """Coarse reason a harness invocation did not succeed."""

    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    INTERRUPTED = "interrupted"
    MALFORMED_STREAM = "malformed_stream"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    RATE_LIMITED = "rate_limited"
    AGENT_ERROR = "agent_error"


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_pattern: str | None = None

    def to_event_details(self) -> dict[str, object]:
        return {
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_pattern": self.matched_pattern,
        }


def classify_failure(result: InvocationResult) -> FailureClassification:
    """Classify a non-successful invocation from its flags, exit code and output."""

    harness = result.harness
    if result.not_found:
        return _classified(FailureClass.NOT_FOUND, harness)
    if result.interrupted:
        return _classified(FailureClass.INTERRUPTED, harness)
    if result.timed_out:
        return _classified(FailureClass.TIMEOUT, harness)
    if result.exit_code == EXIT_MALFORMED_STREAM:
        return _classified(FailureClass.MALFORMED_STREAM, harness)

    haystack = f"{result.stderr}\n{result.text}".lower()
    for failure_class, patterns in (
        (FailureClass.BILLING_OR_QUOTA, _BILLING_OR_QUOTA_PATTERNS),
        (FailureClass.ACCESS_OR_AUTH, _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, _MODEL_NOT_AVAILABLE_PATTERNS),
        (FailureClass.RATE_LIMITED, _RATE_LIMIT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return _classified(failure_class, harness, pattern)

    return _classified(FailureClass.AGENT_ERROR, harness)


def _classified(
    failure_class: FailureClass,
    harness: str,
    pattern: str | None = None,
) -> FailureClassification:
    return FailureClassification(
        failure_class=failure_class,
        reason_code=f"{harness}_{failure_class.value}",
        matched_pattern=pattern,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
