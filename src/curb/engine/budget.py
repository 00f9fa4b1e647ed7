"""Session token budget accounting."""

from __future__ import annotations

import logging
import sys

from curb.engine.models import Session, UsageRecord

logger = logging.getLogger(__name__)

UNLIMITED_REMAINING = sys.maxsize


class BudgetAccountant:
    """Tracks cumulative token usage of one session against its ceiling.

    A limit of zero or below means the session is unlimited: it is never over
    limit, never warns, and reports `UNLIMITED_REMAINING` tokens left. All
    counters live on the `Session` passed in, so the accountant holds no state
    of its own.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def init(self, limit: int) -> None:
        """Set the ceiling and reset usage for a new session."""

        if isinstance(limit, bool) or not isinstance(limit, int):
            raise ValueError(f"Budget limit must be an integer, got {limit!r}")
        self.session.budget_limit = limit
        self.session.cumulative_usage = 0
        self.session.warning_fired = False

    @property
    def unlimited(self) -> bool:
        return self.session.budget_limit <= 0

    @property
    def used(self) -> int:
        return self.session.cumulative_usage

    @property
    def limit(self) -> int:
        return self.session.budget_limit

    def record(self, usage: UsageRecord | int) -> int:
        """Add one invocation's tokens and return cumulative usage."""

        if isinstance(usage, UsageRecord):
            for name in ("input_tokens", "output_tokens"):
                value = getattr(usage, name)
                _require_token_count(value, name=name)
            tokens = usage.total_tokens
        else:
            _require_token_count(usage, name="tokens")
            tokens = usage
        self.session.cumulative_usage += tokens
        logger.debug(
            "Recorded %d tokens (used=%d limit=%d)",
            tokens,
            self.session.cumulative_usage,
            self.session.budget_limit,
        )
        return self.session.cumulative_usage

    def remaining(self) -> int:
        """Tokens left; negative once the ceiling has been passed."""

        if self.unlimited:
            return UNLIMITED_REMAINING
        return self.session.budget_limit - self.session.cumulative_usage

    def over_limit(self) -> bool:
        if self.unlimited:
            return False
        return self.session.cumulative_usage >= self.session.budget_limit

    def crossed_warning(self, threshold_fraction: float) -> bool:
        """Return True exactly once, on the first call at or above the threshold."""

        if not 0 < threshold_fraction <= 1:
            raise ValueError(
                f"Warning threshold must be within (0, 1], got {threshold_fraction!r}",
            )
        if self.unlimited or self.session.warning_fired:
            return False
        if self.session.cumulative_usage < threshold_fraction * self.session.budget_limit:
            return False
        self.session.warning_fired = True
        return True

    def percent_used(self) -> float | None:
        if self.unlimited:
            return None
        return self.session.cumulative_usage * 100.0 / self.session.budget_limit


def _require_token_count(value: object, *, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"Usage {name} must be an integer, got {value!r}")
    if value < 0:
        raise ValueError(f"Usage {name} must not be negative, got {value}")
