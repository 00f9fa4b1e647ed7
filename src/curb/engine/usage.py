"""Usage extraction with a three-tier fallback for harness output."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any

from curb.engine.models import UsageRecord, UsageSource
from curb.engine.pricing import tokens_from_cost

CHARS_PER_TOKEN = 4

_INPUT_TOKENS = re.compile(r"input[_ ]tokens?\"?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(
    r"(?:output|completion)[_ ]tokens?\"?\s*[:=]\s*([\d,]+)",
    re.IGNORECASE,
)
_TOTAL_TOKENS = re.compile(r"total[_ ]tokens?\"?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_CODEX_TOKENS_USED = re.compile(r"tokens used\s*[:\r\n ]+\s*([\d,]+)", re.IGNORECASE)


@dataclass(slots=True)
class ReportedUsage:
    """Token counts reported by the harness itself."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    def add(self, other: ReportedUsage) -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_creation_tokens += other.cache_creation_tokens


def usage_from_payload(payload: object) -> ReportedUsage | None:
    """Read a JSON `usage` object; None when it carries no token counts."""

    if not isinstance(payload, dict):
        return None
    input_tokens = _as_count(payload.get("input_tokens", payload.get("prompt_tokens")))
    output_tokens = _as_count(payload.get("output_tokens", payload.get("completion_tokens")))
    if input_tokens is None and output_tokens is None:
        return None
    return ReportedUsage(
        input_tokens=input_tokens or 0,
        output_tokens=output_tokens or 0,
        cache_read_tokens=_as_count(payload.get("cache_read_input_tokens")) or 0,
        cache_creation_tokens=_as_count(payload.get("cache_creation_input_tokens")) or 0,
    )


def cost_from_payload(payload: dict[str, Any]) -> float | None:
    """Read the reported cost, accepting both `total_cost_usd` and `cost_usd`."""

    for key in ("total_cost_usd", "cost_usd"):
        value = payload.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int | float) and value >= 0:
            return float(value)
    return None


def extract_textual_usage(*, harness: str, text: str) -> ReportedUsage | None:
    """Find usage markers printed as plain text by harnesses without JSON output."""

    input_tokens = _extract_int(_INPUT_TOKENS, text)
    output_tokens = _extract_int(_OUTPUT_TOKENS, text)
    if input_tokens is not None or output_tokens is not None:
        return ReportedUsage(input_tokens=input_tokens or 0, output_tokens=output_tokens or 0)

    total = _extract_int(_TOTAL_TOKENS, text)
    if total is None and harness == "codex":
        total = _extract_int(_CODEX_TOKENS_USED, text)
    if total is None:
        return None
    # Only a total is known; attribute it to input so the budget still sees it.
    return ReportedUsage(input_tokens=total, output_tokens=0)


def resolve_usage(  # noqa: PLR0913
    *,
    harness: str,
    model: str | None,
    reported: ReportedUsage | None,
    cost_usd: float | None,
    prompt_text: str,
    output_text: str,
) -> UsageRecord:
    """Pick the best available usage source; never raises on missing data.

    Zero reported counts next to a positive cost are treated as missing counts.
    """

    if reported is not None and not _zeroed_with_cost(reported, cost_usd):
        return UsageRecord(
            input_tokens=reported.input_tokens,
            output_tokens=reported.output_tokens,
            estimated=False,
            cache_read_tokens=reported.cache_read_tokens,
            cache_creation_tokens=reported.cache_creation_tokens,
            cost_usd=cost_usd,
            source=UsageSource.REPORTED,
        )

    if cost_usd is not None:
        split = tokens_from_cost(harness=harness, model=model, cost_usd=cost_usd)
        if split is not None:
            return UsageRecord(
                input_tokens=split[0],
                output_tokens=split[1],
                estimated=True,
                cost_usd=cost_usd,
                source=UsageSource.COST_ESTIMATE,
            )

    return UsageRecord(
        input_tokens=estimate_tokens(prompt_text),
        output_tokens=estimate_tokens(output_text),
        estimated=True,
        cost_usd=cost_usd,
        source=UsageSource.HEURISTIC,
    )


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _zeroed_with_cost(reported: ReportedUsage, cost_usd: float | None) -> bool:
    return (
        reported.input_tokens == 0
        and reported.output_tokens == 0
        and cost_usd is not None
        and cost_usd > 0
    )


def _as_count(value: object) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return None
    return value


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)
