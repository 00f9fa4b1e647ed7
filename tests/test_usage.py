from __future__ import annotations

import json

import allure

from curb.engine.harness.stream import parse_blocking_output
from curb.engine.models import UsageSource
from curb.engine.usage import (
    ReportedUsage,
    estimate_tokens,
    extract_textual_usage,
    resolve_usage,
    usage_from_payload,
)

pytestmark = [
    allure.epic("Harness"),
    allure.feature("Usage Telemetry"),
]


def test_usage_from_payload_reads_anthropic_and_openai_keys() -> None:
    anthropic = usage_from_payload(
        {
            "input_tokens": 120,
            "output_tokens": 30,
            "cache_read_input_tokens": 500,
            "cache_creation_input_tokens": 7,
        },
    )
    openai = usage_from_payload({"prompt_tokens": 11, "completion_tokens": 4})

    assert anthropic == ReportedUsage(
        input_tokens=120,
        output_tokens=30,
        cache_read_tokens=500,
        cache_creation_tokens=7,
    )
    assert openai == ReportedUsage(input_tokens=11, output_tokens=4)


def test_usage_from_payload_ignores_payload_without_counts() -> None:
    assert usage_from_payload({"service_tier": "standard"}) is None
    assert usage_from_payload({"input_tokens": -5}) is None
    assert usage_from_payload(None) is None


def test_extract_textual_usage_finds_key_value_markers() -> None:
    text = "run finished\ninput_tokens=1,234 output_tokens: 56\n"

    assert extract_textual_usage(harness="gemini", text=text) == ReportedUsage(
        input_tokens=1234,
        output_tokens=56,
    )


def test_extract_textual_usage_reads_codex_tokens_used() -> None:
    text = "[2026-01-01T00:00:00] tokens used: 4,200\n"

    usage = extract_textual_usage(harness="codex", text=text)

    assert usage == ReportedUsage(input_tokens=4200, output_tokens=0)
    assert extract_textual_usage(harness="gemini", text=text) is None


def test_resolve_usage_prefers_reported_counts() -> None:
    usage = resolve_usage(
        harness="claude",
        model=None,
        reported=ReportedUsage(input_tokens=10, output_tokens=5),
        cost_usd=1.25,
        prompt_text="prompt",
        output_text="output",
    )

    assert usage.source is UsageSource.REPORTED
    assert not usage.estimated
    assert usage.total_tokens == 15
    assert usage.cost_usd == 1.25


def test_resolve_usage_converts_cost_when_counts_missing(monkeypatch) -> None:
    monkeypatch.setenv("CURB_PRICING", "claude:*:1.0:1.0")

    usage = resolve_usage(
        harness="claude",
        model=None,
        reported=None,
        cost_usd=0.003,
        prompt_text="prompt",
        output_text="output",
    )

    assert usage.source is UsageSource.COST_ESTIMATE
    assert usage.estimated
    assert usage.total_tokens == 3_000
    assert usage.input_tokens == 1_000


def test_resolve_usage_falls_back_to_character_heuristic() -> None:
    usage = resolve_usage(
        harness="codex",
        model=None,
        reported=None,
        cost_usd=None,
        prompt_text="x" * 40,
        output_text="y" * 9,
    )

    assert usage.source is UsageSource.HEURISTIC
    assert usage.estimated
    assert (usage.input_tokens, usage.output_tokens) == (10, 3)


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abc") == 1
    assert estimate_tokens("abcde") == 2


def test_zero_reported_counts_with_cost_use_cost_estimate() -> None:
    accumulator = parse_blocking_output(
        json.dumps(
            {
                "type": "result",
                "result": "done",
                "total_cost_usd": 0.45,
                "usage": {"input_tokens": 0, "output_tokens": 0},
            },
        ),
    )

    usage = resolve_usage(
        harness="claude",
        model=None,
        reported=accumulator.reported_usage,
        cost_usd=accumulator.cost_usd,
        prompt_text="prompt",
        output_text=accumulator.text,
    )

    assert usage.source is UsageSource.COST_ESTIMATE
    assert usage.estimated
    assert usage.total_tokens > 0
    assert usage.cost_usd == 0.45


def test_zero_reported_counts_without_cost_stay_reported() -> None:
    usage = resolve_usage(
        harness="claude",
        model=None,
        reported=ReportedUsage(),
        cost_usd=0.0,
        prompt_text="prompt",
        output_text="output",
    )

    assert usage.source is UsageSource.REPORTED
    assert usage.total_tokens == 0
