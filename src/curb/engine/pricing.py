"""Static price table for converting between cost and token counts."""

from __future__ import annotations

import os
from dataclasses import dataclass

PRICING_ENV_VAR = "CURB_PRICING"


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


DEFAULT_PRICING: dict[tuple[str, str], ModelPricing] = {
    ("claude", "*"): ModelPricing(input_per_1m=3.0, output_per_1m=15.0),
    ("codex", "*"): ModelPricing(input_per_1m=1.25, output_per_1m=10.0),
    ("gemini", "*"): ModelPricing(input_per_1m=1.25, output_per_1m=10.0),
    ("*", "*"): ModelPricing(input_per_1m=3.0, output_per_1m=15.0),
}


def tokens_from_cost(
    *,
    harness: str,
    model: str | None,
    cost_usd: float,
) -> tuple[int, int] | None:
    """Estimate (input, output) tokens that would cost `cost_usd`.

    Assumes a third of the tokens are input and two thirds output, the
    typical shape of an agentic coding session.
    """

    if cost_usd <= 0:
        return None
    pricing = lookup_pricing(harness=harness, model=model)
    if pricing is None:
        return None
    blended_per_1m = pricing.input_per_1m + 2 * pricing.output_per_1m
    if blended_per_1m <= 0:
        return None
    total = int(3_000_000 * cost_usd / blended_per_1m)
    input_tokens = total // 3
    return input_tokens, total - input_tokens


def lookup_pricing(*, harness: str, model: str | None) -> ModelPricing | None:
    mapping = dict(DEFAULT_PRICING)
    mapping.update(_parse_pricing_mapping(os.getenv(PRICING_ENV_VAR, "")))

    harness_key = harness.strip().lower()
    if model:
        direct = mapping.get((harness_key, model.strip()))
        if direct is not None:
            return direct

    wildcard_model = mapping.get((harness_key, "*"))
    if wildcard_model is not None:
        return wildcard_model

    return mapping.get(("*", "*"))


def _parse_pricing_mapping(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse `CURB_PRICING` overrides.

    Format:
    - `harness:model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - supports wildcards in harness/model (`*`)
    - rows with negative prices are ignored
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 4:
            continue
        harness, model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        if input_per_1m < 0 or output_per_1m < 0:
            continue
        parsed[(harness.lower(), model)] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )
    return parsed
