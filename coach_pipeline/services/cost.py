from __future__ import annotations

from typing import Dict, Tuple

# USD per 1M tokens: (input, output).
MODEL_PRICING: Dict[str, Tuple[float, float]] = {
    "claude-sonnet-4-5": (3.0, 15.0),
    "claude-sonnet-4-20250514": (3.0, 15.0),
    "claude-opus-4-5-20251101": (15.0, 75.0),
    "claude-haiku-4-5": (0.25, 1.25),
    "claude-haiku-4-5-20251001": (0.25, 1.25),
    "gpt-4o": (2.5, 10.0),
    "gpt-4o-mini": (0.15, 0.6),
}
DEFAULT_PRICING: Tuple[float, float] = (5.0, 15.0)


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    input_price, output_price = MODEL_PRICING.get(model.strip(), DEFAULT_PRICING)
    return (max(0, input_tokens) / 1_000_000) * input_price + (max(0, output_tokens) / 1_000_000) * output_price
