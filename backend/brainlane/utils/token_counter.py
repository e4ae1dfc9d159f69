"""
Token counting utilities.

Uses tiktoken's cl100k_base encoding for counts and a per-model price table
for cost estimates.
"""

from __future__ import annotations

from functools import lru_cache

import tiktoken


@lru_cache(maxsize=1)
def _get_encoder() -> tiktoken.Encoding:
    """Lazy-load the cl100k_base encoder."""
    return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    """Count tokens in text with the cl100k_base encoding."""
    return len(_get_encoder().encode(text, disallowed_special=()))


def estimate_cost(input_tokens: int, output_tokens: int, model: str = "gpt-4o") -> float:
    """
    Estimate API cost in USD.

    Unknown models are priced like gpt-4o.
    """
    pricing: dict[str, tuple[float, float]] = {
        # model: (input $/M tokens, output $/M tokens)
        "gpt-4o": (2.5, 10.0),
        "gpt-4o-mini": (0.15, 0.6),
        "gpt-4.1": (2.0, 8.0),
        "claude-sonnet-4-20250514": (3.0, 15.0),
        "claude-opus-4-20250514": (15.0, 75.0),
        "claude-haiku-4-5-20251001": (0.25, 1.25),
    }
    rates = pricing.get(model, (2.5, 10.0))
    return (input_tokens / 1_000_000 * rates[0]) + (output_tokens / 1_000_000 * rates[1])
