"""
Unit tests for token counting and cost estimation.
"""

from __future__ import annotations

import pytest

from brainlane.utils.token_counter import count_tokens, estimate_cost


class TestCountTokens:
    def test_known_encoding(self) -> None:
        assert count_tokens("hello world") == 2

    def test_empty(self) -> None:
        assert count_tokens("") == 0

    def test_special_tokens_are_plain_text(self) -> None:
        assert count_tokens("<|endoftext|>") > 1

    def test_code_is_not_a_char_estimate(self) -> None:
        text = "    " * 64
        assert count_tokens(text) < len(text) // 4


class TestEstimateCost:
    def test_known_model(self) -> None:
        assert estimate_cost(1_000_000, 1_000_000, "gpt-4o-mini") == pytest.approx(0.75)

    def test_unknown_model_priced_like_gpt4o(self) -> None:
        assert estimate_cost(1_000_000, 0, "mystery") == pytest.approx(2.5)
