"""
Unit tests for pricing calculations and token estimation.
"""

from decimal import Decimal

import pytest

from ai_gateway.core.pricing import (
    PRICING_TABLE,
    ModelPricing,
    PricingTable,
    calculate_cost,
    estimate_cost,
)
from ai_gateway.core.token_counter import (
    TokenUsage,
    estimate_tokens,
    estimate_usage,
)


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens(self):
        usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        assert usage.total_tokens == 150

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError):
            TokenUsage(prompt_tokens=-1, completion_tokens=0)


class TestTokenEstimation:
    """Test character-based pre-call estimates."""

    def test_empty_text_is_zero(self):
        assert estimate_tokens("") == 0

    def test_rounds_up(self):
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_output_estimate_is_max_tokens(self):
        usage = estimate_usage("x" * 40, max_tokens=200)
        assert usage.prompt_tokens == 10
        assert usage.completion_tokens == 200

    def test_small_max_tokens(self):
        usage = estimate_usage("hello", max_tokens=20)
        assert usage.completion_tokens == 20


class TestPricingTable:
    """Test pricing table lookups."""

    def test_supported_models(self):
        assert PRICING_TABLE.supports("gpt-5-nano")
        assert PRICING_TABLE.supports("gpt-5-mini")
        assert not PRICING_TABLE.supports("gpt-4")

    def test_model_tiers(self):
        assert PRICING_TABLE.get_pricing("gpt-5-nano").tier == "nano"
        assert PRICING_TABLE.get_pricing("gpt-5-mini").tier == "mini"

    def test_unsupported_model_raises(self):
        with pytest.raises(ValueError, match="Unsupported model: gpt-4"):
            PRICING_TABLE.get_pricing("gpt-4")


class TestCostCalculation:
    """Test cost calculation."""

    def test_nano_cost(self):
        usage = TokenUsage(prompt_tokens=1_000_000, completion_tokens=1_000_000)
        assert calculate_cost("gpt-5-nano", usage) == pytest.approx(0.30)

    def test_mini_cost(self):
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=2000)
        # 1000 * 0.50/1M + 2000 * 1.50/1M
        assert calculate_cost("gpt-5-mini", usage) == pytest.approx(0.0035)

    def test_zero_usage_is_free(self):
        assert calculate_cost("gpt-5-nano", TokenUsage(0, 0)) == 0.0

    def test_fractions_round_up(self):
        table = PricingTable({
            "tiny": ModelPricing(Decimal("0.001"), Decimal("0"), tier="nano"),
        })
        # 1 token costs 1e-9, below the ledger precision
        assert calculate_cost("tiny", TokenUsage(1, 0), table) == pytest.approx(0.00000001)

    def test_unsupported_model_raises(self):
        with pytest.raises(ValueError):
            calculate_cost("unknown", TokenUsage(1, 1))

    def test_estimate_prices_full_output_allowance(self):
        cost = estimate_cost("gpt-5-mini", "x" * 400, max_tokens=200)
        expected = calculate_cost("gpt-5-mini", TokenUsage(100, 200))
        assert cost == expected

    def test_estimate_covers_any_completion_within_max_tokens(self):
        estimate = estimate_cost("gpt-5-nano", "x" * 400, max_tokens=150)
        for completion_tokens in (0, 50, 149, 150):
            assert calculate_cost("gpt-5-nano", TokenUsage(100, completion_tokens)) <= estimate
