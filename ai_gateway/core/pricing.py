"""
Pricing calculations and rate management.

Handles cost computations for the supported provider models. Costs are
computed in Decimal and returned as floats for storage in the ledger.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict, Optional

from .token_counter import TokenUsage, estimate_usage

# Ledger precision: costs are fractions of a cent, keep 8 decimal places
COST_QUANTUM = Decimal("0.00000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1m: Decimal  # Cost per 1M prompt tokens
    completion_cost_per_1m: Decimal  # Cost per 1M completion tokens
    tier: str  # "nano" or "mini", drives cache TTL


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        if model not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[model]

    def supports(self, model: str) -> bool:
        return model in self.prices


# Fixed pricing table - no dynamic fetching
PRICING_TABLE = PricingTable({
    "gpt-5-nano": ModelPricing(
        prompt_cost_per_1m=Decimal("0.10"),
        completion_cost_per_1m=Decimal("0.20"),
        tier="nano",
    ),
    "gpt-5-mini": ModelPricing(
        prompt_cost_per_1m=Decimal("0.50"),
        completion_cost_per_1m=Decimal("1.50"),
        tier="mini",
    ),
})


def calculate_cost(
    model: str,
    usage: TokenUsage,
    table: Optional[PricingTable] = None
) -> float:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table to use, defaults to PRICING_TABLE

    Returns:
        Total cost in USD rounded UP to COST_QUANTUM

    Raises:
        ValueError: If model is not supported
    """
    pricing = (table or PRICING_TABLE).get_pricing(model)

    million = Decimal("1000000")
    prompt_cost = (Decimal(usage.prompt_tokens) / million) * pricing.prompt_cost_per_1m
    completion_cost = (Decimal(usage.completion_tokens) / million) * pricing.completion_cost_per_1m

    total_cost = prompt_cost + completion_cost
    return float(total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP))


def estimate_cost(
    model: str,
    prompt: str,
    max_tokens: int,
    table: Optional[PricingTable] = None
) -> float:
    """Estimate the cost of a call before it is made.

    Uses character-based token estimation, so the result can drift from the
    provider-reported actual cost. Estimates are advisory gatekeeping only.
    """
    return calculate_cost(model, estimate_usage(prompt, max_tokens), table)
