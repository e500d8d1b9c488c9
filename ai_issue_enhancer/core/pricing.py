"""
Pricing calculations and rate management.

Handles cost computations for the models each backend serves.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict, Optional, Union

# Smallest unit a cost is rounded to
COST_QUANTUM = Decimal("0.000001")

Number = Union[int, float, Decimal]


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    prompt_cost_per_1k: Decimal  # Cost per 1K prompt tokens
    completion_cost_per_1k: Decimal  # Cost per 1K completion tokens


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for known models."""
    prices: Dict[str, ModelPricing]

    def find_pricing(self, model: str) -> Optional[ModelPricing]:
        """Get pricing for a model, or None when unknown."""
        return self.prices.get(model)


def _rates(prompt: str, completion: str) -> ModelPricing:
    return ModelPricing(
        prompt_cost_per_1k=Decimal(prompt),
        completion_cost_per_1k=Decimal(completion),
    )


# USD per 1K tokens, 2025 list prices
PRICING_TABLE = PricingTable({
    "gpt-4o": _rates("0.0025", "0.01"),
    "gpt-4o-mini": _rates("0.00015", "0.0006"),
    "gpt-4-turbo": _rates("0.01", "0.03"),
    "gpt-4": _rates("0.03", "0.06"),
    "gpt-3.5-turbo": _rates("0.0005", "0.0015"),
    "claude-3-5-sonnet-20241022": _rates("0.003", "0.015"),
    "claude-3-5-haiku-20241022": _rates("0.0008", "0.004"),
    "claude-3-opus-20240229": _rates("0.015", "0.075"),
    "gemini-1.5-pro": _rates("0.00125", "0.005"),
    "gemini-1.5-flash": _rates("0.000075", "0.0003"),
    "gemini-1.0-pro": _rates("0.0005", "0.0015"),
    "deepseek-chat": _rates("0.00027", "0.0011"),
    "grok-2": _rates("0.002", "0.01"),
})


def compute_cost(
    prompt_tokens: int,
    completion_tokens: int,
    prompt_cost_per_1k: Number,
    completion_cost_per_1k: Number,
) -> float:
    """Cost of a call with conservative rounding.

    Returns:
        (prompt * prompt_rate + completion * completion_rate) / 1000,
        rounded UP to six decimal places
    """
    prompt_cost = Decimal(prompt_tokens) * Decimal(str(prompt_cost_per_1k))
    completion_cost = Decimal(completion_tokens) * Decimal(str(completion_cost_per_1k))
    total_cost = (prompt_cost + completion_cost) / Decimal("1000")
    return float(total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP))

