"""
Pricing calculations.

Turns token counts into a per-request cost estimate using a model's
per-1K-token rates.
"""

from dataclasses import dataclass
from decimal import Decimal

from .capabilities import ModelCapabilities, ModelPricing
from .errors import InvalidArgumentError
from .token_counter import TokenUsage

_THOUSAND = Decimal("1000")


@dataclass(frozen=True)
class CostEstimate:
    """Cost breakdown for a request.

    total_cost is always input_cost + output_cost + reasoning_cost, and
    every field is non-negative.
    """
    input_tokens: int
    output_tokens: int
    reasoning_tokens: int
    input_cost: float
    output_cost: float
    reasoning_cost: float
    total_cost: float
    currency: str = "USD"

    @classmethod
    def zero(cls) -> "CostEstimate":
        return cls(0, 0, 0, 0.0, 0.0, 0.0, 0.0)


def _cost(tokens: int, rate_per_1k: float) -> Decimal:
    # str() keeps the configured rate exact (0.001 stays 0.001)
    return (Decimal(tokens) / _THOUSAND) * Decimal(str(rate_per_1k))


def estimate_cost(
    capabilities: ModelCapabilities,
    input_tokens: int,
    output_tokens: int,
    reasoning_tokens: int = 0
) -> CostEstimate:
    """Estimate the cost of a request.

    Each component is rate_per_1k * (tokens / 1000), computed in Decimal
    so that the components add up exactly before conversion to float.

    Args:
        capabilities: Capability record providing pricing
        input_tokens: Prompt tokens
        output_tokens: Completion tokens
        reasoning_tokens: Reasoning tokens (default: 0)

    Returns:
        CostEstimate in USD

    Raises:
        InvalidArgumentError: If any token count is negative
    """
    if input_tokens < 0 or output_tokens < 0 or reasoning_tokens < 0:
        raise InvalidArgumentError(
            f"Token counts cannot be negative: input={input_tokens}, "
            f"output={output_tokens}, reasoning={reasoning_tokens}"
        )

    pricing: ModelPricing = capabilities.pricing
    input_cost = _cost(input_tokens, pricing.input_per_1k)
    output_cost = _cost(output_tokens, pricing.output_per_1k)
    reasoning_cost = _cost(reasoning_tokens, pricing.reasoning_per_1k)

    return CostEstimate(
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        reasoning_tokens=reasoning_tokens,
        input_cost=float(input_cost),
        output_cost=float(output_cost),
        reasoning_cost=float(reasoning_cost),
        total_cost=float(input_cost + output_cost + reasoning_cost)
    )


def calculate_cost(capabilities: ModelCapabilities, usage: TokenUsage) -> CostEstimate:
    """Cost of reported usage; reasoning tokens are billed at the reasoning rate."""
    return estimate_cost(
        capabilities,
        usage.prompt_tokens,
        usage.completion_tokens,
        usage.reasoning_tokens
    )
