"""Per-model token pricing and cost arithmetic (cents)."""

import math

from app.core.logging import get_logger

logger = get_logger(__name__)

CACHE_HIT_ASSUMPTION = 0.8

# Pricing in cents per 1k tokens: (input, output, cached_input)
MODEL_PRICING: dict[str, tuple[float, float, float | None]] = {
    # $0.15 / $0.60 per 1M tokens
    "gpt-4o-mini": (0.015, 0.06, 0.0075),
    # $2.50 / $10.00 per 1M tokens
    "gpt-4o": (0.25, 1.0, 0.125),
    "gpt-4o-2024-08-06": (0.25, 1.0, 0.125),
    "gpt-4-turbo": (1.0, 3.0, None),
    "gpt-3.5-turbo": (0.05, 0.15, None),
}


def get_model_pricing(model: str) -> tuple[float, float, float | None]:
    """Return (input, output, cached_input) cents per 1k tokens."""
    pricing = MODEL_PRICING.get(model)
    if not pricing:
        # Try prefix match for dated model variants
        for key, val in MODEL_PRICING.items():
            if model.startswith(key + "-"):
                pricing = val
                logger.debug(f"Priced {model} as {key}", extra={"model": model})
                break
    if not pricing:
        raise ValueError(f"No pricing information for model: {model}")
    return pricing


def get_cost_cents(
    model: str,
    tokens_in: int,
    tokens_out: int,
    cached_input_tokens: int = 0,
) -> float:
    """
    Cost of a call in cents, rounded to hundredths of a cent.

    Cached input tokens are billed at the cached rate when the model has one,
    otherwise at the regular input rate.
    """
    input_rate, output_rate, cached_rate = get_model_pricing(model)

    regular_input = max(0, tokens_in - cached_input_tokens)
    cost = (regular_input / 1000) * input_rate
    cost += (cached_input_tokens / 1000) * (cached_rate if cached_rate is not None else input_rate)
    cost += (tokens_out / 1000) * output_rate

    return round(cost, 2)


def estimate_cost_cents(
    model: str,
    estimated_input_tokens: int,
    estimated_output_tokens: int,
    use_caching: bool = False,
) -> float:
    """Estimate call cost; with caching, assume 80% of input is a cache hit."""
    cached = math.floor(estimated_input_tokens * CACHE_HIT_ASSUMPTION) if use_caching else 0
    return get_cost_cents(model, estimated_input_tokens, estimated_output_tokens, cached)


def format_cost(cents: float) -> str:
    return f"${cents / 100:.4f}"
