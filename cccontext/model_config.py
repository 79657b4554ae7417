"""Model pricing, context-window and auto-compact tables.

Prices are USD per 1M tokens. Every model starts from a 200k baseline
window; the extended 1M window is applied transparently once usage
crosses ``AUTO_UPGRADE_THRESHOLD`` of the baseline.
"""
from __future__ import annotations

from typing import Any, Mapping, NamedTuple

from cccontext.model_identity import canonical_model_name, derive_model_identity


class ModelPricing(NamedTuple):
    input: float
    output: float
    name: str


PRICING: dict[str, ModelPricing] = {
    "claude-opus-4-6": ModelPricing(5.0, 25.0, "Claude Opus 4.6"),
    "claude-opus-4-5-20251101": ModelPricing(5.0, 25.0, "Claude Opus 4.5"),
    "claude-opus-4-1-20250805": ModelPricing(15.0, 75.0, "Claude Opus 4.1"),
    "claude-opus-4-20250514": ModelPricing(15.0, 75.0, "Claude Opus 4"),
    "claude-3-opus-20241022": ModelPricing(15.0, 75.0, "Claude 3 Opus"),
    "claude-sonnet-4-5-20250929": ModelPricing(3.0, 15.0, "Claude Sonnet 4.5"),
    "claude-sonnet-4-20250514": ModelPricing(3.0, 15.0, "Claude Sonnet 4"),
    "claude-3-7-sonnet-20250219": ModelPricing(3.0, 15.0, "Claude Sonnet 3.7"),
    "claude-3-5-sonnet-20241022": ModelPricing(3.0, 15.0, "Claude 3.5 Sonnet"),
    "claude-haiku-4-5-20251001": ModelPricing(1.0, 5.0, "Claude Haiku 4.5"),
    "claude-3-5-haiku-20241022": ModelPricing(0.8, 4.0, "Claude 3.5 Haiku"),
    "claude-3-haiku-20240307": ModelPricing(0.25, 1.25, "Claude 3 Haiku"),
}

# Pricing lookup by canonical id (date suffix removed), e.g. "claude-opus-4-5".
_PRICING_BY_CANONICAL: dict[str, ModelPricing] = {
    canonical_model_name(model_id): pricing for model_id, pricing in PRICING.items()
}

DEFAULT_PRICING = ModelPricing(3.0, 15.0, "Unknown Model")

CONTEXT_WINDOWS: dict[str, int] = {
    **{model_id: 200_000 for model_id in PRICING},
    "claude-2.1": 200_000,
    "claude-2.0": 100_000,
    "claude-instant-1.2": 100_000,
}

DEFAULT_CONTEXT_WINDOW = 200_000
EXTENDED_CONTEXT_WINDOW = 1_000_000
AUTO_UPGRADE_THRESHOLD = 0.9

# Cache reads are billed at a tenth of the input rate.
CACHE_READ_PRICE_RATIO = 0.1

DEFAULT_AUTO_COMPACT_FACTOR = 0.92
AUTO_COMPACT_FACTORS: dict[str, float] = {
    **{model_id: DEFAULT_AUTO_COMPACT_FACTOR for model_id in CONTEXT_WINDOWS},
    **{f"{model_id}[1m]": DEFAULT_AUTO_COMPACT_FACTOR for model_id in PRICING},
}


def get_model_pricing(model: str) -> ModelPricing:
    if model in PRICING:
        return PRICING[model]
    return _PRICING_BY_CANONICAL.get(canonical_model_name(model), DEFAULT_PRICING)


def get_model_name(model: str) -> str:
    pricing = get_model_pricing(model)
    if pricing is not DEFAULT_PRICING:
        return pricing.name
    derived = derive_model_identity(model)
    if derived["modelProvider"] == "Claude" and derived["modelVersion"]:
        return derived["modelDisplayName"]
    return DEFAULT_PRICING.name


def get_base_context_window(model: str) -> int:
    base_window = CONTEXT_WINDOWS.get(model)
    if base_window is not None:
        return base_window
    canonical = canonical_model_name(model)
    return next(
        (window for model_id, window in CONTEXT_WINDOWS.items() if canonical_model_name(model_id) == canonical),
        DEFAULT_CONTEXT_WINDOW,
    )


def apply_window_upgrade(base_window: int, current_tokens: int | None) -> int:
    """Switch to the extended window once usage passes 90% of the baseline."""
    if (
        current_tokens is not None
        and base_window < EXTENDED_CONTEXT_WINDOW
        and current_tokens > base_window * AUTO_UPGRADE_THRESHOLD
    ):
        return EXTENDED_CONTEXT_WINDOW
    return base_window


def get_context_window(
    model: str,
    current_tokens: int | None = None,
    context_window_override: int | None = None,
) -> int:
    """Return the context window for ``model``; an explicit override wins."""
    if context_window_override is not None:
        return context_window_override
    return apply_window_upgrade(get_base_context_window(model), current_tokens)


def get_auto_compact_factor(model: str, default: float = DEFAULT_AUTO_COMPACT_FACTOR) -> float:
    return AUTO_COMPACT_FACTORS.get(model, default)


def _coerce_tokens(value: Any) -> int:
    try:
        return max(0, int(value or 0))
    except (TypeError, ValueError, OverflowError):
        return 0


def calculate_message_cost(model: str, usage: Mapping[str, Any] | None) -> float:
    """Cost in USD for one usage block."""
    if not usage:
        return 0.0

    pricing = get_model_pricing(model)
    input_tokens = _coerce_tokens(usage.get("input_tokens"))
    output_tokens = _coerce_tokens(usage.get("output_tokens"))
    cache_read = _coerce_tokens(usage.get("cache_read_input_tokens"))
    cache_creation = _coerce_tokens(usage.get("cache_creation_input_tokens"))

    effective_input = input_tokens + cache_creation + cache_read * CACHE_READ_PRICE_RATIO
    return (effective_input / 1_000_000) * pricing.input + (output_tokens / 1_000_000) * pricing.output
