"""Pricing calculator.

Converts a model's provider cost into user-facing credits:

    credits = (base_cost x option_multipliers x quantity) x (1 + margin / 100) / credit_price

Chat models are priced per 1K tokens (input plus output) after the fact,
with an upper-bound estimate reserved before the stream opens.

All functions are pure and use Decimal arithmetic. Pricing settings are
passed in as an immutable snapshot; nothing here reads the database.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from omnigen.core.errors import ConfigurationError

__all__ = [
    "ConfigurationError",
    "PricingSettings",
    "calculate_chat_credits",
    "calculate_credits",
    "estimate_chat_reservation",
    "estimate_tokens",
    "option_multiplier",
]

_HUNDRED = Decimal(100)
_THOUSAND = Decimal(1000)
_ONE = Decimal(1)
_CREDIT_QUANTUM = Decimal("0.00000001")

# Rough prompt-size estimate used before a chat provider reports usage.
_CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class PricingSettings:
    """Immutable snapshot of the pricing settings.

    Margins are percentages. A per-type margin of zero means "use the
    universal margin".

    Attributes:
        profit_margin: Universal margin (%).
        profit_margin_image: Image override (%).
        profit_margin_video: Video override (%).
        profit_margin_chat: Chat override (%).
        credit_price: USD price of one credit. Must be positive.
        free_credits: Credits granted to new users.
    """

    profit_margin: Decimal = Decimal("0")
    profit_margin_image: Decimal = Decimal("0")
    profit_margin_video: Decimal = Decimal("0")
    profit_margin_chat: Decimal = Decimal("0")
    credit_price: Decimal = Decimal("1.00")
    free_credits: Decimal = Decimal("10")

    def effective_margin(self, generation_type: str) -> Decimal:
        """Margin (%) applied to a generation type."""
        override = {
            "image": self.profit_margin_image,
            "video": self.profit_margin_video,
            "chat": self.profit_margin_chat,
        }.get(generation_type, Decimal("0"))
        return override if override != 0 else self.profit_margin


def _quantize(value: Decimal) -> Decimal:
    return value.quantize(_CREDIT_QUANTUM, rounding=ROUND_HALF_UP)


def _check_credit_price(settings: PricingSettings) -> None:
    if settings.credit_price <= 0:
        raise ConfigurationError(
            f"creditPrice must be positive, got {settings.credit_price}"
        )


def option_multiplier(
    model_options: dict[str, Any] | None,
    selected: dict[str, Any] | None,
) -> Decimal:
    """Product of the price multipliers of the selected option choices.

    Values are compared as strings, so ``{"num_images": 2}`` matches the
    choice ``{"value": "2"}``. Options without a matching choice, or
    choices without ``priceMultiplier``, contribute 1.

    Args:
        model_options: The model's option schema.
        selected: Option values chosen for this request.

    Returns:
        Combined multiplier.
    """
    multiplier = _ONE
    if not model_options or not selected:
        return multiplier

    for key, value in selected.items():
        option_def = model_options.get(key)
        if not isinstance(option_def, dict):
            continue
        for choice in option_def.get("choices") or []:
            if not isinstance(choice, dict) or str(choice.get("value")) != str(value):
                continue
            price_multiplier = choice.get("priceMultiplier")
            if price_multiplier is not None:
                multiplier *= Decimal(str(price_multiplier))
            break
    return multiplier


def calculate_credits(
    base_cost: Decimal,
    generation_type: str,
    settings: PricingSettings,
    *,
    selected_options: dict[str, Any] | None = None,
    model_options: dict[str, Any] | None = None,
    quantity: int = 1,
) -> Decimal:
    """Credits charged for an image or video generation.

    Args:
        base_cost: Provider cost in USD per output.
        generation_type: image or video (selects the margin).
        settings: Pricing settings snapshot.
        selected_options: Options chosen for this request.
        model_options: The model's option schema.
        quantity: Number of outputs.

    Returns:
        Credits, rounded to 8 decimal places.

    Raises:
        ConfigurationError: If the credit price is not positive.
        ValueError: If quantity is below 1.
    """
    if quantity < 1:
        raise ValueError(f"quantity must be at least 1, got {quantity}")
    _check_credit_price(settings)

    cost = Decimal(str(base_cost)) * option_multiplier(model_options, selected_options)
    cost *= quantity
    margin = settings.effective_margin(generation_type)
    return _quantize(cost * (_ONE + margin / _HUNDRED) / settings.credit_price)


def calculate_chat_credits(
    base_cost_per_1k: Decimal,
    input_tokens: int,
    output_tokens: int,
    settings: PricingSettings,
) -> Decimal:
    """Credits charged for a chat completion from its token counts.

    Args:
        base_cost_per_1k: Provider cost in USD per 1K tokens.
        input_tokens: Prompt tokens.
        output_tokens: Completion tokens.
        settings: Pricing settings snapshot.

    Returns:
        Credits, rounded to 8 decimal places.

    Raises:
        ConfigurationError: If the credit price is not positive.
    """
    _check_credit_price(settings)
    tokens = max(input_tokens, 0) + max(output_tokens, 0)
    cost = Decimal(str(base_cost_per_1k)) * Decimal(tokens) / _THOUSAND
    margin = settings.effective_margin("chat")
    return _quantize(cost * (_ONE + margin / _HUNDRED) / settings.credit_price)


def estimate_tokens(text: str) -> int:
    """Approximate token count of a text (about four characters per token)."""
    if not text:
        return 0
    return -(-len(text) // _CHARS_PER_TOKEN)


def estimate_chat_reservation(
    base_cost_per_1k: Decimal,
    prompt_text: str,
    max_output_tokens: int,
    settings: PricingSettings,
) -> Decimal:
    """Upper-bound credits to reserve before a chat stream opens.

    Uses the estimated prompt tokens plus the model's full output budget,
    so the settled amount never exceeds the reservation in practice.
    """
    return calculate_chat_credits(
        base_cost_per_1k,
        estimate_tokens(prompt_text),
        max_output_tokens,
        settings,
    )
