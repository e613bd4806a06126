from dataclasses import dataclass
from decimal import Decimal

_ONE_MILLION = Decimal(1_000_000)


@dataclass(frozen=True, slots=True)
class ModelPrice:
    """
    ModelPrice holds USD prices per one million tokens.
    """

    input_per_million: "Decimal"
    output_per_million: "Decimal"


DEFAULT_MODEL = "claude-sonnet-4-5"

# USD per 1M tokens
PRICES: "dict[str, ModelPrice]" = {
    "claude-opus-4-5": ModelPrice(Decimal("15.00"), Decimal("75.00")),
    "claude-sonnet-4-5": ModelPrice(Decimal("3.00"), Decimal("15.00")),
    "claude-haiku-4-5": ModelPrice(Decimal("0.80"), Decimal("4.00")),
    "claude-3-opus-20240229": ModelPrice(Decimal("15.00"), Decimal("75.00")),
    "claude-3-5-sonnet-20241022": ModelPrice(Decimal("3.00"), Decimal("15.00")),
    "claude-3-haiku-20240307": ModelPrice(Decimal("0.25"), Decimal("1.25")),
    "claude-3-5-haiku-20241022": ModelPrice(Decimal("0.80"), Decimal("4.00")),
}


def resolve_key(model: "str") -> "str":
    """
    returns the pricing table key used for the given model.

    An exact match wins. Otherwise every key that is a prefix of
    the model (dated snapshots such as "claude-sonnet-4-5-20250929")
    or that the model is a prefix of (aliases such as
    "claude-3-haiku") is a candidate and the longest one is used.
    Unknown models resolve to DEFAULT_MODEL so that pricing never
    blocks logging.
    """
    if model in PRICES:
        return model
    if not model:
        return DEFAULT_MODEL

    candidates = [k for k in PRICES if model.startswith(k) or k.startswith(model)]
    if not candidates:
        return DEFAULT_MODEL

    # max() keeps the first of equally long keys, so ties follow table order
    return max(candidates, key=len)


def resolve_price(model: "str") -> "ModelPrice":
    return PRICES[resolve_key(model)]


def compute_cost(model: "str", input_tokens: "int", output_tokens: "int") -> "Decimal":
    """
    computes the USD cost of a call. Decimal arithmetic keeps the
    result exact, so summing thousands of sub-cent amounts does
    not drift.
    """
    price = resolve_price(model)
    total = (
        Decimal(input_tokens) * price.input_per_million
        + Decimal(output_tokens) * price.output_per_million
    )
    return total / _ONE_MILLION
