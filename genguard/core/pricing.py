"""
Unit prices for the external generation provider.

Prices are USD per 1 million units (tokens) for input and output.
"""

import structlog

logger = structlog.get_logger()

UNITS_PER_PRICE = 1_000_000

PRICING_TABLE: dict[str, dict[str, float]] = {
    "gpt-4o-mini": {"input": 0.15, "output": 0.6},
    "gpt-4o": {"input": 2.5, "output": 10.0},
    "gpt-4.1-mini": {"input": 0.4, "output": 1.6},
    "gpt-5.1": {"input": 1.25, "output": 10.0},
    "gpt-5.2": {"input": 1.75, "output": 14.0},
}


def estimate_cost(
    model: str,
    input_units: int,
    output_units: int,
    table: dict[str, dict[str, float]] | None = None,
) -> float:
    """
    Estimate the cost of one generation in USD.

    Unknown models cost 0 (and are logged) so accounting never blocks
    a request. Zero units always cost exactly 0.
    """
    prices = (table or PRICING_TABLE).get(model)
    if prices is None:
        logger.warning("unknown_model_pricing", model=model)
        return 0.0

    if input_units <= 0 and output_units <= 0:
        return 0.0

    input_cost = max(0, input_units) / UNITS_PER_PRICE * prices["input"]
    output_cost = max(0, output_units) / UNITS_PER_PRICE * prices["output"]
    return input_cost + output_cost
