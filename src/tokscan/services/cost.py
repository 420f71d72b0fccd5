"""Per-record cost estimation."""

from __future__ import annotations

from tokscan.models.pricing import PriceTable
from tokscan.models.records import UsageRecord


def record_cost(record: UsageRecord, prices: PriceTable) -> float | None:
    """Cost of one record in the base currency.

    A precomputed cost wins; otherwise each token class is multiplied by the
    model's per-token price. None when the model has no known price.
    """
    if record.cost is not None:
        return record.cost
    pricing = prices.lookup(record.model)
    if pricing is None:
        return None
    return (
        record.input_tokens * pricing.input
        + record.output_tokens * pricing.output
        + record.cache_write_tokens * pricing.cache_write
        + record.cache_read_tokens * pricing.cache_read
    )

