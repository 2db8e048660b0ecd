"""Price-per-kilo statistics for a route.

Prices of one route over the last weeks are reduced to a per-kilo figure,
outliers outside the Tukey fences (1.5 IQR beyond the quartiles) are
dropped, and the rest is summarized.
"""

import statistics
from collections.abc import Sequence
from dataclasses import dataclass

from freight_ingest.domain.lifecycle_constants import PRICE_STATS_IQR_FACTOR


@dataclass(frozen=True)
class PriceSummary:
    average: float
    median: float
    max: float
    min: float
    count: int


def price_per_kilo(price: float, weight_tons: float) -> float:
    """Price of one kilogram, rounded to one decimal.

    Example:
        >>> price_per_kilo(3_000_000, 20)
        150.0
    """
    return round(price / (weight_tons * 1000), 1)


def quartile(ordered: Sequence[float], fraction: float) -> float:
    """Linear-interpolated quantile of an ascending, non-empty sequence."""
    position = (len(ordered) - 1) * fraction
    base = int(position)
    if base + 1 < len(ordered):
        return ordered[base] + (position - base) * (ordered[base + 1] - ordered[base])
    return ordered[base]


def remove_outliers(
    values: Sequence[float], factor: float = PRICE_STATS_IQR_FACTOR
) -> list[float]:
    """Values inside the quartile fences, ascending."""
    ordered = sorted(values)
    if not ordered:
        return []
    lower_quartile = quartile(ordered, 0.25)
    upper_quartile = quartile(ordered, 0.75)
    spread = upper_quartile - lower_quartile
    low = lower_quartile - factor * spread
    high = upper_quartile + factor * spread
    return [value for value in ordered if low <= value <= high]


def summarize_prices_per_kilo(
    samples: Sequence[tuple[float, float]],
    factor: float = PRICE_STATS_IQR_FACTOR,
) -> PriceSummary | None:
    """Summarize ``(price, weight_tons)`` samples; None when nothing survives."""
    kept = remove_outliers(
        [price_per_kilo(price, weight) for price, weight in samples], factor
    )
    if not kept:
        return None
    return PriceSummary(
        average=statistics.fmean(kept),
        median=statistics.median(kept),
        max=kept[-1],
        min=kept[0],
        count=len(kept),
    )
