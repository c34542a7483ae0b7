from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from partflip.models import ListingRecord
from partflip.pricing import to_number

TIER_TRASH = "trash"
TIER_THUMBS_UP = "thumbs_up"
TIER_CHECK = "check"
TIER_STAR = "star"
TIER_FIRE = "fire"
TIERS = (TIER_TRASH, TIER_THUMBS_UP, TIER_CHECK, TIER_STAR, TIER_FIRE)

FIRE_MIN_PRICE = 300.0


def flip_tier(price: float) -> str:
    if price < 15:
        return TIER_TRASH
    if price <= 75:
        return TIER_THUMBS_UP
    if price <= 150:
        return TIER_CHECK
    if price <= FIRE_MIN_PRICE:
        return TIER_STAR
    return TIER_FIRE


@dataclass(frozen=True, slots=True)
class PriceSummary:
    average_price: Optional[float]
    priced_count: int
    tiers: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "averagePrice": self.average_price,
            "pricedCount": self.priced_count,
            "tiers": dict(self.tiers),
        }


def summarize(records: Iterable[ListingRecord]) -> PriceSummary:
    """Average price and tier counts over records with a known price."""
    counts = {tier: 0 for tier in TIERS}
    prices: list[float] = []
    for record in records:
        value = to_number(record.price) if record.price else None
        if value is None:
            continue
        prices.append(value)
        counts[flip_tier(value)] += 1
    average = round(sum(prices) / len(prices), 2) if prices else None
    return PriceSummary(average_price=average, priced_count=len(prices), tiers=counts)


def _as_amount(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0.0
    return amount if math.isfinite(amount) else 0.0


def profit(purchase: Any, sold: Any, shipping: Any = 0, fees: Any = 0) -> float:
    """Net result of a flip. Unparsable inputs count as zero."""
    net = _as_amount(sold) - _as_amount(purchase) - _as_amount(shipping) - _as_amount(fees)
    return round(net, 2)
