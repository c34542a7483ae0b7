from __future__ import annotations

from dataclasses import replace
from typing import Iterable, Optional, Sequence

from partflip import get_logger
from partflip.extraction import dedupe_records, extract_sold_dates, run_cascade
from partflip.models import MODE_SOLD, ListingRecord, SearchQuery, SearchResponse
from partflip.pricing import price_in_band, to_number
from partflip.tiers import FIRE_MIN_PRICE, summarize

LOGGER = get_logger()


def filter_price_band(
    records: Iterable[ListingRecord],
    low: Optional[float],
    high: Optional[float],
) -> list[ListingRecord]:
    return [record for record in records if price_in_band(record.price, low, high)]


def attach_sold_dates(records: Iterable[ListingRecord], dates: dict[str, str]) -> list[ListingRecord]:
    enriched: list[ListingRecord] = []
    for record in records:
        sold_date = dates.get(record.link)
        if sold_date and not record.sold_date:
            record = replace(record, sold_date=sold_date)
        enriched.append(record)
    return enriched


def _price_key(record: ListingRecord) -> float:
    value = to_number(record.price) if record.price else None
    return value if value is not None else -1.0


def finalize_records(
    records: Iterable[ListingRecord],
    query: SearchQuery,
    *,
    fire_only: bool = False,
    sort_high: bool = False,
) -> list[ListingRecord]:
    """Dedup, band filter, optional fire filter and sort, then truncate."""
    items = dedupe_records(records)
    items = filter_price_band(items, query.price_min, query.price_max)
    if fire_only:
        items = [item for item in items if _price_key(item) >= FIRE_MIN_PRICE]
    if sort_high:
        items = sorted(items, key=_price_key, reverse=True)
    return items[: query.limit]


def assemble(
    pages: Sequence[str],
    query: SearchQuery,
    *,
    upstream: Optional[list[str]] = None,
    fire_only: bool = False,
    sort_high: bool = False,
) -> SearchResponse:
    collected: list[ListingRecord] = []
    strategies: list[str] = []
    for page in pages:
        result = run_cascade(page)
        if result.strategy and result.strategy not in strategies:
            strategies.append(result.strategy)
        records = result.records
        if query.mode == MODE_SOLD and records:
            records = attach_sold_dates(records, extract_sold_dates(page))
        collected.extend(records)

    items = finalize_records(collected, query, fire_only=fire_only, sort_high=sort_high)
    LOGGER.info(
        "Assembled %s of %s records from %s page(s) via %s",
        len(items),
        len(collected),
        len(pages),
        ",".join(strategies) or "none",
    )
    meta = {
        "count": len(items),
        "upstream": list(upstream or []),
        "strategy": ",".join(strategies) or None,
        "summary": summarize(items).to_dict(),
    }
    return SearchResponse(items=items, meta=meta)
