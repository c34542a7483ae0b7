from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote, urlencode

from partflip.config import ScrapeSettings
from partflip.models import MODE_SOLD, SearchQuery

VARIANT_CATEGORY = "category"
VARIANT_GENERIC = "generic"

ROVER_URL = "https://rover.ebay.com/rover/1/711-53200-19255-0/1"


@dataclass(frozen=True, slots=True)
class SearchUrl:
    variant: str
    url: str


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(int(value), high))


def page_size_for(query: SearchQuery, settings: ScrapeSettings) -> int:
    return clamp(query.limit, settings.page_size_min, settings.page_size_max)


def pages_for(query: SearchQuery, settings: ScrapeSettings) -> int:
    size = page_size_for(query, settings)
    needed = -(-query.limit // size)
    return clamp(needed, 1, settings.max_pages)


def build_search_params(query: SearchQuery, settings: ScrapeSettings, *, page: int = 1) -> dict[str, Any]:
    params: dict[str, Any] = {
        "_nkw": query.keywords,
        "LH_ItemCondition": settings.used_condition_code,
    }
    if query.mode == MODE_SOLD:
        params["LH_Sold"] = "1"
        params["LH_Complete"] = "1"
        params["_sop"] = settings.sold_sort_code
    if query.junkyard:
        if query.price_min is not None:
            params["_udlo"] = _format_amount(query.price_min)
        if query.price_max is not None:
            params["_udhi"] = _format_amount(query.price_max)
    params["_ipg"] = page_size_for(query, settings)
    params["_pgn"] = max(1, int(page))
    return params


def build_search_urls(query: SearchQuery, settings: ScrapeSettings, *, page: int = 1) -> list[SearchUrl]:
    """Category-anchored URL first, generic search as the alternate."""
    encoded = urlencode(build_search_params(query, settings, page=page))
    root = settings.site_root
    return [
        SearchUrl(
            variant=VARIANT_CATEGORY,
            url=f"{root}/sch/{settings.parts_category_id}/i.html?{encoded}",
        ),
        SearchUrl(variant=VARIANT_GENERIC, url=f"{root}/sch/i.html?{encoded}"),
    ]


def build_search_url(
    query: SearchQuery,
    settings: ScrapeSettings,
    *,
    variant: str = VARIANT_CATEGORY,
    page: int = 1,
) -> str:
    for candidate in build_search_urls(query, settings, page=page):
        if candidate.variant == variant:
            return candidate.url
    raise ValueError(f"Unknown URL variant: {variant!r}")


def build_affiliate_url(target_url: str, campaign_id: Optional[str]) -> Optional[str]:
    if not campaign_id:
        return None
    return (
        f"{ROVER_URL}?campid={quote(campaign_id, safe='')}"
        f"&toolid=10001&mpre={quote(target_url, safe='')}"
    )


def _format_amount(value: float) -> str:
    return f"{value:g}"
