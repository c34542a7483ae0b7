from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from partflip.config import ScrapeSettings

MODE_SOLD = "sold"
MODE_ACTIVE = "active"
MODES = (MODE_SOLD, MODE_ACTIVE)

REASON_RATE_LIMITED = "rate_limited"
REASON_UPSTREAM_FAILED = "upstream_failed"
REASON_BOT_CHECK = "bot_check"
REASON_TIMEOUT = "timeout"
REASON_EXCEPTION = "exception"
REASON_EMPTY_PARSE = "empty_parse"

PLACEHOLDER_TITLES = frozenset({"new listing", "shop on ebay"})


@dataclass(frozen=True, slots=True)
class ListingRecord:
    title: str
    price: str
    link: str
    currency: Optional[str] = None
    image: Optional[str] = None
    sold_date: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "title": self.title,
            "price": self.price,
            "currency": self.currency,
            "image": self.image,
            "link": self.link,
        }
        if self.sold_date:
            payload["soldDate"] = self.sold_date
        return payload


@dataclass(frozen=True, slots=True)
class SearchQuery:
    year: str
    make: str
    model: str
    details: str = ""
    mode: str = MODE_SOLD
    junkyard: bool = False
    price_min: Optional[float] = None
    price_max: Optional[float] = None
    limit: int = 20

    @property
    def keywords(self) -> str:
        parts = (self.year, self.make, self.model, self.details)
        return " ".join(part.strip() for part in parts if part and part.strip())

    @classmethod
    def create(
        cls,
        year: Optional[str],
        make: Optional[str],
        model: Optional[str],
        details: Optional[str] = "",
        *,
        mode: Optional[str] = MODE_SOLD,
        junkyard: bool = False,
        limit: Optional[int] = None,
        settings: Optional[ScrapeSettings] = None,
    ) -> "SearchQuery":
        settings = settings or ScrapeSettings()
        year = (year or "").strip()
        make = (make or "").strip()
        model = (model or "").strip()
        if not year or not make or not model:
            raise ValueError("Year, make, and model are required.")
        mode = (mode or MODE_SOLD).strip().lower()
        if mode not in MODES:
            raise ValueError(f"Unsupported search mode: {mode!r}")
        if limit is None:
            limit = settings.default_limit
        limit = max(1, min(int(limit), settings.max_limit))
        price_min = settings.junkyard_min if junkyard else None
        price_max = settings.junkyard_max if junkyard else None
        return cls(
            year=year,
            make=make,
            model=model,
            details=(details or "").strip(),
            mode=mode,
            junkyard=junkyard,
            price_min=price_min,
            price_max=price_max,
            limit=limit,
        )


@dataclass(frozen=True, slots=True)
class PlanEntry:
    variant: str
    url: str
    agent_label: str
    user_agent: str

    @property
    def label(self) -> str:
        return f"{self.variant}/{self.agent_label}"


@dataclass(slots=True)
class FetchOutcome:
    pages: list[str] = field(default_factory=list)
    reason: Optional[str] = None
    upstream: list[str] = field(default_factory=list)
    last_tried: Optional[str] = None
    last_label: Optional[str] = None
    status: Optional[int] = None
    bytes: int = 0
    winning: Optional[PlanEntry] = None

    @property
    def ok(self) -> bool:
        return self.reason is None and bool(self.pages)

    @property
    def html(self) -> Optional[str]:
        return self.pages[0] if self.pages else None


@dataclass(slots=True)
class SearchResponse:
    items: list[ListingRecord]
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        meta = {key: value for key, value in self.meta.items() if value is not None}
        return {"items": [item.to_dict() for item in self.items], "meta": meta}
