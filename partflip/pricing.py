from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Optional

DEFAULT_CURRENCY = "$"

_THOUSANDS_RE = re.compile(r"(?<=\d),(?=\d)")
_PRICE_RE = re.compile(
    r"(?:\b(?P<code>[A-Z]{1,3})\s*)?(?P<symbol>[$£€])?\s*(?P<amount>\d+(?:\.\d+)?|\.\d+)"
)
_NUMBER_RE = re.compile(r"\d*\.\d+|\d+")


@dataclass(frozen=True, slots=True)
class ParsedPrice:
    amount: str
    currency: str

    @property
    def known(self) -> bool:
        return bool(self.amount)


UNKNOWN_PRICE = ParsedPrice(amount="", currency="")


def parse_price(text: Optional[str]) -> ParsedPrice:
    """Split free-text price into amount and currency marker.

    An empty amount means the price is unknown; it is never "0".
    """
    if not text:
        return UNKNOWN_PRICE
    cleaned = _THOUSANDS_RE.sub("", str(text).replace("\xa0", " "))
    match = _PRICE_RE.search(cleaned)
    if not match:
        return UNKNOWN_PRICE
    currency = match.group("code") or match.group("symbol") or DEFAULT_CURRENCY
    amount = match.group("amount")
    if amount.startswith("."):
        amount = "0" + amount
    return ParsedPrice(amount=amount, currency=currency)


def to_number(price_text: Optional[str]) -> Optional[float]:
    if price_text is None:
        return None
    text = _THOUSANDS_RE.sub("", str(price_text))
    match = _NUMBER_RE.search(text)
    if not match:
        return None
    try:
        return float(match.group(0))
    except ValueError:
        return None


def amount_from_value(value: Any) -> str:
    """Amount string for a structured (JSON) price value."""
    if value is None or isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        return f"{float(value):.2f}"
    return parse_price(str(value)).amount


def price_in_band(price_text: Optional[str], low: Optional[float], high: Optional[float]) -> bool:
    value = to_number(price_text) if price_text else None
    if value is None:
        return True
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True
