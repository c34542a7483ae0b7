"""Listing extraction from eBay search result pages.

The page markup rotates between template generations, so extraction is a
cascade of independent strategies ordered from most precise to most
permissive:

1. ``selectors``      CSS selectors over the server-rendered result cards.
2. ``json_ld``        ``application/ld+json`` ``ItemList`` blocks.
3. ``bootstrap_json`` the embedded global state object, located by marker
                      and bounded by brace matching.
4. ``anchors``        a regex scan for item links with a nearby price.

The driver stops at the first strategy that yields records. Every strategy
is a pure ``html -> list[ListingRecord]`` function and can be called on its
own. Selector strings and JSON field names are expected to drift with the
site; they are kept together at the top of the module.
"""

from __future__ import annotations

import html as html_lib
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Iterator, Optional
from urllib.parse import urljoin, urlparse, urlunparse

from bs4 import BeautifulSoup

from partflip import get_logger
from partflip.models import PLACEHOLDER_TITLES, ListingRecord
from partflip.pricing import UNKNOWN_PRICE, ParsedPrice, amount_from_value, parse_price

LOGGER = get_logger()

BASE_URL = "https://www.ebay.com/"

CONTAINER_SELECTORS = (
    ".s-item",
    "li.s-card, div.s-card",
    "ul.srp-results > li, ul.srp-list > li",
    "li[data-listingid], div[data-listingid]",
)
TITLE_SELECTORS = (
    ".s-item__title",
    ".s-card__title",
    "[role='heading']",
    "h3",
)
PRICE_SELECTORS = (
    ".s-item__price",
    ".s-card__price",
    ".s-item__detail--primary",
    "[class*='price']",
)
LINK_SELECTORS = (
    "a.s-item__link",
    "a.su-link",
    "a[href*='/itm/']",
    "a[href]",
)
IMAGE_SELECTORS = (
    "img.s-item__image-img",
    ".s-card__image img",
    "img.s-card__image",
    "img",
)
CAPTION_SELECTORS = (
    ".s-item__caption",
    ".s-card__caption",
    ".s-item__title--tag",
    ".s-item__subtitle",
    ".s-card__subtitle",
    ".s-item__ended-date",
)
IMAGE_ATTRS = ("src", "data-src", "data-defer-load")

BOOTSTRAP_MARKERS = (
    "__INITIAL_STATE__",
    "__PRELOADED_STATE__",
    "__APOLLO_STATE__",
    "__NEXT_DATA__",
)
STATE_TITLE_KEYS = ("title", "itemTitle")
STATE_URL_KEYS = ("url", "itemWebUrl", "itemUrl", "viewItemUrl")
STATE_IMAGE_KEYS = ("image", "imageUrl", "thumbnailUrl", "thumbnailImages")
STATE_CURRENCY_KEYS = ("currency", "currencyCode", "priceCurrency")

ANCHOR_PRICE_WINDOW = 1500

_REJECT_CONTAINER_RE = re.compile(r"\bsponsored\b|shop on ebay|explore related", re.IGNORECASE)
_NEW_LISTING_PREFIX_RE = re.compile(r"^new listing\s*", re.IGNORECASE)
_OPENS_WINDOW_SUFFIX_RE = re.compile(r"\s*opens in a new window or tab\s*$", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")
_TAG_RE = re.compile(r"<[^>]+>")
_ITEM_PATH_RE = re.compile(r"/itm/(?:[^/?#]+/)?(\d{6,})")
_ANCHOR_RE = re.compile(
    r"<a\b(?P<before>[^>]*?)\bhref\s*=\s*(?P<quote>[\"'])(?P<href>[^\"']*/itm/[^\"']*)(?P=quote)"
    r"(?P<after>[^>]*)>(?P<body>.*?)</a\s*>",
    re.IGNORECASE | re.DOTALL,
)
_ANCHOR_LABEL_RE = re.compile(r"\b(?:title|aria-label)\s*=\s*([\"'])(?P<label>.*?)\1", re.IGNORECASE)
_CURRENCY_TOKEN_RE = re.compile(
    r"(?:\b[A-Z]{1,3}\s?)?[$£€]\s?\d[\d,]*(?:\.\d+)?"
    r"|\b(?:USD|GBP|EUR|CAD|AUD)\s?\d[\d,]*(?:\.\d+)?"
)
_JSON_LD_SPLIT_RE = re.compile(r"}\s*{")
_DATE_PATTERN = (
    r"[A-Z][a-z]{2,8}\.?\s+\d{1,2},?\s+\d{4}"
    r"|\d{1,2}\s+[A-Z][a-z]{2,8}\.?\s+\d{4}"
    r"|\d{1,2}/\d{1,2}/\d{2,4}"
)
_SOLD_DATE_RE = re.compile(rf"\bSold\s+(?:on\s+)?(?P<date>{_DATE_PATTERN})")
_ENDED_DATE_RE = re.compile(rf"\bEnded:?\s*(?P<date>{_DATE_PATTERN})")

Strategy = Callable[[str], list[ListingRecord]]


@dataclass(frozen=True, slots=True)
class CascadeResult:
    records: list[ListingRecord]
    strategy: Optional[str]


@dataclass(frozen=True, slots=True)
class PriceMatch:
    shape: str
    price: ParsedPrice


def extract(html: str) -> list[ListingRecord]:
    return run_cascade(html).records


def run_cascade(html: str, strategies: Optional[Iterable[tuple[str, Strategy]]] = None) -> CascadeResult:
    if not html or not isinstance(html, str):
        return CascadeResult(records=[], strategy=None)
    for name, strategy in strategies or STRATEGIES:
        try:
            records = dedupe_records(strategy(html))
        except Exception as exc:
            LOGGER.warning("Extraction strategy %s failed: %s", name, exc)
            continue
        if records:
            return CascadeResult(records=records, strategy=name)
    return CascadeResult(records=[], strategy=None)


def dedupe_records(records: Iterable[ListingRecord]) -> list[ListingRecord]:
    seen: set[str] = set()
    unique: list[ListingRecord] = []
    for record in records:
        if record.link in seen:
            continue
        seen.add(record.link)
        unique.append(record)
    return unique


def canonical_link(href: Optional[str], base: str = BASE_URL) -> Optional[str]:
    if not href:
        return None
    value = html_lib.unescape(str(href)).strip()
    if not value or value.startswith("#"):
        return None
    parsed = urlparse(urljoin(base, value))
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return None
    if parsed.username or parsed.password:
        return None
    netloc = parsed.netloc.lower()
    match = _ITEM_PATH_RE.search(parsed.path)
    if match:
        return f"{parsed.scheme}://{netloc}/itm/{match.group(1)}"
    return urlunparse((parsed.scheme, netloc, parsed.path, "", "", ""))


def clean_title(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    title = _WHITESPACE_RE.sub(" ", html_lib.unescape(str(text))).strip()
    title = _NEW_LISTING_PREFIX_RE.sub("", title)
    title = _OPENS_WINDOW_SUFFIX_RE.sub("", title).strip()
    if not title or title.lower() in PLACEHOLDER_TITLES:
        return None
    return title


def parse_sold_date(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    flattened = _WHITESPACE_RE.sub(" ", text)
    for pattern in (_SOLD_DATE_RE, _ENDED_DATE_RE):
        match = pattern.search(flattened)
        if match:
            return match.group("date").strip()
    return None


def extract_sold_dates(html: str) -> dict[str, str]:
    """Map canonical listing link to the sold/ended date shown in its caption."""
    if not html:
        return {}
    try:
        soup = _soup(html)
        dates: dict[str, str] = {}
        for selector in CONTAINER_SELECTORS:
            for container in soup.select(selector):
                link = canonical_link(_first_attr(container, LINK_SELECTORS, ("href",)))
                if not link or link in dates:
                    continue
                captions = [
                    node.get_text(" ", strip=True)
                    for caption_selector in CAPTION_SELECTORS
                    for node in container.select(caption_selector)
                ]
                sold_date = parse_sold_date(" ".join(captions)) or parse_sold_date(
                    container.get_text(" ", strip=True)
                )
                if sold_date:
                    dates[link] = sold_date
        return dates
    except Exception as exc:
        LOGGER.warning("Sold date scan failed: %s", exc)
        return {}


# Strategy 1: structural selectors


def parse_selector_listings(html: str) -> list[ListingRecord]:
    soup = _soup(html)
    for selector in CONTAINER_SELECTORS:
        containers = soup.select(selector)
        if not containers:
            continue
        records = [record for record in map(_record_from_container, containers) if record]
        if records:
            return records
    return []


def _record_from_container(container: Any) -> Optional[ListingRecord]:
    if _REJECT_CONTAINER_RE.search(container.get_text(" ", strip=True)):
        return None
    title = _first_text(container, TITLE_SELECTORS)
    link = _first_attr(container, LINK_SELECTORS, ("href",))
    image = _first_attr(container, IMAGE_SELECTORS, IMAGE_ATTRS, skip_placeholders=True)
    price = parse_price(_first_text(container, PRICE_SELECTORS))
    return _make_record(title, price, link, image)


def _first_text(container: Any, selectors: Iterable[str]) -> Optional[str]:
    for selector in selectors:
        for el in container.select(selector):
            text = el.get_text(" ", strip=True)
            if text:
                return text
    return None


def _first_attr(
    container: Any,
    selectors: Iterable[str],
    attrs: Iterable[str],
    *,
    skip_placeholders: bool = False,
) -> Optional[str]:
    for selector in selectors:
        for el in container.select(selector):
            for attr in attrs:
                value = el.get(attr)
                if not isinstance(value, str) or not value.strip():
                    continue
                if skip_placeholders and _is_placeholder_image(value):
                    continue
                return value.strip()
    return None


def _is_placeholder_image(value: str) -> bool:
    lowered = value.lower()
    return lowered.startswith("data:") or lowered.endswith(".gif")


# Strategy 2: JSON-LD ItemList


def parse_json_ld_listings(html: str) -> list[ListingRecord]:
    soup = _soup(html)
    records: list[ListingRecord] = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        payload = script.string or script.get_text()
        for document in load_json_ld_documents(payload):
            for item_list in _iter_item_lists(document):
                for element in _as_list(item_list.get("itemListElement")):
                    record = _record_from_ld_element(element)
                    if record:
                        records.append(record)
    return records


def load_json_ld_documents(payload: Optional[str]) -> list[Any]:
    """Parse a JSON-LD script body that may hold several objects back to back."""
    if not payload or not payload.strip():
        return []
    text = payload.strip()
    try:
        return [json.loads(text)]
    except json.JSONDecodeError:
        pass
    chunks = _JSON_LD_SPLIT_RE.split(text)
    documents: list[Any] = []
    for idx, chunk in enumerate(chunks):
        if idx > 0:
            chunk = "{" + chunk
        if idx < len(chunks) - 1:
            chunk = chunk + "}"
        try:
            documents.append(json.loads(chunk))
        except json.JSONDecodeError:
            continue
    return documents


def _iter_item_lists(data: Any) -> Iterator[dict[str, Any]]:
    for node in iter_json_nodes(data):
        node_type = node.get("@type")
        types = node_type if isinstance(node_type, list) else [node_type]
        if "ItemList" in types:
            yield node


def _record_from_ld_element(element: Any) -> Optional[ListingRecord]:
    if not isinstance(element, dict):
        return None
    item = element.get("item") if isinstance(element.get("item"), dict) else element
    title = item.get("name") or element.get("name")
    url = item.get("url") or element.get("url")
    image = _json_image(item.get("image")) or _json_image(element.get("image"))
    return _make_record(
        title if isinstance(title, str) else None,
        _ld_price(item),
        url if isinstance(url, str) else None,
        image,
    )


def _ld_price(item: dict[str, Any]) -> ParsedPrice:
    price = item.get("price")
    if isinstance(price, dict):
        amount = amount_from_value(price.get("value"))
        currency = price.get("currency") or price.get("priceCurrency")
        return _priced(amount, currency)
    if price is not None:
        return _priced(amount_from_value(price), item.get("priceCurrency"), raw=price)
    offers = item.get("offers")
    if isinstance(offers, list):
        offers = offers[0] if offers else None
    if isinstance(offers, dict):
        value = offers.get("price", offers.get("lowPrice"))
        if isinstance(value, dict):
            value = value.get("value")
        return _priced(amount_from_value(value), offers.get("priceCurrency"), raw=value)
    return ParsedPrice(amount="", currency="")


# Strategy 3: embedded bootstrap JSON


def parse_bootstrap_listings(html: str) -> list[ListingRecord]:
    records: list[ListingRecord] = []
    for marker in BOOTSTRAP_MARKERS:
        state = extract_marked_json(html, marker)
        if state is None:
            continue
        for node in iter_json_nodes(state):
            record = _record_from_state_node(node)
            if record:
                records.append(record)
    return records


def extract_marked_json(text: str, marker: str) -> Any:
    marker_index = text.find(marker)
    if marker_index == -1:
        return None
    brace_start = text.find("{", marker_index + len(marker))
    if brace_start == -1:
        return None
    payload = find_balanced_object(text, brace_start)
    if payload is None:
        return None
    try:
        return json.loads(payload)
    except json.JSONDecodeError:
        return None


def find_balanced_object(text: str, start: int) -> Optional[str]:
    """Return the ``{...}`` block opening at ``start``, honouring JSON strings."""
    if start < 0 or start >= len(text) or text[start] != "{":
        return None
    depth = 0
    in_string = False
    escape = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]
    return None


def iter_json_nodes(data: Any) -> Iterator[dict[str, Any]]:
    """Depth-first, document-order walk over every object in a JSON value."""
    stack: list[Any] = [data]
    while stack:
        node = stack.pop()
        if isinstance(node, dict):
            yield node
            children = [value for value in node.values() if isinstance(value, (dict, list))]
        elif isinstance(node, list):
            children = [value for value in node if isinstance(value, (dict, list))]
        else:
            continue
        stack.extend(reversed(children))


def _flat_price(node: dict[str, Any]) -> Optional[ParsedPrice]:
    value = node.get("price")
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return None
    amount = amount_from_value(value)
    if not amount:
        return None
    return _priced(amount, _state_text(node, STATE_CURRENCY_KEYS), raw=value)


def _value_currency_price(node: dict[str, Any]) -> Optional[ParsedPrice]:
    value = node.get("price")
    if not isinstance(value, dict) or "value" not in value:
        return None
    amount = amount_from_value(value.get("value"))
    if not amount:
        return None
    return _priced(amount, value.get("currency") or value.get("currencyCode"))


def _marketing_price(node: dict[str, Any]) -> Optional[ParsedPrice]:
    marketing = node.get("marketingPrice")
    if not isinstance(marketing, dict):
        return None
    return _value_currency_price(marketing) or _flat_price(marketing)


PRICE_SHAPES: tuple[tuple[str, Callable[[dict[str, Any]], Optional[ParsedPrice]]], ...] = (
    ("flat", _flat_price),
    ("value_currency", _value_currency_price),
    ("marketing_price", _marketing_price),
)


def match_price_shape(node: dict[str, Any]) -> Optional[PriceMatch]:
    for shape, checker in PRICE_SHAPES:
        price = checker(node)
        if price is not None:
            return PriceMatch(shape=shape, price=price)
    return None


def _record_from_state_node(node: dict[str, Any]) -> Optional[ListingRecord]:
    title = _state_text(node, STATE_TITLE_KEYS)
    url = _state_text(node, STATE_URL_KEYS)
    if not title or not url:
        return None
    matched = match_price_shape(node)
    if matched is None:
        return None
    image = None
    for key in STATE_IMAGE_KEYS:
        image = _json_image(node.get(key))
        if image:
            break
    return _make_record(title, matched.price, url, image)


def _state_text(node: dict[str, Any], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = node.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
        if isinstance(value, dict):
            for sub_key in ("text", "value", "url", "href"):
                sub_value = value.get(sub_key)
                if isinstance(sub_value, str) and sub_value.strip():
                    return sub_value.strip()
            spans = value.get("textSpans")
            if isinstance(spans, list):
                joined = "".join(
                    span.get("text", "") for span in spans if isinstance(span, dict)
                ).strip()
                if joined:
                    return joined
    return None


# Strategy 4: loose anchor scan


def parse_anchor_listings(html: str, window: int = ANCHOR_PRICE_WINDOW) -> list[ListingRecord]:
    records: list[ListingRecord] = []
    for match in _ANCHOR_RE.finditer(html):
        href = match.group("href")
        if not _ITEM_PATH_RE.search(href):
            continue
        title = _strip_tags(match.group("body"))
        if not _looks_like_title(title):
            label = _ANCHOR_LABEL_RE.search(match.group("before") + " " + match.group("after"))
            title = _strip_tags(label.group("label")) if label else ""
        if not _looks_like_title(title):
            continue
        price_text = _nearby_price(html, match.start(), match.end(), window)
        record = _make_record(title, parse_price(price_text), href, None)
        if record:
            records.append(record)
    return records


def _nearby_price(html: str, start: int, end: int, window: int) -> Optional[str]:
    after = _strip_tags(html[end : end + window])
    match = _CURRENCY_TOKEN_RE.search(after)
    if match:
        return match.group(0)
    before = _strip_tags(html[max(0, start - window) : start])
    matches = _CURRENCY_TOKEN_RE.findall(before)
    return matches[-1] if matches else None


def _strip_tags(fragment: str) -> str:
    return _WHITESPACE_RE.sub(" ", html_lib.unescape(_TAG_RE.sub(" ", fragment))).strip()


def _looks_like_title(text: str) -> bool:
    return len(text) >= 3 and any(char.isalpha() for char in text)


# Shared helpers


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "lxml")


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if value is None:
        return []
    return [value]


def _json_image(value: Any) -> Optional[str]:
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, dict):
        value = value.get("url") or value.get("imageUrl") or value.get("contentUrl")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _priced(amount: str, currency: Any, raw: Any = None) -> ParsedPrice:
    if not amount:
        return UNKNOWN_PRICE
    if not isinstance(currency, str) or not currency.strip():
        currency = parse_price(raw).currency if isinstance(raw, str) else ""
    return ParsedPrice(amount=amount, currency=(currency or "").strip() or "$")


def _make_record(
    title: Optional[str],
    price: ParsedPrice,
    link: Optional[str],
    image: Optional[str],
) -> Optional[ListingRecord]:
    title = clean_title(title)
    link = canonical_link(link)
    if not title or not link:
        return None
    image_url = None
    if image and not _is_placeholder_image(image):
        image_url = urljoin(BASE_URL, html_lib.unescape(image))
    return ListingRecord(
        title=title,
        price=price.amount,
        link=link,
        currency=price.currency if price.known else None,
        image=image_url,
    )


STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("selectors", parse_selector_listings),
    ("json_ld", parse_json_ld_listings),
    ("bootstrap_json", parse_bootstrap_listings),
    ("anchors", parse_anchor_listings),
)
