from __future__ import annotations

import hashlib
from typing import Any, Optional

import requests

from partflip import get_logger
from partflip.config import ScrapeSettings
from partflip.extraction import canonical_link, clean_title
from partflip.models import MODE_SOLD, ListingRecord, SearchQuery
from partflip.pricing import amount_from_value

LOGGER = get_logger()

TOKEN_URL = "https://api.ebay.com/identity/v1/oauth2/token"
BROWSE_URL = "https://api.ebay.com/buy/browse/v1/item_summary/search"
INSIGHTS_URL = "https://api.ebay.com/buy/marketplace_insights/v1_beta/item_sales/search"

API_TIMEOUT = (5, 20)
API_PAGE_LIMIT = 200


class EbayApiError(RuntimeError):
    pass


def challenge_response(challenge_code: str, verification_token: str, endpoint: str) -> str:
    """SHA-256 hex of challenge, token and endpoint, in that order."""
    digest = hashlib.sha256()
    digest.update(challenge_code.encode("utf-8"))
    digest.update(verification_token.encode("utf-8"))
    digest.update(endpoint.encode("utf-8"))
    return digest.hexdigest()


class EbayApiProvider:
    def __init__(self, settings: ScrapeSettings, session: Optional[requests.Session] = None) -> None:
        self.settings = settings
        self._owns_session = session is None
        self.session = session or requests.Session()
        self._token: Optional[str] = None

    def close(self) -> None:
        if self._owns_session:
            self.session.close()

    def __enter__(self) -> "EbayApiProvider":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def enabled(self) -> bool:
        return self.settings.api_enabled and self.settings.api_credentials_present()

    def fetch_token(self) -> str:
        if self._token:
            return self._token
        if not self.settings.api_credentials_present():
            raise EbayApiError("eBay API credentials are not configured.")
        try:
            response = self.session.post(
                TOKEN_URL,
                auth=(self.settings.ebay_client_id or "", self.settings.ebay_client_secret or ""),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                data={"grant_type": "client_credentials", "scope": self.settings.api_scope},
                timeout=API_TIMEOUT,
            )
        except requests.RequestException as exc:
            raise EbayApiError(f"Token request failed: {exc}") from exc
        if response.status_code != 200:
            raise EbayApiError(f"Token request failed: HTTP {response.status_code}")
        try:
            token = response.json().get("access_token")
        except ValueError as exc:
            raise EbayApiError("Token response was not JSON.") from exc
        if not token:
            raise EbayApiError("Token response carried no access_token.")
        self._token = str(token)
        return self._token

    def search(self, query: SearchQuery) -> list[ListingRecord]:
        if query.mode == MODE_SOLD:
            return self.search_sold(query)
        return self.search_active(query)

    def search_active(self, query: SearchQuery) -> list[ListingRecord]:
        data = self._get(BROWSE_URL, self.build_params(query, sort="-endTime"))
        items = data.get("itemSummaries") or []
        return [record for record in (parse_browse_item(item) for item in items) if record]

    def search_sold(self, query: SearchQuery) -> list[ListingRecord]:
        data = self._get(INSIGHTS_URL, self.build_params(query))
        items = data.get("itemSales") or []
        return [record for record in (parse_sale_item(item) for item in items) if record]

    def build_params(self, query: SearchQuery, *, sort: Optional[str] = None) -> dict[str, Any]:
        filters = ["conditions:{USED}"]
        if query.junkyard and (query.price_min is not None or query.price_max is not None):
            low = "" if query.price_min is None else f"{query.price_min:g}"
            high = "" if query.price_max is None else f"{query.price_max:g}"
            filters.append(f"price:[{low}..{high}]")
            filters.append("priceCurrency:USD")
        params: dict[str, Any] = {
            "q": query.keywords,
            "category_ids": self.settings.parts_category_id,
            "filter": ",".join(filters),
            "limit": min(query.limit, API_PAGE_LIMIT),
        }
        if sort:
            params["sort"] = sort
        return params

    def _get(self, url: str, params: dict[str, Any]) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {self.fetch_token()}",
            "Content-Type": "application/json",
            "X-EBAY-C-MARKETPLACE-ID": self.settings.marketplace_id,
        }
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=API_TIMEOUT)
        except requests.RequestException as exc:
            raise EbayApiError(f"API request failed: {exc}") from exc
        if response.status_code != 200:
            raise EbayApiError(f"API request failed: HTTP {response.status_code}")
        try:
            data = response.json()
        except ValueError as exc:
            raise EbayApiError("API response was not JSON.") from exc
        if not isinstance(data, dict):
            raise EbayApiError("Unexpected API response shape.")
        LOGGER.info("API %s returned %s", url.rsplit("/", 2)[-2], data.get("total", "?"))
        return data


def _image_url(item: dict[str, Any]) -> Optional[str]:
    thumbnails = item.get("thumbnailImages")
    if isinstance(thumbnails, list) and thumbnails and isinstance(thumbnails[0], dict):
        if thumbnails[0].get("imageUrl"):
            return str(thumbnails[0]["imageUrl"])
    image = item.get("image")
    if isinstance(image, dict) and image.get("imageUrl"):
        return str(image["imageUrl"])
    return None


def _record(item: dict[str, Any], price: Any, sold_date: Optional[str]) -> Optional[ListingRecord]:
    title = clean_title(item.get("title"))
    link = canonical_link(item.get("itemWebUrl") or item.get("itemHref"))
    if not title or not link:
        return None
    amount = ""
    currency = None
    if isinstance(price, dict):
        amount = amount_from_value(price.get("value"))
        currency = price.get("currency")
        if not isinstance(currency, str) or not currency.strip():
            currency = None
    return ListingRecord(
        title=title,
        price=amount,
        currency=currency if amount else None,
        image=_image_url(item),
        link=link,
        sold_date=sold_date if isinstance(sold_date, str) and sold_date else None,
    )


def parse_browse_item(item: Any) -> Optional[ListingRecord]:
    if not isinstance(item, dict):
        return None
    return _record(item, item.get("price"), item.get("itemEndDate"))


def parse_sale_item(item: Any) -> Optional[ListingRecord]:
    if not isinstance(item, dict):
        return None
    return _record(item, item.get("lastSoldPrice") or item.get("price"), item.get("lastSoldDate"))
