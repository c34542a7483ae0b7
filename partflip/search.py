"""Inbound entry points.

``search`` and ``debug_search`` never raise: every failure is reported as an
empty item list plus a ``reason`` in the metadata.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Optional

from partflip import get_logger
from partflip.assembler import assemble, finalize_records
from partflip.config import ScrapeSettings
from partflip.ebay_api import EbayApiError, EbayApiProvider
from partflip.fetcher import FetchOrchestrator
from partflip.models import (
    MODE_ACTIVE,
    MODE_SOLD,
    REASON_EXCEPTION,
    SearchQuery,
    SearchResponse,
)
from partflip.query_builder import build_affiliate_url, build_search_url
from partflip.tiers import summarize

LOGGER = get_logger()

SOURCE_SCRAPE = "scrape"
SOURCE_API = "api"


def _links(query: SearchQuery, settings: ScrapeSettings) -> dict[str, Any]:
    active = replace(query, mode=MODE_ACTIVE)
    return {
        "searchUrl": build_search_url(query, settings),
        "affiliateUrl": build_affiliate_url(build_search_url(active, settings), settings.campaign_id),
    }


def _failure(reason: str, mode: Optional[str], detail: Optional[str] = None, **meta: Any) -> SearchResponse:
    payload: dict[str, Any] = {"count": 0, "reason": reason, "detail": detail, "mode": mode}
    payload.update(meta)
    return SearchResponse(items=[], meta=payload)


def _search_api(
    provider: EbayApiProvider,
    query: SearchQuery,
    *,
    fire_only: bool,
    sort_high: bool,
) -> Optional[SearchResponse]:
    try:
        records = provider.search(query)
    except EbayApiError as exc:
        LOGGER.warning("API search failed, falling back to HTML: %s", exc)
        return None
    except (KeyError, TypeError, ValueError) as exc:
        LOGGER.warning("API response could not be mapped, falling back to HTML: %r", exc)
        return None
    items = finalize_records(records, query, fire_only=fire_only, sort_high=sort_high)
    if not items:
        LOGGER.info("API search returned no usable items, falling back to HTML")
        return None
    meta = {"count": len(items), "source": SOURCE_API, "summary": summarize(items).to_dict()}
    return SearchResponse(items=items, meta=meta)


def search(
    year: Optional[str],
    make: Optional[str],
    model: Optional[str],
    details: Optional[str] = "",
    mode: Optional[str] = MODE_SOLD,
    junkyard: bool = False,
    limit: Any = None,
    *,
    fire_only: bool = False,
    sort_high: bool = False,
    settings: Optional[ScrapeSettings] = None,
    orchestrator: Optional[FetchOrchestrator] = None,
    api_provider: Optional[EbayApiProvider] = None,
) -> SearchResponse:
    settings = settings or ScrapeSettings.from_env()
    try:
        query = SearchQuery.create(
            year, make, model, details, mode=mode, junkyard=junkyard, limit=limit, settings=settings
        )
    except (TypeError, ValueError) as exc:
        return _failure(REASON_EXCEPTION, mode, detail=str(exc))

    links = _links(query, settings)
    provider = api_provider
    if provider is None and settings.api_enabled:
        provider = EbayApiProvider(settings)
    try:
        if provider is not None and provider.enabled():
            response = _search_api(provider, query, fire_only=fire_only, sort_high=sort_high)
            if response is not None:
                response.meta.update(links, mode=query.mode)
                return response

        orchestrator = orchestrator or FetchOrchestrator(settings)
        outcome = orchestrator.fetch(query)
        if not outcome.ok:
            LOGGER.warning("Search for %r failed: %s", query.keywords, outcome.reason)
            return _failure(
                outcome.reason or REASON_EXCEPTION,
                query.mode,
                upstream=outcome.upstream,
                lastTried=outcome.last_tried,
                lastTriedEntry=outcome.last_label,
                source=SOURCE_SCRAPE,
                **links,
            )
        response = assemble(
            outcome.pages,
            query,
            upstream=outcome.upstream,
            fire_only=fire_only,
            sort_high=sort_high,
        )
        response.meta.update(
            links,
            lastTried=outcome.last_tried,
            lastTriedEntry=outcome.last_label,
            planEntry=outcome.winning.label if outcome.winning else None,
            source=SOURCE_SCRAPE,
            mode=query.mode,
        )
        return response
    except Exception as exc:
        LOGGER.exception("Unexpected search failure for %r", query.keywords)
        return _failure(REASON_EXCEPTION, query.mode, detail=str(exc), **links)
    finally:
        if provider is not None and api_provider is None:
            provider.close()


def debug_search(
    year: Optional[str],
    make: Optional[str],
    model: Optional[str],
    details: Optional[str] = "",
    mode: Optional[str] = MODE_SOLD,
    junkyard: bool = False,
    limit: Any = None,
    *,
    settings: Optional[ScrapeSettings] = None,
    orchestrator: Optional[FetchOrchestrator] = None,
) -> dict[str, Any]:
    """Upstream URL, status and byte count of the deciding attempt, no items."""
    settings = settings or ScrapeSettings.from_env()
    report: dict[str, Any] = {
        "upstreamUrl": None,
        "planEntry": None,
        "status": None,
        "bytes": 0,
        "count": 0,
        "reason": None,
    }
    try:
        query = SearchQuery.create(
            year, make, model, details, mode=mode, junkyard=junkyard, limit=limit, settings=settings
        )
    except (TypeError, ValueError) as exc:
        report.update(reason=REASON_EXCEPTION, detail=str(exc))
        return report
    try:
        orchestrator = orchestrator or FetchOrchestrator(settings)
        outcome = orchestrator.fetch(query)
        count = sum(len(orchestrator.extractor(page)) for page in outcome.pages)
        report.update(
            upstreamUrl=outcome.last_tried,
            planEntry=outcome.last_label,
            status=outcome.status,
            bytes=outcome.bytes,
            count=count,
            reason=outcome.reason,
        )
    except Exception as exc:
        LOGGER.exception("Unexpected debug search failure for %r", query.keywords)
        report.update(reason=REASON_EXCEPTION, detail=str(exc))
    return report
