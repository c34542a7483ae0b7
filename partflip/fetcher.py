from __future__ import annotations

import random
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

import requests

from partflip import get_logger
from partflip.config import MIN_ATTEMPT_WINDOW_S, ScrapeSettings
from partflip.extraction import extract
from partflip.models import (
    REASON_BOT_CHECK,
    REASON_EMPTY_PARSE,
    REASON_RATE_LIMITED,
    REASON_TIMEOUT,
    REASON_UPSTREAM_FAILED,
    FetchOutcome,
    ListingRecord,
    PlanEntry,
    SearchQuery,
)
from partflip.query_builder import build_search_url, build_search_urls, pages_for

LOGGER = get_logger()

RATE_LIMIT_STATUSES = frozenset({403, 429})

_OK = "ok"
_RETRYABLE = "retryable"

Extractor = Callable[[str], list[ListingRecord]]


@dataclass(slots=True)
class AttemptResult:
    kind: str
    status: Optional[int] = None
    text: str = ""
    url: Optional[str] = None
    error: Optional[str] = None

    @property
    def bytes(self) -> int:
        return len(self.text.encode("utf-8")) if self.text else 0


def compile_bot_patterns(patterns: Iterable[str]) -> list[re.Pattern[str]]:
    return [re.compile(pattern, re.IGNORECASE) for pattern in patterns]


def is_challenge_url(url: Optional[str]) -> bool:
    if not url:
        return False
    lowered = url.lower()
    return "/splashui/challenge" in lowered or ("splashui" in lowered and "challenge" in lowered)


def detect_bot_check(
    text: str,
    url: Optional[str] = None,
    patterns: Optional[list[re.Pattern[str]]] = None,
) -> bool:
    if is_challenge_url(url):
        return True
    if not text:
        return False
    if patterns is None:
        patterns = compile_bot_patterns(ScrapeSettings().bot_check_patterns)
    return any(pattern.search(text) for pattern in patterns)


def backoff_delay(index: int, settings: ScrapeSettings, rng: random.Random) -> float:
    if index <= 0:
        return 0.0
    delay = settings.backoff_base_s * index + rng.uniform(0.0, settings.backoff_jitter_s)
    return min(settings.backoff_max_s, delay)


def _default_headers(user_agent: str, referer: str) -> dict[str, str]:
    return {
        "User-Agent": user_agent,
        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Upgrade-Insecure-Requests": "1",
        "Sec-Fetch-Dest": "document",
        "Sec-Fetch-Mode": "navigate",
        "Sec-Fetch-Site": "same-origin",
        "Referer": referer,
    }


class FetchOrchestrator:
    """Walks an ordered (URL variant x user agent) plan until a page parses.

    Attempts run strictly in sequence. A bot check or a 403/429 stops the plan;
    empty parses and network failures advance to the next entry after a
    jittered pause. Additional result pages for the winning entry are fetched
    concurrently once the first page is known good.
    """

    def __init__(
        self,
        settings: Optional[ScrapeSettings] = None,
        *,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        extractor: Extractor = extract,
    ) -> None:
        self.settings = settings or ScrapeSettings()
        self.session = session
        self.sleep = sleep
        self.clock = clock
        self.rng = rng or random.Random()
        self.extractor = extractor
        self._bot_patterns = compile_bot_patterns(self.settings.bot_check_patterns)

    def build_plan(self, query: SearchQuery, page: int = 1) -> list[PlanEntry]:
        urls = build_search_urls(query, self.settings, page=page)
        plan: list[PlanEntry] = []
        for agent_label, user_agent in self.settings.user_agents:
            for candidate in urls:
                plan.append(
                    PlanEntry(
                        variant=candidate.variant,
                        url=candidate.url,
                        agent_label=agent_label,
                        user_agent=user_agent,
                    )
                )
        return plan

    def fetch(self, query: SearchQuery) -> FetchOutcome:
        owns_session = self.session is None
        session = self.session or requests.Session()
        try:
            return self._run_plan(session, query)
        finally:
            if owns_session:
                session.close()

    def _run_plan(self, session: requests.Session, query: SearchQuery) -> FetchOutcome:
        deadline = self.clock() + self.settings.request_budget_s
        outcome = FetchOutcome()
        saw_empty = False
        last_failure: Optional[str] = None

        for index, entry in enumerate(self.build_plan(query)):
            if index:
                pause = backoff_delay(index, self.settings, self.rng)
                pause = min(pause, max(0.0, self._remaining(deadline) - MIN_ATTEMPT_WINDOW_S))
                if pause > 0:
                    self.sleep(pause)
            if self._remaining(deadline) < MIN_ATTEMPT_WINDOW_S:
                LOGGER.warning("Request budget exhausted after %s attempts", index)
                outcome.reason = REASON_TIMEOUT
                return outcome

            outcome.upstream.append(entry.url)
            outcome.last_tried = entry.url
            outcome.last_label = entry.label
            LOGGER.info("Fetch attempt %s (%s): %s", index + 1, entry.label, entry.url)
            result = self._attempt(session, entry, deadline)
            outcome.status = result.status
            outcome.bytes = result.bytes
            LOGGER.info(
                "Attempt %s (%s) -> %s status=%s bytes=%s", index + 1, entry.label, result.kind, result.status, result.bytes
            )

            if result.kind == REASON_RATE_LIMITED:
                LOGGER.warning("Rate limited (HTTP %s) on %s", result.status, entry.label)
                outcome.reason = REASON_RATE_LIMITED
                return outcome
            if result.kind != _OK:
                LOGGER.info("Attempt %s failed: %s %s", entry.label, result.kind, result.error or "")
                last_failure = result.kind
                continue
            if detect_bot_check(result.text, result.url, self._bot_patterns):
                LOGGER.warning("Bot check detected on %s; abandoning plan", entry.label)
                outcome.reason = REASON_BOT_CHECK
                return outcome
            if not self.extractor(result.text):
                LOGGER.info("Empty parse on %s", entry.label)
                saw_empty = True
                continue

            outcome.pages = [result.text]
            outcome.winning = entry
            outcome.reason = None
            outcome.pages.extend(self._fetch_more_pages(session, query, entry, deadline))
            return outcome

        outcome.reason = REASON_EMPTY_PARSE if saw_empty else (last_failure or REASON_UPSTREAM_FAILED)
        return outcome

    def _attempt(self, session: requests.Session, entry: PlanEntry, deadline: float) -> AttemptResult:
        result = AttemptResult(kind=REASON_UPSTREAM_FAILED)
        # One retry of the identical request for non-2xx responses.
        for _ in range(2):
            result = self._get(session, entry.url, entry.user_agent, deadline)
            if result.kind != _RETRYABLE:
                return result
        result.kind = REASON_UPSTREAM_FAILED
        return result

    def _get(self, session: requests.Session, url: str, user_agent: str, deadline: float) -> AttemptResult:
        read_timeout = min(self.settings.attempt_timeout_s, self._remaining(deadline))
        if read_timeout < MIN_ATTEMPT_WINDOW_S:
            return AttemptResult(kind=REASON_TIMEOUT, error="request budget exhausted")
        timeout = (min(self.settings.connect_timeout_s, read_timeout), read_timeout)
        headers = _default_headers(user_agent, f"{self.settings.site_root}/")
        try:
            response = session.get(url, headers=headers, timeout=timeout)
        except requests.Timeout as exc:
            return AttemptResult(kind=REASON_TIMEOUT, error=str(exc))
        except requests.RequestException as exc:
            return AttemptResult(kind=REASON_UPSTREAM_FAILED, error=str(exc))
        try:
            status = response.status_code
            if status in RATE_LIMIT_STATUSES:
                return AttemptResult(kind=REASON_RATE_LIMITED, status=status, url=response.url)
            if not 200 <= status < 300:
                return AttemptResult(kind=_RETRYABLE, status=status, url=response.url, error=f"HTTP {status}")
            return AttemptResult(kind=_OK, status=status, text=response.text or "", url=response.url)
        finally:
            response.close()

    def _fetch_more_pages(
        self,
        session: requests.Session,
        query: SearchQuery,
        entry: PlanEntry,
        deadline: float,
    ) -> list[str]:
        total = pages_for(query, self.settings)
        if total <= 1:
            return []
        urls = [
            build_search_url(query, self.settings, variant=entry.variant, page=page)
            for page in range(2, total + 1)
        ]

        def fetch_page(url: str) -> Optional[str]:
            result = self._get(session, url, entry.user_agent, deadline)
            if result.kind != _OK:
                LOGGER.info("Extra page skipped (%s): %s", result.kind, url)
                return None
            if detect_bot_check(result.text, result.url, self._bot_patterns):
                LOGGER.info("Extra page challenged: %s", url)
                return None
            return result.text

        workers = max(1, min(self.settings.page_workers, len(urls)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            pages = list(executor.map(fetch_page, urls))
        return [page for page in pages if page]

    def _remaining(self, deadline: float) -> float:
        return deadline - self.clock()
