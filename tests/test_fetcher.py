from __future__ import annotations

import logging
import random
from typing import Callable, Optional, Union

import requests

from partflip.config import ScrapeSettings
from partflip.fetcher import FetchOrchestrator, backoff_delay, detect_bot_check
from partflip.models import (
    REASON_BOT_CHECK,
    REASON_EMPTY_PARSE,
    REASON_RATE_LIMITED,
    REASON_TIMEOUT,
    REASON_UPSTREAM_FAILED,
    SearchQuery,
)

GOOD_HTML = (
    '<ul class="srp-results"><li class="s-item">'
    '<a class="s-item__link" href="https://www.ebay.com/itm/111111111111">'
    '<div class="s-item__title">Brake Caliper</div></a>'
    '<span class="s-item__price">$45.00</span></li></ul>'
)
EMPTY_HTML = '<html><head><meta name="robots" content="noindex"></head><body>0 results</body></html>'


class _DummyResponse:
    def __init__(self, status_code: int = 200, text: str = "", url: str = "https://www.ebay.com/sch/i.html") -> None:
        self.status_code = status_code
        self.text = text
        self.url = url
        self.closed = False

    def close(self) -> None:
        self.closed = True


Reply = Union[_DummyResponse, Exception]


class _DummySession:
    def __init__(self, replies: Union[list[Reply], Callable[[str], Reply]]) -> None:
        self.replies = replies
        self.calls: list[dict] = []
        self.responses: list[_DummyResponse] = []

    def get(self, url: str, headers: Optional[dict] = None, timeout=None, **kwargs):
        self.calls.append({"url": url, "headers": headers or {}, "timeout": timeout})
        if callable(self.replies):
            reply = self.replies(url)
        else:
            reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        self.responses.append(reply)
        return reply


def _query(limit: int = 20) -> SearchQuery:
    return SearchQuery.create("2012", "Honda", "Civic", "caliper", limit=limit)


def _orchestrator(session: _DummySession, sleeps: Optional[list[float]] = None, **kwargs) -> FetchOrchestrator:
    recorded = sleeps if sleeps is not None else []
    return FetchOrchestrator(
        kwargs.pop("settings", ScrapeSettings()),
        session=session,
        sleep=recorded.append,
        rng=random.Random(7),
        **kwargs,
    )


def test_plan_order_is_category_then_generic_per_user_agent() -> None:
    orchestrator = _orchestrator(_DummySession([_DummyResponse()]))
    plan = orchestrator.build_plan(_query())
    assert [entry.label for entry in plan] == [
        "category/chrome-desktop",
        "generic/chrome-desktop",
        "category/firefox-desktop",
        "generic/firefox-desktop",
    ]


def test_first_attempt_success() -> None:
    session = _DummySession([_DummyResponse(200, GOOD_HTML)])
    sleeps: list[float] = []
    outcome = _orchestrator(session, sleeps).fetch(_query())
    assert outcome.ok
    assert outcome.reason is None
    assert outcome.pages == [GOOD_HTML]
    assert outcome.winning.label == "category/chrome-desktop"
    assert outcome.status == 200
    assert outcome.bytes == len(GOOD_HTML)
    assert len(session.calls) == 1
    assert sleeps == []
    assert session.calls[0]["timeout"] == (5.0, 15.0)
    headers = session.calls[0]["headers"]
    assert "Chrome" in headers["User-Agent"]
    assert headers["Accept-Language"].startswith("en")
    assert headers["Referer"] == "https://www.ebay.com/"


def test_captcha_short_circuits_plan() -> None:
    session = _DummySession(
        [_DummyResponse(200, "<html>Please solve the CAPTCHA to continue</html>"), _DummyResponse(200, GOOD_HTML)]
    )
    orchestrator = _orchestrator(session)
    outcome = orchestrator.fetch(_query())
    first_url = orchestrator.build_plan(_query())[0].url
    assert outcome.reason == REASON_BOT_CHECK
    assert outcome.pages == []
    assert len(session.calls) == 1
    assert outcome.last_tried == first_url
    assert outcome.upstream == [first_url]
    assert outcome.last_label == "category/chrome-desktop"


def test_challenge_redirect_counts_as_bot_check() -> None:
    redirected = _DummyResponse(200, GOOD_HTML, url="https://www.ebay.com/splashui/challenge?ap=1")
    session = _DummySession([redirected])
    outcome = _orchestrator(session).fetch(_query())
    assert outcome.reason == REASON_BOT_CHECK
    assert len(session.calls) == 1


def test_non_2xx_is_retried_once_then_advances() -> None:
    session = _DummySession([_DummyResponse(503), _DummyResponse(503), _DummyResponse(200, GOOD_HTML)])
    orchestrator = _orchestrator(session)
    outcome = orchestrator.fetch(_query())
    plan = orchestrator.build_plan(_query())
    assert outcome.ok
    assert [call["url"] for call in session.calls] == [plan[0].url, plan[0].url, plan[1].url]
    assert outcome.winning == plan[1]


def test_persistent_503_reports_upstream_failed() -> None:
    session = _DummySession([_DummyResponse(503)])
    outcome = _orchestrator(session).fetch(_query())
    assert outcome.reason == REASON_UPSTREAM_FAILED
    assert outcome.pages == []
    assert outcome.status == 503
    assert len(session.calls) == 8
    assert len(outcome.upstream) == 4


def test_rate_limit_short_circuits() -> None:
    for status in (429, 403):
        session = _DummySession([_DummyResponse(status), _DummyResponse(200, GOOD_HTML)])
        outcome = _orchestrator(session).fetch(_query())
        assert outcome.reason == REASON_RATE_LIMITED
        assert outcome.status == status
        assert len(session.calls) == 1


def test_timeouts_advance_and_report_timeout() -> None:
    session = _DummySession([requests.Timeout("read timed out")])
    sleeps: list[float] = []
    outcome = _orchestrator(session, sleeps).fetch(_query())
    assert outcome.reason == REASON_TIMEOUT
    assert len(session.calls) == 4
    assert len(sleeps) == 3


def test_connection_error_is_upstream_failed() -> None:
    session = _DummySession([requests.ConnectionError("refused")])
    outcome = _orchestrator(session).fetch(_query())
    assert outcome.reason == REASON_UPSTREAM_FAILED
    assert len(session.calls) == 4


def test_empty_parse_advances_with_jittered_delay() -> None:
    session = _DummySession([_DummyResponse(200, EMPTY_HTML), _DummyResponse(200, GOOD_HTML)])
    sleeps: list[float] = []
    orchestrator = _orchestrator(session, sleeps)
    outcome = orchestrator.fetch(_query())
    assert outcome.ok
    assert outcome.winning.label == "generic/chrome-desktop"
    assert len(outcome.upstream) == 2
    assert len(sleeps) == 1
    settings = orchestrator.settings
    assert settings.backoff_base_s <= sleeps[0] <= settings.backoff_base_s + settings.backoff_jitter_s


def test_all_empty_reports_empty_parse() -> None:
    session = _DummySession([_DummyResponse(200, EMPTY_HTML)])
    outcome = _orchestrator(session).fetch(_query())
    assert outcome.reason == REASON_EMPTY_PARSE
    assert len(session.calls) == 4


def test_empty_parse_wins_over_later_network_failure() -> None:
    session = _DummySession(
        [_DummyResponse(200, EMPTY_HTML), requests.Timeout("slow"), requests.Timeout("slow"), requests.Timeout("slow")]
    )
    outcome = _orchestrator(session).fetch(_query())
    assert outcome.reason == REASON_EMPTY_PARSE


def test_injected_extractor_decides_emptiness() -> None:
    session = _DummySession([_DummyResponse(200, GOOD_HTML)])
    outcome = _orchestrator(session, extractor=lambda html: []).fetch(_query())
    assert outcome.reason == REASON_EMPTY_PARSE


def test_responses_are_always_closed() -> None:
    session = _DummySession([_DummyResponse(503), _DummyResponse(503), _DummyResponse(429)])
    _orchestrator(session).fetch(_query())
    assert session.responses
    assert all(response.closed for response in session.responses)


def test_budget_exhaustion_returns_timeout() -> None:
    now = [0.0]

    def slow_reply(url: str) -> _DummyResponse:
        now[0] += 20.0
        return _DummyResponse(200, EMPTY_HTML)

    session = _DummySession(slow_reply)
    orchestrator = _orchestrator(
        session,
        settings=ScrapeSettings(request_budget_s=50.0),
        clock=lambda: now[0],
    )
    outcome = orchestrator.fetch(_query())
    assert outcome.reason == REASON_TIMEOUT
    assert len(session.calls) == 3
    assert session.calls[2]["timeout"] == (5.0, 10.0)


def test_extra_pages_fetched_for_large_limits() -> None:
    session = _DummySession(lambda url: _DummyResponse(200, GOOD_HTML, url=url))
    outcome = _orchestrator(session).fetch(_query(limit=500))
    assert outcome.ok
    assert len(outcome.pages) == 3
    page_numbers = sorted(call["url"].split("_pgn=")[1].split("&")[0] for call in session.calls)
    assert page_numbers == ["1", "2", "3"]
    assert all("/sch/6028/" in call["url"] for call in session.calls)


def test_failed_extra_page_is_dropped() -> None:
    def reply(url: str) -> Reply:
        if "_pgn=2" in url:
            return requests.ConnectionError("reset")
        return _DummyResponse(200, GOOD_HTML, url=url)

    session = _DummySession(reply)
    outcome = _orchestrator(session).fetch(_query(limit=500))
    assert outcome.ok
    assert len(outcome.pages) == 2


def test_detect_bot_check_phrases() -> None:
    assert detect_bot_check("Please verify you're a human") is True
    assert detect_bot_check("To continue, please type the characters") is True
    assert detect_bot_check("Are you a Robot?") is True
    assert detect_bot_check(EMPTY_HTML) is False
    assert detect_bot_check(GOOD_HTML) is False
    assert detect_bot_check("", "https://www.ebay.com/splashui/challenge") is True


def test_backoff_delay_grows_and_is_capped() -> None:
    settings = ScrapeSettings()
    rng = random.Random(1)
    assert backoff_delay(0, settings, rng) == 0.0
    first = backoff_delay(1, settings, rng)
    assert settings.backoff_base_s <= first <= settings.backoff_base_s + settings.backoff_jitter_s
    assert backoff_delay(50, settings, rng) == settings.backoff_max_s


def test_each_attempt_logs_status_and_bytes(caplog) -> None:
    caplog.set_level(logging.INFO, logger="partflip")
    session = _DummySession([_DummyResponse(200, EMPTY_HTML), _DummyResponse(200, GOOD_HTML)])
    outcome = _orchestrator(session).fetch(_query())
    assert outcome.ok
    assert outcome.last_label == "generic/chrome-desktop"
    messages = [record.getMessage() for record in caplog.records]
    assert f"Attempt 1 (category/chrome-desktop) -> ok status=200 bytes={len(EMPTY_HTML)}" in messages
    assert f"Attempt 2 (generic/chrome-desktop) -> ok status=200 bytes={len(GOOD_HTML)}" in messages
