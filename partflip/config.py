from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

DEFAULT_SITE_DOMAIN = "www.ebay.com"
PARTS_CATEGORY_ID = "6028"
USED_CONDITION_CODE = "3000"
SOLD_SORT_CODE = "13"

JUNKYARD_MIN_USD = 100.0
JUNKYARD_MAX_USD = 400.0

DEFAULT_LIMIT = 20
MAX_LIMIT = 500
PAGE_SIZE_MIN = 10
PAGE_SIZE_MAX = 240
DEFAULT_MAX_PAGES = 3
DEFAULT_PAGE_WORKERS = 3

DEFAULT_ATTEMPT_TIMEOUT_S = 15.0
DEFAULT_CONNECT_TIMEOUT_S = 5.0
DEFAULT_REQUEST_BUDGET_S = 50.0
MIN_ATTEMPT_WINDOW_S = 1.0

BACKOFF_BASE_S = 0.35
BACKOFF_JITTER_S = 0.65
BACKOFF_MAX_S = 3.0

DEFAULT_API_SCOPE = "https://api.ebay.com/oauth/api_scope"
DEFAULT_MARKETPLACE_ID = "EBAY_US"

USER_AGENTS: tuple[tuple[str, str], ...] = (
    (
        "chrome-desktop",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/124.0.0.0 Safari/537.36",
    ),
    (
        "firefox-desktop",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:125.0) "
        "Gecko/20100101 Firefox/125.0",
    ),
)

# Case-insensitive regexes. "robot" is word-bounded so the robots meta tag on
# ordinary result pages does not count as a challenge.
BOT_CHECK_PATTERNS: tuple[str, ...] = (
    r"verify you(?:'|’)?re a human",
    r"verify you are (?:a )?human",
    r"captcha",
    r"\brobot\b",
    r"to continue, please",
    r"pardon our interruption",
)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


@dataclass(frozen=True, slots=True)
class ScrapeSettings:
    site_domain: str = DEFAULT_SITE_DOMAIN
    parts_category_id: str = PARTS_CATEGORY_ID
    used_condition_code: str = USED_CONDITION_CODE
    sold_sort_code: str = SOLD_SORT_CODE
    junkyard_min: float = JUNKYARD_MIN_USD
    junkyard_max: float = JUNKYARD_MAX_USD
    default_limit: int = DEFAULT_LIMIT
    max_limit: int = MAX_LIMIT
    page_size_min: int = PAGE_SIZE_MIN
    page_size_max: int = PAGE_SIZE_MAX
    max_pages: int = DEFAULT_MAX_PAGES
    page_workers: int = DEFAULT_PAGE_WORKERS
    attempt_timeout_s: float = DEFAULT_ATTEMPT_TIMEOUT_S
    connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S
    request_budget_s: float = DEFAULT_REQUEST_BUDGET_S
    backoff_base_s: float = BACKOFF_BASE_S
    backoff_jitter_s: float = BACKOFF_JITTER_S
    backoff_max_s: float = BACKOFF_MAX_S
    user_agents: tuple[tuple[str, str], ...] = USER_AGENTS
    bot_check_patterns: tuple[str, ...] = BOT_CHECK_PATTERNS
    api_enabled: bool = False
    ebay_client_id: Optional[str] = None
    ebay_client_secret: Optional[str] = None
    api_scope: str = DEFAULT_API_SCOPE
    marketplace_id: str = DEFAULT_MARKETPLACE_ID
    campaign_id: Optional[str] = None
    verification_token: Optional[str] = None

    @property
    def site_root(self) -> str:
        return f"https://{self.site_domain}"

    def api_credentials_present(self) -> bool:
        return bool(self.ebay_client_id and self.ebay_client_secret)

    @classmethod
    def from_env(cls, **overrides: object) -> "ScrapeSettings":
        budget = max(5.0, _env_float("REQUEST_BUDGET_S", DEFAULT_REQUEST_BUDGET_S))
        attempt = _env_float("ATTEMPT_TIMEOUT_S", DEFAULT_ATTEMPT_TIMEOUT_S)
        # An attempt must leave room for at least one fallback inside the budget.
        attempt = max(1.0, min(attempt, budget / 2))
        kwargs: dict[str, object] = {
            "site_domain": _env_str("EBAY_SITE_DOMAIN") or DEFAULT_SITE_DOMAIN,
            "parts_category_id": _env_str("EBAY_PARTS_CATEGORY") or PARTS_CATEGORY_ID,
            "junkyard_min": _env_float("JUNKYARD_MIN", JUNKYARD_MIN_USD),
            "junkyard_max": _env_float("JUNKYARD_MAX", JUNKYARD_MAX_USD),
            "max_pages": max(1, _env_int("MAX_PAGES", DEFAULT_MAX_PAGES)),
            "page_workers": max(1, _env_int("PAGE_WORKERS", DEFAULT_PAGE_WORKERS)),
            "attempt_timeout_s": attempt,
            "request_budget_s": budget,
            "api_enabled": _env_bool("EBAY_API_ENABLED", False),
            "ebay_client_id": _env_str("EBAY_CLIENT_ID"),
            "ebay_client_secret": _env_str("EBAY_CLIENT_SECRET"),
            "api_scope": _env_str("EBAY_API_SCOPE") or DEFAULT_API_SCOPE,
            "marketplace_id": _env_str("EBAY_MARKETPLACE_ID") or DEFAULT_MARKETPLACE_ID,
            "campaign_id": _env_str("EBAY_CAMPAIGN_ID"),
            "verification_token": _env_str("EBAY_VERIFICATION_TOKEN"),
        }
        kwargs.update(overrides)
        return cls(**kwargs)
