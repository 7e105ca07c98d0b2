"""Runtime settings and the named constants behind them."""
from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from dotenv import load_dotenv

from .antibot.proxy import ProxyConfig
from .errors import ConfigurationError

BASE_DIR = Path(__file__).resolve().parents[1]

# Retry / backoff
MAX_RETRIES = 3
SEARCH_RETRY_DELAY = 1.0  # seconds, fixed
QUEUE_BACKOFF_BASE = 5.0
QUEUE_BACKOFF_MULTIPLIER = 2.0
QUEUE_BACKOFF_MAX = 60.0

# Search
SEARCH_FALLBACK_THRESHOLD = 8
SEARCH_HTTP_TIMEOUT = 20.0

# Prefix enumeration and crawling
CRAWL_REQUEST_DELAY = 0.6  # seconds between prefix requests, plus jitter
CRAWL_REQUEST_JITTER = 0.4
CRAWL_MAX_PREFIX_LENGTH = 12
CRAWL_MAX_RETRIES = 5
CRAWL_BACKOFF_BASE = 5.0
CRAWL_BACKOFF_MAX = 60.0
ENUMERATION_MAX_REQUESTS = 30
ENUMERATION_EXTRA_CHARS = 3  # how far below the query an inline enumeration goes

# Browser / extraction timeouts (seconds)
NAVIGATION_TIMEOUT = 60.0
NAVIGATION_GRACE = 5.0
EXTRACTION_TIMEOUT = 30.0
BROWSER_CONNECT_TIMEOUT = 120.0

# Staleness (seconds)
STALE_AFTER = {
    "searching": 3 * 60,
    "selecting": 30 * 60,
    "scraping": 5 * 60,
}
CLAIM_STALE_AFTER = 10 * 60
REAP_INTERVAL = 60.0
JOB_RETENTION = 24 * 60 * 60

# Cache
HTML_CACHE_TTL = 90 * 24 * 60 * 60

# Worker pool
WORKER_COUNT = 2
POLL_INTERVAL = 1.0
MAX_WORKERS = 50
BULK_RATE_LIMIT = 2.0  # minimum seconds between scrape starts in one pool

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8787

ORACLES = ("none", "heuristic", "claude")
STORES = ("memory", "postgres")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )


def get_database_url() -> Optional[str]:
    """Return the Postgres DSN from DATABASE_URL or PG_DSN."""
    return os.getenv("DATABASE_URL") or os.getenv("PG_DSN")


@dataclass
class Settings:
    """Process-wide configuration.

    Every field defaults to the module constant of the same meaning, so tests
    can build a ``Settings()`` directly and override only what they need.
    """

    store: str = "memory"
    database_url: Optional[str] = None

    browser_ws_endpoint: Optional[str] = None
    local_browser: bool = False
    search_proxy_url: Optional[str] = None

    oracle: str = "heuristic"
    anthropic_api_key: Optional[str] = None
    anthropic_model: str = "claude-3-5-haiku-latest"

    max_retries: int = MAX_RETRIES
    search_retry_delay: float = SEARCH_RETRY_DELAY
    queue_backoff_base: float = QUEUE_BACKOFF_BASE
    queue_backoff_max: float = QUEUE_BACKOFF_MAX
    search_fallback_threshold: int = SEARCH_FALLBACK_THRESHOLD
    search_http_timeout: float = SEARCH_HTTP_TIMEOUT
    crawl_request_delay: float = CRAWL_REQUEST_DELAY
    crawl_request_jitter: float = CRAWL_REQUEST_JITTER
    enumeration_max_requests: int = ENUMERATION_MAX_REQUESTS

    navigation_timeout: float = NAVIGATION_TIMEOUT
    navigation_grace: float = NAVIGATION_GRACE
    extraction_timeout: float = EXTRACTION_TIMEOUT
    browser_connect_timeout: float = BROWSER_CONNECT_TIMEOUT

    stale_after: Dict[str, float] = field(default_factory=lambda: dict(STALE_AFTER))
    claim_stale_after: float = CLAIM_STALE_AFTER
    reap_interval: float = REAP_INTERVAL
    job_retention: float = JOB_RETENTION
    html_cache_ttl: float = HTML_CACHE_TTL

    worker_count: int = WORKER_COUNT
    poll_interval: float = POLL_INTERVAL
    bulk_rate_limit: float = BULK_RATE_LIMIT
    cancel_on_disconnect: bool = False

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from the environment (and ``.env`` at the repo root)."""
        load_dotenv(BASE_DIR / ".env")

        database_url = get_database_url()
        store = os.getenv("SCRAPER_STORE") or ("postgres" if database_url else "memory")

        proxy_url = None
        proxy = ProxyConfig.from_env()
        if proxy is not None:
            proxy_url = proxy.to_httpx_url()

        return cls(
            store=store.strip().lower(),
            database_url=database_url,
            browser_ws_endpoint=os.getenv("BRD_WSENDPOINT") or None,
            local_browser=_env_bool("LOCAL_PLAYWRIGHT", False),
            search_proxy_url=proxy_url,
            oracle=os.getenv("SCRAPER_ORACLE", "heuristic").strip().lower(),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
            anthropic_model=os.getenv("SCRAPER_ORACLE_MODEL", "claude-3-5-haiku-latest"),
            max_retries=_env_int("SCRAPER_MAX_RETRIES", MAX_RETRIES),
            search_retry_delay=_env_float("SCRAPER_SEARCH_RETRY_DELAY", SEARCH_RETRY_DELAY),
            queue_backoff_base=_env_float("SCRAPER_BACKOFF_BASE", QUEUE_BACKOFF_BASE),
            queue_backoff_max=_env_float("SCRAPER_BACKOFF_MAX", QUEUE_BACKOFF_MAX),
            navigation_timeout=_env_float("SCRAPER_NAVIGATION_TIMEOUT", NAVIGATION_TIMEOUT),
            navigation_grace=_env_float("SCRAPER_NAVIGATION_GRACE", NAVIGATION_GRACE),
            extraction_timeout=_env_float("SCRAPER_EXTRACTION_TIMEOUT", EXTRACTION_TIMEOUT),
            crawl_request_delay=_env_float("SCRAPER_CRAWL_DELAY", CRAWL_REQUEST_DELAY),
            crawl_request_jitter=_env_float("SCRAPER_CRAWL_JITTER", CRAWL_REQUEST_JITTER),
            enumeration_max_requests=_env_int("SCRAPER_ENUMERATION_MAX_REQUESTS", ENUMERATION_MAX_REQUESTS),
            worker_count=_env_int("SCRAPER_WORKERS", WORKER_COUNT),
            poll_interval=_env_float("SCRAPER_POLL_INTERVAL", POLL_INTERVAL),
            bulk_rate_limit=_env_float("SCRAPER_BULK_RATE_LIMIT", BULK_RATE_LIMIT),
            cancel_on_disconnect=_env_bool("SCRAPER_CANCEL_ON_DISCONNECT", False),
            host=os.getenv("SCRAPER_HOST", DEFAULT_HOST),
            port=_env_int("SCRAPER_PORT", DEFAULT_PORT),
        )

    def validate(self, require_browser: bool = False) -> None:
        """Raise ConfigurationError when required credentials are missing."""
        if self.store not in STORES:
            raise ConfigurationError(f"Unknown SCRAPER_STORE {self.store!r}, expected one of {STORES}")
        if self.store == "postgres" and not self.database_url:
            raise ConfigurationError("DATABASE_URL (or PG_DSN) is not set")
        if self.oracle not in ORACLES:
            raise ConfigurationError(f"Unknown SCRAPER_ORACLE {self.oracle!r}, expected one of {ORACLES}")
        if self.oracle == "claude" and not self.anthropic_api_key:
            raise ConfigurationError("ANTHROPIC_API_KEY is required for the claude oracle")
        if self.max_retries < 1:
            raise ConfigurationError("SCRAPER_MAX_RETRIES must be at least 1")
        if not 1 <= self.worker_count <= MAX_WORKERS:
            raise ConfigurationError(f"SCRAPER_WORKERS must be between 1 and {MAX_WORKERS}")
        if require_browser and not self.local_browser and not self.browser_ws_endpoint:
            raise ConfigurationError("BRD_WSENDPOINT is not set (or set LOCAL_PLAYWRIGHT=true)")
