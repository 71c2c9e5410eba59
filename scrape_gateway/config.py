"""Configuration constants for the scrape gateway

Every tunable can be overridden from the environment. Durations read from
the environment are in milliseconds (the deployment convention) and are
stored here in seconds.
"""

import os
from pathlib import Path


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def env_seconds(name: str, default_ms: int) -> float:
    return env_int(name, default_ms) / 1000.0


def env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def env_list(name: str, default: str) -> list:
    raw = os.getenv(name) or default
    return [part.strip() for part in raw.split(",") if part.strip()]


# API
API_KEY_HEADER = "x-api-key"
NODE_EXECUTE_PATH = "/api/v1/scrape/execute"
MARKETPLACE_BASE_URL = os.getenv("MARKETPLACE_BASE_URL", "https://www.vinted.fr")


def get_api_secret() -> str:
    """Shared secret expected in the x-api-key header (read on every call)"""
    return os.getenv("API_SECRET") or os.getenv("NEXT_PUBLIC_API_SECRET") or ""


# Default scraper nodes (id, name, region, env var with endpoint, fallback endpoint)
DEFAULT_NODES = [
    ("scraper-fr", "Scraper FR", "cdg", "SCRAPER_FR_URL", "http://scraper-fr.internal:3000"),
    ("scraper-nl", "Scraper NL", "lhr", "SCRAPER_NL_URL", "http://scraper-nl.internal:3000"),
    ("scraper-us", "Scraper US", "iad", "SCRAPER_US_URL", "http://scraper-us.internal:3000"),
]

# Gateway
DEFAULT_ROTATION_STRATEGY = "round-robin"
DEFAULT_BAN_DURATION = 900.0  # 15 minutes
DEFAULT_GATEWAY_TIMEOUT = 30.0
DEFAULT_RETRY_ATTEMPTS = 3

# A node is marked unhealthy once it has more errors than this and more
# errors than successes
UNHEALTHY_ERROR_THRESHOLD = 5

# Failover
DEFAULT_FLY_APP = "vinted-last"
DEFAULT_FAILOVER_REGIONS = "cdg,iad,lhr"
DEFAULT_MAX_403_BEFORE_FAILOVER = 3
DEFAULT_FAILOVER_COOLDOWN = 300.0  # 5 minutes
FAILOVER_SETTLE_DELAY = 30.0  # Time for a new machine to become reachable
FAILOVER_HISTORY_LIMIT = 50
FLY_PROCESS_GROUP = "worker"

# Alert worker
DEFAULT_CHECK_INTERVAL = 1800.0  # 30 minutes
COOKIE_REFRESH_INTERVAL = 3600.0  # 1 hour
WAIT_AFTER_403 = 1800.0  # 30 minutes
POST_FAILOVER_DELAY = 60.0
MAX_IMMEDIATE_RETRIES = 3
IMMEDIATE_RETRY_WINDOW = 3600.0
REFRESH_WAIT_TIMEOUT = 120.0  # Max time a second caller waits on an in-flight refresh

# Credentials
COOKIE_SETTINGS_KEY = "vinted_cookies"
COOKIE_COLUMNS = ("vinted_cookies", "full_cookies", "cookies")
DEFAULT_COOKIE_FILE = Path(os.getenv("COOKIE_FILE", "./cookies/marketplace_cookies.json"))
COOKIE_FACTORY_TIMEOUT = 300.0  # 5 minutes

# Enrichment
MAX_ENRICH_CONCURRENCY = 2
DEFAULT_ENRICH_CONCURRENCY = 2
DEFAULT_SCRAPE_DELAY = 1.2
ENRICH_DELAY_JITTER = 0.4
RATE_LIMIT_MAX_RETRIES = 5
RATE_LIMIT_BASE_DELAY = 1.0
RATE_LIMIT_MAX_DELAY = 10.0
RATE_LIMIT_JITTER = 1.0
ENRICH_FETCH_TIMEOUT = 15.0
IMPERSONATE = "chrome"

# Node execute endpoint
EXECUTE_TIMEOUT = 30.0

DEFAULT_BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Accept-Language": "fr-FR,fr;q=0.9,en-US;q=0.8,en;q=0.7",
    "Accept-Encoding": "gzip, deflate, br",
    "Connection": "keep-alive",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Cache-Control": "max-age=0",
}


# Shared backoff shape
BACKOFF_MULTIPLIER = 2.0
