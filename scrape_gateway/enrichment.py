"""Item enrichment: fetch item pages with a concurrency cap and 429 backoff"""

import random
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from curl_cffi import CurlError
from curl_cffi.requests import AsyncSession
from loguru import logger

from .concurrency import delay, map_with_concurrency
from .config import (
    DEFAULT_BROWSER_HEADERS,
    DEFAULT_ENRICH_CONCURRENCY,
    DEFAULT_SCRAPE_DELAY,
    ENRICH_DELAY_JITTER,
    ENRICH_FETCH_TIMEOUT,
    IMPERSONATE,
    MARKETPLACE_BASE_URL,
    MAX_ENRICH_CONCURRENCY,
    env_int,
    env_seconds,
)
from .exceptions import NodeBannedError, RateLimitError, ScrapeGatewayError
from .parser import merge_with_enriched, parse_item_page
from .retry import classify_error, retry_on_rate_limit

Fetcher = Callable[[str], Awaitable[str]]


def enrich_concurrency() -> int:
    """ENRICH_CONCURRENCY, never above the hard cap"""
    return max(1, min(env_int("ENRICH_CONCURRENCY", DEFAULT_ENRICH_CONCURRENCY), MAX_ENRICH_CONCURRENCY))


def item_url(item_id: Any, base_url: str = MARKETPLACE_BASE_URL) -> str:
    return f"{base_url.rstrip('/')}/items/{item_id}"


async def fetch_html(url: str, timeout: float = ENRICH_FETCH_TIMEOUT, impersonate: str = IMPERSONATE) -> str:
    """
    Single page fetch with browser impersonation.

    Raises:
        RateLimitError: HTTP 429
        NodeBannedError: HTTP 403
        ScrapeGatewayError: Any other non-2xx status or transport failure
    """
    async with AsyncSession(impersonate=impersonate) as session:
        start_time = time.time()
        try:
            response = await session.get(url, headers=DEFAULT_BROWSER_HEADERS, timeout=timeout)
        except CurlError as e:
            raise ScrapeGatewayError(f"Fetch failed for {url}: {e}")

    logger.debug(f"   ← {url} {response.status_code} ({time.time() - start_time:.2f}s)")

    if response.status_code == 429:
        raise RateLimitError("HTTP 429")
    if response.status_code == 403:
        raise NodeBannedError()
    if response.status_code >= 400:
        raise ScrapeGatewayError(f"HTTP {response.status_code}")
    return response.text


async def fetch_with_rate_limit_retry(
    url: str,
    fetcher: Fetcher = fetch_html,
    sleep: Callable[[float], Awaitable[None]] = delay,
) -> str:
    """Fetch ``url``, backing off on 429 up to the retry cap"""
    return await retry_on_rate_limit(lambda: fetcher(url), sleep=sleep)


async def enrich_items(
    ids: Sequence[Any],
    search_results: Optional[Sequence[Dict[str, Any]]] = None,
    concurrency: Optional[int] = None,
    scrape_delay: Optional[float] = None,
    fetcher: Fetcher = fetch_html,
    sleep: Callable[[float], Awaitable[None]] = delay,
    rng: Optional[random.Random] = None,
) -> List[Dict[str, Any]]:
    """
    Fetch and parse each item page, merged with its search result when given.

    Args:
        ids: Item ids
        search_results: Search-result items (matched on ``id``)
        concurrency: Max in-flight fetches (defaults to ENRICH_CONCURRENCY, capped)
        scrape_delay: Base pause after each item in seconds (defaults to SCRAPE_DELAY_MS)
        fetcher: Page fetcher
        sleep: Awaitable sleep (injectable for tests)
        rng: Random source for the pause jitter

    Returns:
        Enriched items in input order; failed items are left out
    """
    concurrency = concurrency or enrich_concurrency()
    if scrape_delay is None:
        scrape_delay = env_seconds("SCRAPE_DELAY_MS", int(DEFAULT_SCRAPE_DELAY * 1000))
    uniform = rng.uniform if rng is not None else random.uniform
    by_id = {item.get("id"): item for item in (search_results or []) if isinstance(item, dict)}

    logger.info(f"🔍 Enriching {len(ids)} items with concurrency {concurrency} (delay: {scrape_delay:.1f}s)")

    async def enrich_one(item_id: Any, index: int) -> Optional[Dict[str, Any]]:
        logger.info(f"🔍 Enriching {index + 1}/{len(ids)} → {item_id}")
        url = item_url(item_id)

        try:
            html = await fetch_with_rate_limit_retry(url, fetcher=fetcher, sleep=sleep)
        except ScrapeGatewayError as e:
            logger.warning(f"⚠️ Failed to enrich item {item_id} [{classify_error(e).value}]: {e}")
            return None

        enriched = parse_item_page(html)

        if index < len(ids) - 1:
            await sleep(scrape_delay + uniform(0, ENRICH_DELAY_JITTER))

        search_result = by_id.get(item_id)
        if search_result is not None:
            return merge_with_enriched(search_result, enriched)

        return {
            "id": item_id,
            "url": url,
            **enriched,
            "scraped_at": datetime.now(timezone.utc).isoformat(),
        }

    results = await map_with_concurrency(list(ids), concurrency, enrich_one)
    successful = [item for item in results if item]

    logger.success(f"✅ Enrichment completed: {len(successful)}/{len(ids)} successful")
    return successful
