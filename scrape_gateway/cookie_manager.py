"""Cookie session for the alert worker with single-flight refresh"""

import asyncio
import time
from typing import Callable, Optional

from loguru import logger

from .config import COOKIE_REFRESH_INTERVAL, REFRESH_WAIT_TIMEOUT
from .cookie_factory import CookieFactory
from .credential_store import CredentialStore


class CookieManager:
    """
    Holds the current marketplace cookies and regenerates them on demand.

    Lookup order: memory, then the credential store, then a fresh
    generation. Only one generation runs at a time; concurrent callers wait
    for it (up to ``refresh_wait_timeout``) and share its result.
    """

    def __init__(
        self,
        store: CredentialStore,
        factory: CookieFactory,
        refresh_interval: float = COOKIE_REFRESH_INTERVAL,
        refresh_wait_timeout: float = REFRESH_WAIT_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            store: Where cookies are loaded from and persisted to
            factory: Cookie generator
            refresh_interval: Seconds after which cookies are considered stale
            refresh_wait_timeout: Max seconds a second caller waits for an in-flight refresh
            clock: Time source in seconds
        """
        self.store = store
        self.factory = factory
        self.refresh_interval = refresh_interval
        self.refresh_wait_timeout = refresh_wait_timeout
        self.clock = clock

        self.current_cookies: Optional[str] = None
        self.last_refresh: Optional[float] = None
        self.refresh_count = 0
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def needs_refresh(self) -> bool:
        if self.last_refresh is None:
            return True
        return self.clock() - self.last_refresh >= self.refresh_interval

    async def initialize(self) -> Optional[str]:
        """Load stored cookies at startup, generating them if none exist"""
        cookies = await self.store.load()
        if cookies:
            # Treat stored cookies as fresh to avoid an immediate regeneration
            self.current_cookies = cookies
            self.last_refresh = self.clock()
            logger.info("✅ Cookies loaded at startup")
            return cookies

        logger.info("🔄 Generating initial cookies...")
        return await self.refresh()

    async def get_cookies(self) -> Optional[str]:
        """Current cookies: memory, then store, then a fresh generation"""
        if self.current_cookies:
            return self.current_cookies

        cookies = await self.store.load()
        if cookies:
            self.current_cookies = cookies
            return cookies

        logger.error("❌ No cookies available, trying to generate some...")
        return await self.refresh()

    async def refresh(self) -> Optional[str]:
        """
        Regenerate cookies, or join a regeneration already in progress.

        Returns:
            The new cookies, or None if generation failed or the wait timed out
        """
        if self.is_refreshing:
            logger.warning("⚠️ Cookie refresh already in progress, waiting...")
            try:
                return await asyncio.wait_for(
                    asyncio.shield(self._refresh_task),
                    timeout=self.refresh_wait_timeout,
                )
            except asyncio.TimeoutError:
                logger.error(
                    f"❌ Timed out after {self.refresh_wait_timeout:.0f}s waiting for cookie refresh"
                )
                return None

        self._refresh_task = asyncio.ensure_future(self._do_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _do_refresh(self) -> Optional[str]:
        logger.info("🔄 Refreshing cookies via cookie factory...")

        try:
            result = await self.factory.generate()
        except Exception as e:
            logger.error(f"❌ Cookie refresh error: {e}")
            return None

        if not result.success or not result.cookies:
            logger.error(f"❌ Cookie refresh failed: {result.error}")
            return None

        self.current_cookies = result.cookies
        self.last_refresh = self.clock()
        self.refresh_count += 1

        await self.store.save(result.cookies)

        logger.success("✅ Cookies refreshed")
        return result.cookies

    def invalidate(self) -> None:
        """Drop the in-memory cookies (e.g. after a 403)"""
        self.current_cookies = None
