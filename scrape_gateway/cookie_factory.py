"""Fresh cookie generation (external command or Camoufox browser)"""

import asyncio
import os
import re
import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import orjson
from loguru import logger

from .config import COOKIE_FACTORY_TIMEOUT, MARKETPLACE_BASE_URL

_JSON_RESULT_RE = re.compile(rb'\{[\s\S]*"success"[\s\S]*\}')


@dataclass
class CookieFactoryResult:
    success: bool
    cookies: Optional[str] = None
    error: Optional[str] = None
    details: Any = None


class CookieFactory(ABC):
    """Produces a fresh cookie header string"""

    @abstractmethod
    async def generate(self) -> CookieFactoryResult:
        pass


def parse_factory_output(stdout: bytes) -> Dict[str, Any]:
    """
    Read the JSON result printed by a generator script.

    The last line is expected to hold the result; otherwise the first JSON
    object containing ``"success"`` is used.
    """
    lines = stdout.strip().splitlines()
    if lines:
        try:
            result = orjson.loads(lines[-1])
            if isinstance(result, dict):
                return result
        except orjson.JSONDecodeError:
            pass

    match = _JSON_RESULT_RE.search(stdout)
    if match:
        return orjson.loads(match.group(0))

    raise ValueError(f"Failed to parse generator output: {stdout[:200]!r}")


class CommandCookieFactory(CookieFactory):
    """Runs a generator command that prints ``{"success", "cookies", "error"}``"""

    def __init__(self, command: List[str], timeout: float = COOKIE_FACTORY_TIMEOUT):
        if not command:
            raise ValueError("Cookie factory command is empty")
        self.command = command
        self.timeout = timeout

    @classmethod
    def from_env(cls) -> Optional["CommandCookieFactory"]:
        raw = os.getenv("COOKIE_FACTORY_COMMAND", "").strip()
        if not raw:
            return None
        return cls(shlex.split(raw))

    async def generate(self) -> CookieFactoryResult:
        logger.info("🏭 Cookie factory: generating fresh cookies...")

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Cookie factory could not start: {e}")
            return CookieFactoryResult(success=False, error=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error(f"Cookie factory timed out after {self.timeout:.0f}s")
            return CookieFactoryResult(success=False, error="Cookie factory timed out")

        if stderr and stderr.strip():
            logger.warning(f"⚠️ Cookie factory stderr: {stderr.decode(errors='replace').strip()[:500]}")

        try:
            result = parse_factory_output(stdout)
        except (ValueError, orjson.JSONDecodeError) as e:
            logger.error(f"Cookie factory output unreadable: {e}")
            return CookieFactoryResult(success=False, error=str(e))

        if not result.get("success") or not result.get("cookies"):
            return CookieFactoryResult(
                success=False,
                error=result.get("error") or "Failed to generate cookies",
                details=result.get("details"),
            )

        logger.success("✅ Cookies generated by cookie factory")
        return CookieFactoryResult(success=True, cookies=result["cookies"], details=result.get("details"))


class CamoufoxCookieFactory(CookieFactory):
    """
    Opens the marketplace homepage in Camoufox and keeps the session cookies.

    A blocked homepage (access denied / 403 page) is reported as a failure
    so the caller can back off instead of storing useless cookies.
    """

    CONSENT_SELECTORS = [
        "#onetrust-accept-btn-handler",
        'button:has-text("Accepter tout")',
        'button:has-text("Accept all")',
        'button:has-text("Accept")',
    ]

    BLOCK_MARKERS = [
        "<title>access denied</title>",
        "<title>403",
        "you don't have permission to access",
        "temporarily blocked",
    ]

    def __init__(self, base_url: str = MARKETPLACE_BASE_URL, headless: bool = True, wait_time: int = 5):
        self.base_url = base_url
        self.headless = headless
        self.wait_time = wait_time

    async def generate(self) -> CookieFactoryResult:
        from camoufox.async_api import AsyncCamoufox

        logger.info(f"🦊 Extracting cookies from {self.base_url}")

        try:
            async with AsyncCamoufox(headless=self.headless) as browser:
                page = await browser.new_page()
                await page.goto(self.base_url, wait_until="domcontentloaded", timeout=30000)
                await page.wait_for_timeout(2000)

                if self.is_blocked(await page.content()):
                    logger.error("🚫 Homepage blocked, no cookies extracted")
                    return CookieFactoryResult(success=False, error="Blocked by server (HTTP 403)")

                if await self._accept_cookie_consent(page):
                    logger.debug("   ✓ Cookie consent accepted")

                await page.wait_for_timeout(self.wait_time * 1000)
                cookies = await page.context.cookies()
        except Exception as e:
            logger.error(f"Cookie extraction failed: {e}")
            return CookieFactoryResult(success=False, error=str(e))

        header = "; ".join(f"{c['name']}={c['value']}" for c in cookies if c.get("name"))
        if not header:
            return CookieFactoryResult(success=False, error="No cookies set by homepage")

        logger.success(f"🎉 Extracted {len(cookies)} cookies")
        return CookieFactoryResult(success=True, cookies=header, details={"count": len(cookies)})

    def is_blocked(self, page_content: str) -> bool:
        content = page_content.lower()
        return any(marker in content for marker in self.BLOCK_MARKERS)

    async def _accept_cookie_consent(self, page) -> bool:
        for selector in self.CONSENT_SELECTORS:
            try:
                button = await page.wait_for_selector(selector, timeout=5000, state="visible")
            except Exception:
                continue

            if button:
                await button.click()
                await page.wait_for_timeout(1500)
                return True

        return False


def factory_from_env() -> CookieFactory:
    """External command when configured, Camoufox otherwise"""
    return CommandCookieFactory.from_env() or CamoufoxCookieFactory()
