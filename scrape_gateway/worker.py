"""Long-running alert worker

One cycle runs at a time: refresh cookies when stale, run the alert check,
then react to a systemic 403 with a failover or a wait-and-regenerate.
"""

import asyncio
import signal
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Optional

from loguru import logger

from .alerts import AlertChecker, AlertCheckResult, HttpAlertChecker
from .config import (
    COOKIE_REFRESH_INTERVAL,
    DEFAULT_CHECK_INTERVAL,
    IMMEDIATE_RETRY_WINDOW,
    MAX_IMMEDIATE_RETRIES,
    POST_FAILOVER_DELAY,
    WAIT_AFTER_403,
    env_bool,
    env_seconds,
)
from .cookie_factory import factory_from_env
from .cookie_manager import CookieManager
from .credential_store import CredentialStore
from .failover import FailoverConfig, FailoverManager
from .machines import FlyMachineController


class CycleOutcome(Enum):
    SKIPPED = "skipped"  # Another cycle was still running
    SUCCESS = "success"
    FAILED = "failed"  # Next cycle follows the regular schedule
    RERUN = "rerun"  # Start a new cycle right away


@dataclass
class WorkerSettings:
    """Worker timing. Durations are in seconds."""

    check_interval: float = DEFAULT_CHECK_INTERVAL
    cookie_refresh_interval: float = COOKIE_REFRESH_INTERVAL
    wait_after_403: float = WAIT_AFTER_403
    post_failover_delay: float = POST_FAILOVER_DELAY
    enable_failover: bool = False
    max_immediate_retries: int = MAX_IMMEDIATE_RETRIES
    immediate_retry_window: float = IMMEDIATE_RETRY_WINDOW

    @classmethod
    def from_env(cls) -> "WorkerSettings":
        return cls(
            check_interval=env_seconds("ALERTS_CHECK_INTERVAL_MS", int(DEFAULT_CHECK_INTERVAL * 1000)),
            cookie_refresh_interval=env_seconds("COOKIE_REFRESH_INTERVAL_MS", int(COOKIE_REFRESH_INTERVAL * 1000)),
            wait_after_403=env_seconds("WAIT_AFTER_403_MS", int(WAIT_AFTER_403 * 1000)),
            enable_failover=env_bool("ENABLE_FAILOVER"),
        )


class AlertWorker:
    """
    Scheduling loop around the alert checker.

    Cycles never overlap. A cycle that ends in RERUN (after a successful
    failover, or after new cookies were generated following a 403) starts
    the next cycle immediately, at most ``max_immediate_retries`` times per
    ``immediate_retry_window``; past that the worker waits for the next tick.
    """

    def __init__(
        self,
        checker: AlertChecker,
        cookies: CookieManager,
        failover: Optional[FailoverManager] = None,
        settings: Optional[WorkerSettings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            checker: Alert-check collaborator
            cookies: Cookie session
            failover: Failover manager, used only when failover is enabled
            settings: Worker timing (defaults to the environment)
            clock: Time source in seconds
        """
        self.checker = checker
        self.cookies = cookies
        self.failover = failover
        self.settings = settings or WorkerSettings.from_env()
        self.clock = clock

        self.in_progress = False
        self.cycle_count = 0
        self._immediate_runs: Deque[float] = deque()
        self._stop_event = asyncio.Event()

    @classmethod
    def from_env(cls) -> "AlertWorker":
        settings = WorkerSettings.from_env()
        cookies = CookieManager(
            CredentialStore.from_env(),
            factory_from_env(),
            refresh_interval=settings.cookie_refresh_interval,
        )
        failover = None
        if settings.enable_failover:
            failover = FailoverManager(FailoverConfig.from_env(), FlyMachineController())
        return cls(HttpAlertChecker.from_env(), cookies, failover, settings)

    @property
    def failover_enabled(self) -> bool:
        return self.settings.enable_failover and self.failover is not None

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Ask the loop to exit after the current cycle"""
        if not self.stopping:
            logger.info("🛑 Stop requested, shutting down the worker...")
        self._stop_event.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.stop)
            except NotImplementedError:
                # Not available on Windows event loops
                logger.debug(f"Signal handler for {sig.name} not installed")

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep unless stopped.

        Returns:
            True if the worker was stopped during the wait
        """
        if self.stopping:
            return True
        if seconds <= 0:
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def startup(self) -> None:
        s = self.settings
        logger.info("🚀 Starting alert worker...")
        logger.info(f"⏱️ Check interval: {s.check_interval / 60:.0f} min")
        logger.info(f"🔄 Cookie refresh interval: {s.cookie_refresh_interval / 60:.0f} min")
        logger.info(f"⏸️ Wait after 403: {s.wait_after_403 / 60:.0f} min")

        if self.failover_enabled:
            logger.info("🔄 Automatic failover: ENABLED")
            await self.failover.initialize()
        else:
            logger.info("🔄 Automatic failover: DISABLED (set ENABLE_FAILOVER=true to enable)")

        await self.cookies.initialize()

    async def run(self) -> None:
        """Startup, then cycles until stopped"""
        await self.startup()

        while not self.stopping:
            started = self.clock()
            outcome = await self.run_cycle()
            if self.stopping:
                break

            if outcome is CycleOutcome.RERUN and self._allow_immediate_rerun():
                continue

            wait = max(0.0, self.settings.check_interval - (self.clock() - started))
            logger.info(f"⏳ Next check in {wait / 60:.1f} min")
            await self.sleep(wait)

        logger.info("👋 Alert worker stopped")

    def _allow_immediate_rerun(self) -> bool:
        now = self.clock()
        window = self.settings.immediate_retry_window
        while self._immediate_runs and now - self._immediate_runs[0] >= window:
            self._immediate_runs.popleft()

        if len(self._immediate_runs) >= self.settings.max_immediate_retries:
            logger.warning(
                f"⚠️ {len(self._immediate_runs)} immediate re-runs in the last "
                f"{window / 60:.0f} min, waiting for the next scheduled check"
            )
            return False

        self._immediate_runs.append(now)
        logger.info("🔁 Starting a new cycle immediately")
        return True

    async def run_cycle(self) -> CycleOutcome:
        """One alert-check cycle; never raises"""
        if self.in_progress:
            logger.warning("⚠️ A check is already in progress, skipping")
            return CycleOutcome.SKIPPED

        self.in_progress = True
        self.cycle_count += 1
        try:
            return await self._cycle()
        except Exception as e:
            logger.exception(f"❌ Fatal error in alert cycle: {e}")
            return CycleOutcome.FAILED
        finally:
            self.in_progress = False

    async def _cycle(self) -> CycleOutcome:
        logger.info(f"🔔 Starting alert check #{self.cycle_count}...")

        if self.cookies.needs_refresh():
            logger.info("⏰ Cookie refresh interval elapsed, refreshing...")
            await self.cookies.refresh()

        cookies = await self.cookies.get_cookies()
        if not cookies:
            logger.error("❌ No cookies available, the check cannot run")
            logger.info("💡 Set VINTED_FULL_COOKIES or COOKIE_FACTORY_COMMAND to provide cookies")
            return CycleOutcome.FAILED

        result = await self.checker.check(cookies)

        if result.success:
            if self.failover is not None:
                self.failover.reset_403_counter()
            self._log_matches(result)
            return CycleOutcome.SUCCESS

        if result.is_blocked:
            return await self._handle_blocked(result)

        logger.error(f"❌ Alert check failed: {result.error}")
        return CycleOutcome.FAILED

    async def _handle_blocked(self, result: AlertCheckResult) -> CycleOutcome:
        logger.error(f"❌ 403 detected: {result.error}")

        if self.failover_enabled:
            logger.info("🔄 Attempting automatic failover...")
            if await self.failover.handle_403_failover():
                logger.info(f"✅ Failover succeeded, retrying in {self.settings.post_failover_delay:.0f}s...")
                if await self.sleep(self.settings.post_failover_delay):
                    return CycleOutcome.FAILED
                return CycleOutcome.RERUN
            logger.warning("⚠️ Failover unavailable or failed, falling back to wait-and-refresh")

        self.cookies.invalidate()
        logger.info("⏸️ Pausing alert checks")
        logger.info(f"⏳ Waiting {self.settings.wait_after_403 / 60:.0f} min before retrying...")
        if await self.sleep(self.settings.wait_after_403):
            return CycleOutcome.FAILED

        logger.info("🔄 Regenerating cookies after the wait...")
        if await self.cookies.refresh():
            logger.info("✅ New cookies generated")
            return CycleOutcome.RERUN

        logger.error("❌ Could not generate new cookies after 403")
        return CycleOutcome.FAILED

    @staticmethod
    def _log_matches(result: AlertCheckResult) -> None:
        logger.success(
            f"✅ Check complete: {len(result.matches)} match(es) for {result.alerts_checked} alert(s)"
        )
        if result.matches:
            logger.info(f"📦 Items checked: {result.items_checked}")
            summary = ", ".join(
                f"{m.get('alertTitle', '?')} → {(m.get('item') or {}).get('title', '?')}"
                for m in result.matches
            )
            logger.info(f"🎯 Matches: {summary}")
