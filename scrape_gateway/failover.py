"""Automatic failover after sustained 403 errors

Escalation order: restart the current machine, then move to the next
region, then switch to the next fallback app. A successful escalation
starts a cooldown during which further 403s are ignored.
"""

import asyncio
import os
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

from loguru import logger

from .config import (
    DEFAULT_FAILOVER_COOLDOWN,
    DEFAULT_FAILOVER_REGIONS,
    DEFAULT_FLY_APP,
    DEFAULT_MAX_403_BEFORE_FAILOVER,
    FAILOVER_HISTORY_LIMIT,
    FAILOVER_SETTLE_DELAY,
    env_int,
    env_list,
    env_seconds,
)
from .machines import MachineController


@dataclass
class FailoverConfig:
    """Failover tuning. Durations are in seconds."""

    app_name: str = DEFAULT_FLY_APP
    regions: List[str] = field(default_factory=lambda: DEFAULT_FAILOVER_REGIONS.split(","))
    fallback_apps: List[str] = field(default_factory=list)
    max_403_before_failover: int = DEFAULT_MAX_403_BEFORE_FAILOVER
    failover_cooldown: float = DEFAULT_FAILOVER_COOLDOWN
    settle_delay: float = FAILOVER_SETTLE_DELAY

    def __post_init__(self):
        if self.max_403_before_failover < 1:
            raise ValueError("max_403_before_failover must be >= 1")
        if not self.regions:
            raise ValueError("At least one failover region is required")

    @classmethod
    def from_env(cls) -> "FailoverConfig":
        app_name = os.getenv("FLY_APP_NAME") or DEFAULT_FLY_APP
        return cls(
            app_name=app_name,
            regions=env_list("FAILOVER_REGIONS", DEFAULT_FAILOVER_REGIONS),
            fallback_apps=env_list("FAILOVER_APPS", app_name),
            max_403_before_failover=env_int("MAX_403_BEFORE_FAILOVER", DEFAULT_MAX_403_BEFORE_FAILOVER),
            failover_cooldown=env_seconds("FAILOVER_COOLDOWN_MS", int(DEFAULT_FAILOVER_COOLDOWN * 1000)),
        )


@dataclass
class ExecutionUnit:
    """Where the worker currently runs"""

    region: str
    machine: str
    app: str

    def __str__(self) -> str:
        return f"{self.region}/{self.machine or '-'} (app: {self.app})"


@dataclass
class FailoverEvent:
    timestamp: float
    reason: str
    from_unit: ExecutionUnit
    to_unit: ExecutionUnit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "reason": self.reason,
            "from": vars(self.from_unit).copy(),
            "to": vars(self.to_unit).copy(),
        }


@dataclass
class FailoverState:
    current_region: str
    current_machine: str
    current_app: str
    last_failover: Optional[float] = None
    consecutive_403: int = 0
    failover_history: Deque[FailoverEvent] = field(
        default_factory=lambda: deque(maxlen=FAILOVER_HISTORY_LIMIT)
    )

    @classmethod
    def from_env(cls, config: FailoverConfig) -> "FailoverState":
        return cls(
            current_region=os.getenv("FLY_REGION") or config.regions[0],
            current_machine=os.getenv("FLY_MACHINE_ID", ""),
            current_app=os.getenv("FLY_APP_NAME") or config.app_name,
        )

    @property
    def unit(self) -> ExecutionUnit:
        return ExecutionUnit(self.current_region, self.current_machine, self.current_app)


def get_next_region(current_region: str, regions: List[str]) -> str:
    """Region after ``current_region``, wrapping; the first one if unknown"""
    try:
        index = regions.index(current_region)
    except ValueError:
        return regions[0]
    return regions[(index + 1) % len(regions)]


def get_next_app(current_app: str, apps: List[str]) -> str:
    """App after ``current_app``, wrapping; the first one if unknown"""
    try:
        index = apps.index(current_app)
    except ValueError:
        return apps[0]
    return apps[(index + 1) % len(apps)]


class FailoverManager:
    """
    Escalation policy for systemic 403s.

    ``handle_403_failover`` is called once per detected 403. Nothing happens
    until ``max_403_before_failover`` of them accumulate outside a cooldown.
    The counter is reset as soon as an escalation is attempted, whatever
    its outcome; only a successful escalation starts the cooldown.
    """

    def __init__(
        self,
        config: FailoverConfig,
        controller: MachineController,
        state: Optional[FailoverState] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            config: Failover configuration
            controller: Platform machine controller
            state: Initial state (defaults to the environment)
            clock: Time source in seconds
            sleep: Awaitable sleep used for the settle delay
        """
        self.config = config
        self.controller = controller
        self.state = state or FailoverState.from_env(config)
        self.clock = clock
        self.sleep = sleep

    async def initialize(self) -> None:
        """Discover machines and the current machine's region"""
        logger.info("🚀 Initializing failover...")

        machines = await self.controller.list_machines(self.config.app_name)
        if not machines:
            logger.warning("⚠️ No machine found, failover will be limited")
            return

        current = os.getenv("FLY_MACHINE_ID") or machines[0]
        self.state.current_machine = current

        region = await self.controller.get_machine_region(self.config.app_name, current)
        if region:
            self.state.current_region = region

        logger.info(f"✅ Failover initialized: {self.state.current_region}/{self.state.current_machine}")
        logger.info(f"   Regions: {', '.join(self.config.regions)}")
        logger.info(f"   Machines: {len(machines)}")
        if len(self.config.fallback_apps) > 1:
            logger.info(f"   Fallback apps: {', '.join(self.config.fallback_apps)}")

    async def handle_403_failover(
        self,
        region: Optional[str] = None,
        machine_id: Optional[str] = None,
        app_name: Optional[str] = None,
        reason: str = "403 detected",
    ) -> bool:
        """
        Register a systemic 403 and escalate once the threshold is reached.

        Args:
            region: Region the 403 was observed in (defaults to current)
            machine_id: Machine the 403 was observed on (defaults to current)
            app_name: App the 403 was observed in (defaults to current)
            reason: Recorded in the failover history

        Returns:
            True if an escalation succeeded
        """
        now = self.clock()

        if self.in_cooldown(now):
            remaining = self.config.failover_cooldown - (now - self.state.last_failover)
            logger.warning(f"⏸️ Failover in cooldown, {remaining:.0f}s before the next one")
            return False

        self.state.consecutive_403 += 1
        threshold = self.config.max_403_before_failover
        logger.warning(f"🚨 403 detected ({self.state.consecutive_403}/{threshold})")

        if self.state.consecutive_403 < threshold:
            logger.info(f"⏳ Waiting for {threshold - self.state.consecutive_403} more 403(s) before failover")
            return False

        self.state.consecutive_403 = 0
        logger.info("🔄 Triggering automatic failover...")

        current = self.state.unit
        from_unit = ExecutionUnit(
            region=region or current.region,
            machine=machine_id or current.machine,
            app=app_name or current.app,
        )

        to_unit = await self._escalate(from_unit)
        if to_unit is None:
            logger.error("❌ Failover failed: no strategy worked")
            return False

        self.state.current_region = to_unit.region
        self.state.current_machine = to_unit.machine
        self.state.current_app = to_unit.app
        self.state.last_failover = now
        self.state.failover_history.append(
            FailoverEvent(timestamp=now, reason=reason, from_unit=from_unit, to_unit=to_unit)
        )

        logger.success(f"✅ Failover complete: {from_unit} → {to_unit}")

        logger.info(f"⏳ Waiting {self.config.settle_delay:.0f}s for the new machine to be ready...")
        await self.sleep(self.config.settle_delay)
        return True

    def in_cooldown(self, now: Optional[float] = None) -> bool:
        if self.state.last_failover is None:
            return False
        now = self.clock() if now is None else now
        return now - self.state.last_failover < self.config.failover_cooldown

    async def _escalate(self, unit: ExecutionUnit) -> Optional[ExecutionUnit]:
        """Try each strategy in order; return the new unit or None"""
        if unit.machine:
            logger.info("📋 Step 1: restarting the current machine...")
            if await self.controller.restart_machine(unit.app, unit.machine):
                return replace(unit)

        if len(self.config.regions) > 1:
            logger.info("📋 Step 2: switching region...")
            moved = await self._switch_region(unit)
            if moved is not None:
                return moved

        if len(self.config.fallback_apps) > 1:
            logger.info("📋 Step 3: switching to a fallback app...")
            switched = await self._switch_app(unit)
            if switched is not None:
                return switched

        return None

    async def _switch_region(self, unit: ExecutionUnit) -> Optional[ExecutionUnit]:
        next_region = get_next_region(unit.region, self.config.regions)
        machines = await self.controller.list_machines(unit.app)

        if machines:
            machine = machines[0]
            if await self.controller.move_machine(unit.app, machine, next_region):
                return replace(unit, region=next_region, machine=machine)

        new_machine = await self.controller.create_machine(unit.app, next_region)
        if new_machine:
            return replace(unit, region=next_region, machine=new_machine)
        return None

    async def _switch_app(self, unit: ExecutionUnit) -> Optional[ExecutionUnit]:
        next_app = get_next_app(unit.app, self.config.fallback_apps)
        machines = await self.controller.list_machines(next_app)

        if machines:
            return replace(unit, app=next_app, machine=machines[0])

        new_machine = await self.controller.create_machine(next_app, unit.region)
        if new_machine:
            return replace(unit, app=next_app, machine=new_machine)
        return None

    def reset_403_counter(self) -> None:
        """Called after a clean check"""
        if self.state.consecutive_403 > 0:
            logger.info(f"✅ Resetting 403 counter (was {self.state.consecutive_403})")
            self.state.consecutive_403 = 0

    def get_state(self) -> Dict[str, Any]:
        """Copy of the state, history included"""
        return {
            "currentRegion": self.state.current_region,
            "currentMachine": self.state.current_machine,
            "currentApp": self.state.current_app,
            "lastFailover": self.state.last_failover,
            "consecutive403": self.state.consecutive_403,
            "failoverHistory": [e.to_dict() for e in self.state.failover_history],
        }
