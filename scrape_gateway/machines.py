"""Machine control for failover (Fly.io machines via the fly CLI)"""

import asyncio
from abc import ABC, abstractmethod
from typing import List, Optional

import orjson
from loguru import logger

from .config import FLY_PROCESS_GROUP
from .exceptions import FailoverError


class MachineController(ABC):
    """Operations the failover manager needs from the hosting platform"""

    @abstractmethod
    async def list_machines(self, app: str) -> List[str]:
        """IDs of machines that are started or stopped"""

    @abstractmethod
    async def get_machine_region(self, app: str, machine_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def restart_machine(self, app: str, machine_id: str) -> bool:
        pass

    @abstractmethod
    async def move_machine(self, app: str, machine_id: str, region: str) -> bool:
        pass

    @abstractmethod
    async def create_machine(self, app: str, region: str) -> Optional[str]:
        """Create a machine and return its ID, or None on failure"""


class FlyMachineController(MachineController):
    """Drives ``fly machines`` subcommands. Failures are logged, never raised."""

    def __init__(self, binary: str = "fly", process_group: str = FLY_PROCESS_GROUP, timeout: float = 120.0):
        self.binary = binary
        self.process_group = process_group
        self.timeout = timeout

    async def _run(self, *args: str) -> bytes:
        """Run a fly command and return stdout. Raises FailoverError on failure."""
        cmd = [self.binary, "machines", *args]
        logger.debug(f"$ {' '.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise FailoverError(f"Cannot run {self.binary}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise FailoverError(f"{' '.join(cmd)} timed out after {self.timeout:.0f}s")

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip() or f"exit code {proc.returncode}"
            raise FailoverError(f"{' '.join(cmd)} failed: {message}")

        return stdout

    async def list_machines(self, app: str) -> List[str]:
        try:
            machines = orjson.loads(await self._run("list", "--app", app, "--json"))
        except (FailoverError, orjson.JSONDecodeError) as e:
            logger.error(f"Failed to list machines for {app}: {e}")
            return []

        return [
            m["id"]
            for m in machines or []
            if m.get("state") in ("started", "stopped") and m.get("id")
        ]

    async def get_machine_region(self, app: str, machine_id: str) -> Optional[str]:
        try:
            machine = orjson.loads(await self._run("status", machine_id, "--app", app, "--json"))
        except (FailoverError, orjson.JSONDecodeError) as e:
            logger.error(f"Failed to get region of machine {machine_id}: {e}")
            return None

        return machine.get("region") or None

    async def restart_machine(self, app: str, machine_id: str) -> bool:
        logger.info(f"🔄 Restarting machine {machine_id}...")
        try:
            await self._run("restart", machine_id, "--app", app)
        except FailoverError as e:
            logger.error(f"❌ Restart of machine {machine_id} failed: {e}")
            return False

        logger.success(f"✅ Machine {machine_id} restarted")
        return True

    async def move_machine(self, app: str, machine_id: str, region: str) -> bool:
        logger.info(f"🌍 Moving machine {machine_id} to region {region}...")
        try:
            await self._run("move", machine_id, "--region", region, "--app", app)
        except FailoverError as e:
            logger.error(f"❌ Move of machine {machine_id} failed: {e}")
            return False

        logger.success(f"✅ Machine {machine_id} moved to {region}")
        return True

    async def create_machine(self, app: str, region: str) -> Optional[str]:
        logger.info(f"🆕 Creating a machine in region {region} for {app}...")
        try:
            output = await self._run(
                "create",
                "--region", region,
                "--app", app,
                "--process-group", self.process_group,
                "--json",
            )
            machine_id = orjson.loads(output).get("id")
        except (FailoverError, orjson.JSONDecodeError, AttributeError) as e:
            logger.error(f"❌ Machine creation in {region} failed: {e}")
            return None

        if not machine_id:
            logger.error(f"❌ Machine creation in {region} returned no id")
            return None

        logger.success(f"✅ New machine created: {machine_id}")
        return machine_id
