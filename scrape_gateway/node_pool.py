"""Scraper node registry with lazy ban expiry and health tracking"""

import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from loguru import logger

from .config import DEFAULT_NODES, UNHEALTHY_ERROR_THRESHOLD


@dataclass
class ScraperNode:
    """A remote worker that forwards HTTP requests for the gateway"""

    id: str
    region: str
    endpoint: str
    name: str = ""

    # Circuit breaker flag; only reset_node() turns it back on
    is_healthy: bool = True

    # Ban after a 403, expired lazily on read
    is_banned: bool = False
    banned_until: Optional[datetime] = None

    # Monotonic counters
    request_count: int = 0
    success_count: int = 0
    error_count: int = 0

    last_used: Optional[datetime] = None
    last_error: Optional[str] = None

    def __post_init__(self):
        if not self.name:
            self.name = self.id

    def ban(self, duration: float, now: Optional[datetime] = None) -> None:
        """Take the node out of rotation for ``duration`` seconds"""
        now = now or datetime.now()
        self.is_banned = True
        self.banned_until = now + timedelta(seconds=duration)

        logger.warning(
            f"🚫 Node {self.name} ({self.region}) banned for {duration:.0f}s "
            f"(until {self.banned_until.strftime('%H:%M:%S')})"
        )

    def get_success_rate(self) -> float:
        """Calculate success rate percentage"""
        if self.request_count == 0:
            return 0.0
        return (self.success_count / self.request_count) * 100

    def reset(self) -> None:
        """Back to healthy and unbanned; counters are kept"""
        self.is_banned = False
        self.banned_until = None
        self.is_healthy = True
        self.last_error = None

    def to_stats(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "region": self.region,
            "isHealthy": self.is_healthy,
            "isBanned": self.is_banned,
            "requestCount": self.request_count,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "successRate": self.get_success_rate(),
            "lastError": self.last_error,
        }

    def __str__(self) -> str:
        if not self.is_healthy:
            status = "🔴 UNHEALTHY"
        elif self.is_banned:
            status = "🟠 BANNED"
        else:
            status = "🟢 ACTIVE"
        return (
            f"Node {self.id} {status} - {self.region} {self.endpoint} "
            f"[Success: {self.get_success_rate():.1f}%]"
        )


def is_available(node: ScraperNode, now: datetime) -> bool:
    """True if the node is healthy and not (or no longer) banned. Pure."""
    if not node.is_healthy:
        return False
    if not node.is_banned:
        return True
    return node.banned_until is None or now >= node.banned_until


def clear_expired_ban(node: ScraperNode, now: datetime) -> bool:
    """Lift a ban whose time is up. Returns True if a ban was cleared."""
    if not node.is_banned:
        return False
    if node.banned_until is not None and now < node.banned_until:
        return False

    node.is_banned = False
    node.banned_until = None
    logger.info(f"✅ Node {node.name} ({node.region}) back in rotation after ban expiry")
    return True


class NodePool:
    """
    In-memory table of scraper nodes.

    Mutations are synchronous (no await between read and write), so the
    counters stay consistent under the asyncio scheduler without a lock.
    Node order is preserved; round-robin depends on it.
    """

    def __init__(self, nodes: List[ScraperNode]):
        ids = [n.id for n in nodes]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate scraper node ids: {ids}")

        self.nodes: List[ScraperNode] = list(nodes)

        logger.info(f"🌐 Node pool initialized: {len(self.nodes)} nodes")
        for node in self.nodes:
            logger.debug(f"   {node.id} ({node.region}) → {node.endpoint}")

    @classmethod
    def from_env(cls) -> "NodePool":
        return cls(load_nodes_from_env())

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, node_id: str) -> Optional[ScraperNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def check_node(self, node: ScraperNode, now: Optional[datetime] = None) -> bool:
        """Availability check that also clears an expired ban"""
        now = now or datetime.now()
        if node.is_healthy:
            clear_expired_ban(node, now)
        return is_available(node, now)

    def available_nodes(self, now: Optional[datetime] = None) -> List[ScraperNode]:
        now = now or datetime.now()
        return [n for n in self.nodes if self.check_node(n, now)]

    def record_attempt(self, node: ScraperNode, now: Optional[datetime] = None) -> None:
        node.request_count += 1
        node.last_used = now or datetime.now()

    def record_success(self, node: ScraperNode) -> None:
        node.success_count += 1

    def record_http_error(
        self,
        node: ScraperNode,
        error: str,
        status_code: int,
        ban_duration: float,
    ) -> None:
        """Count an HTTP error; a 403 bans the node"""
        node.error_count += 1
        node.last_error = error

        if status_code == 403:
            node.ban(ban_duration)

    def record_transport_error(self, node: ScraperNode, error: str) -> None:
        """Count a timeout or network error and open the circuit if it keeps failing"""
        node.error_count += 1
        node.last_error = error

        if node.error_count > UNHEALTHY_ERROR_THRESHOLD and node.error_count > node.success_count:
            if node.is_healthy:
                node.is_healthy = False
                logger.warning(
                    f"⚠️ Node {node.name} ({node.region}) marked UNHEALTHY "
                    f"({node.error_count} errors / {node.success_count} successes)"
                )

    def reset_node(self, node_id: str) -> bool:
        node = self.get(node_id)
        if node is None:
            return False

        node.reset()
        logger.info(f"✅ Node {node.name} reset")
        return True

    def get_stats(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Snapshot of the cluster"""
        available = self.available_nodes(now)

        return {
            "totalNodes": len(self.nodes),
            "availableNodes": len(available),
            "bannedNodes": sum(1 for n in self.nodes if n.is_banned),
            "unhealthyNodes": sum(1 for n in self.nodes if not n.is_healthy),
            "nodes": [n.to_stats() for n in self.nodes],
        }

    def print_stats(self) -> None:
        """Print formatted node statistics"""
        stats = self.get_stats()

        logger.info("")
        logger.info("=" * 80)
        logger.info("🌐 SCRAPER CLUSTER STATISTICS")
        logger.info("=" * 80)
        logger.info(f"Total Nodes:           {stats['totalNodes']}")
        logger.info(f"✅ Available:          {stats['availableNodes']}")
        logger.info(f"🟠 Banned:             {stats['bannedNodes']}")
        logger.info(f"🔴 Unhealthy:          {stats['unhealthyNodes']}")
        logger.info("")
        logger.info("Per-Node Breakdown:")

        for node in self.nodes:
            logger.info(
                f"  {node} - {node.request_count} req, "
                f"{node.success_count} ok, {node.error_count} errors"
            )
            if node.last_error:
                logger.info(f"     Last error: {node.last_error}")

        logger.info("=" * 80)


def load_nodes_from_env() -> List[ScraperNode]:
    """
    Build the node list from the environment.

    ``SCRAPER_NODES`` takes ``id|region|endpoint`` entries separated by
    commas. Without it, the three default nodes are used with endpoints
    from ``SCRAPER_FR_URL``, ``SCRAPER_NL_URL`` and ``SCRAPER_US_URL``.
    """
    raw = os.getenv("SCRAPER_NODES", "").strip()
    if raw:
        nodes = []
        for i, entry in enumerate(raw.split(",")):
            entry = entry.strip()
            if not entry:
                continue
            parts = [p.strip() for p in entry.split("|")]
            if len(parts) != 3 or not all(parts):
                logger.warning(f"Skipping invalid node entry {i + 1}: {entry}")
                continue
            node_id, region, endpoint = parts
            nodes.append(ScraperNode(id=node_id, region=region, endpoint=endpoint.rstrip("/")))
        if not nodes:
            raise ValueError("SCRAPER_NODES is set but holds no valid node")
        return nodes

    return [
        ScraperNode(
            id=node_id,
            name=name,
            region=region,
            endpoint=os.getenv(env_var, fallback).rstrip("/"),
        )
        for node_id, name, region, env_var, fallback in DEFAULT_NODES
    ]
