"""Node selection strategies"""

import random
from datetime import datetime
from typing import Optional

from loguru import logger

from .models import RotationStrategy
from .node_pool import NodePool, ScraperNode


class NodeSelector:
    """
    Picks the next node from a pool.

    The round-robin cursor persists across calls. Ties in least-used and
    health-based selection go to the node listed first.
    """

    def __init__(self, pool: NodePool, rng: Optional[random.Random] = None):
        self.pool = pool
        self.cursor = 0
        self.rng = rng or random.Random()

    def select(
        self,
        strategy: RotationStrategy,
        now: Optional[datetime] = None,
    ) -> Optional[ScraperNode]:
        """
        Select a node according to ``strategy``.

        Returns:
            The chosen node, or None when no node is available
        """
        now = now or datetime.now()
        available = self.pool.available_nodes(now)

        if not available:
            logger.error("❌ No scraper node available")
            return None

        if strategy is RotationStrategy.ROUND_ROBIN:
            return self._round_robin(available, now)

        if strategy is RotationStrategy.RANDOM:
            return self.rng.choice(available)

        if strategy is RotationStrategy.LEAST_USED:
            best = available[0]
            for node in available[1:]:
                if node.request_count < best.request_count:
                    best = node
            return best

        if strategy is RotationStrategy.HEALTH_BASED:
            best = available[0]
            best_ratio = _success_ratio(best)
            for node in available[1:]:
                ratio = _success_ratio(node)
                if ratio > best_ratio:
                    best, best_ratio = node, ratio
            return best

        return available[0]

    def _round_robin(self, available, now: datetime) -> ScraperNode:
        nodes = self.pool.nodes
        for _ in range(len(nodes)):
            node = nodes[self.cursor % len(nodes)]
            self.cursor += 1
            if self.pool.check_node(node, now):
                return node

        return available[0]


def _success_ratio(node: ScraperNode) -> float:
    return node.success_count / max(node.request_count, 1)
