"""Gateway router for the rotating scraper cluster"""

import os
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
import orjson
from loguru import logger

from .config import (
    DEFAULT_BAN_DURATION,
    DEFAULT_GATEWAY_TIMEOUT,
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_ROTATION_STRATEGY,
    env_bool,
    env_int,
    env_seconds,
)
from .forwarder import RequestForwarder
from .models import ProxyRequest, RotationStrategy, RouteResult
from .node_pool import NodePool, ScraperNode, load_nodes_from_env
from .selector import NodeSelector

_TUNABLE_FIELDS = ("rotation_strategy", "ban_duration", "timeout", "retry_attempts")


@dataclass
class GatewayConfig:
    """Gateway tuning. Durations are in seconds."""

    nodes: List[ScraperNode] = field(default_factory=list)
    rotation_strategy: RotationStrategy = RotationStrategy.ROUND_ROBIN
    ban_duration: float = DEFAULT_BAN_DURATION
    timeout: float = DEFAULT_GATEWAY_TIMEOUT
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS

    def __post_init__(self):
        self.rotation_strategy = RotationStrategy.parse(self.rotation_strategy)
        self.validate()

    def validate(self) -> None:
        if self.retry_attempts < 1:
            raise ValueError(f"retry_attempts must be >= 1, got {self.retry_attempts}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be > 0, got {self.timeout}")
        if self.ban_duration < 0:
            raise ValueError(f"ban_duration must be >= 0, got {self.ban_duration}")

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        return cls(
            nodes=load_nodes_from_env(),
            rotation_strategy=os.getenv("GATEWAY_ROTATION_STRATEGY") or DEFAULT_ROTATION_STRATEGY,
            ban_duration=env_seconds("GATEWAY_BAN_DURATION_MS", int(DEFAULT_BAN_DURATION * 1000)),
            timeout=env_seconds("GATEWAY_TIMEOUT_MS", int(DEFAULT_GATEWAY_TIMEOUT * 1000)),
            retry_attempts=env_int("GATEWAY_RETRY_ATTEMPTS", DEFAULT_RETRY_ATTEMPTS),
        )


class GatewayRouter:
    """
    Routes scrape requests through the node cluster.

    Each call tries up to ``retry_attempts`` nodes in sequence. A node that
    answers 403 is banned, so the next attempt in the same call lands
    elsewhere.
    """

    def __init__(
        self,
        config: GatewayConfig,
        client: Optional[httpx.AsyncClient] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            config: Gateway configuration (owns the node list)
            client: Optional httpx client used to reach the nodes
            rng: Optional random source for the random strategy
        """
        self.config = config
        self.pool = NodePool(config.nodes)
        self.selector = NodeSelector(self.pool, rng=rng)
        self.forwarder = RequestForwarder(self.pool, client=client)

        logger.info(
            f"Gateway initialized: strategy={config.rotation_strategy.value}, "
            f"retries={config.retry_attempts}, timeout={config.timeout:.0f}s, "
            f"ban={config.ban_duration:.0f}s"
        )

    @classmethod
    def from_env(cls, client: Optional[httpx.AsyncClient] = None) -> "GatewayRouter":
        return cls(GatewayConfig.from_env(), client=client)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.forwarder.aclose()

    def select_node(self) -> Optional[ScraperNode]:
        return self.selector.select(self.config.rotation_strategy)

    async def route_request(self, request: ProxyRequest) -> RouteResult:
        """
        Route a request through the cluster with rotation on failure.

        Returns:
            RouteResult with the node used on success, or the failure reason
        """
        max_attempts = self.config.retry_attempts

        for attempt in range(max_attempts):
            node = self.select_node()

            if node is None:
                return RouteResult(
                    success=False,
                    error="No scraper node available",
                    attempts=attempt,
                )

            logger.info(f"🔄 Attempt {attempt + 1}/{max_attempts} via {node.name} ({node.region})")

            result = await self.forwarder.forward(
                node,
                request,
                timeout=self.config.timeout,
                ban_duration=self.config.ban_duration,
            )

            if result.success:
                logger.success(f"✅ Request succeeded via {node.name} ({node.region})")
                return RouteResult(
                    success=True,
                    data=result.data,
                    node_used=node.id,
                    attempts=attempt + 1,
                )

            logger.warning(f"❌ Failed via {node.name} ({node.region}): {result.error}")
            if result.status_code == 403:
                logger.info("🔄 Rotating to another node after 403...")

        logger.error(f"❌ Request to {request.url} failed after {max_attempts} tentatives")
        return RouteResult(
            success=False,
            error=f"Request failed after {max_attempts} tentatives with different nodes",
            attempts=max_attempts,
        )

    def get_cluster_stats(self) -> Dict[str, Any]:
        return self.pool.get_stats()

    def reset_node(self, node_id: str) -> bool:
        """Clear ban and circuit breaker state for one node"""
        return self.pool.reset_node(node_id)

    def update_config(self, **updates) -> None:
        """Change tuning fields; the node list is fixed for the router's lifetime"""
        unknown = set(updates) - set(_TUNABLE_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update gateway fields: {', '.join(sorted(unknown))}")

        previous = {name: getattr(self.config, name) for name in updates}
        try:
            for name, value in updates.items():
                if name == "rotation_strategy":
                    value = RotationStrategy.parse(value)
                setattr(self.config, name, value)
            self.config.validate()
        except ValueError:
            for name, value in previous.items():
                setattr(self.config, name, value)
            raise

        logger.info(f"✅ Gateway configuration updated: {', '.join(sorted(updates))}")

    def print_stats(self) -> None:
        self.pool.print_stats()

    async def fetch_via_gateway(
        self,
        url: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        use_gateway: Optional[bool] = None,
    ) -> httpx.Response:
        """
        Fetch ``url`` through the cluster when the gateway is enabled, else directly.

        A gateway failure falls back to a direct request.
        """
        headers = headers or {}
        enabled = use_gateway if use_gateway is not None else env_bool("ENABLE_GATEWAY")

        if enabled:
            logger.info(f"🌐 Using gateway for: {url}")
            result = await self.route_request(
                ProxyRequest(url=url, method=method, headers=headers, body=body)
            )
            if result.success and result.data is not None:
                return httpx.Response(200, json=_unwrap_json(result.data))

            logger.error(f"Gateway request failed, falling back to direct fetch: {result.error}")

        return await self.forwarder.client.request(
            method,
            url,
            headers=headers,
            json=body,
            timeout=self.config.timeout,
        )


def _unwrap_json(data: Any) -> Any:
    if isinstance(data, str):
        try:
            return orjson.loads(data)
        except orjson.JSONDecodeError:
            return data
    return data
