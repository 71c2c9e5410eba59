"""Forward one proxied request to a scraper node"""

import asyncio
from typing import Any, Optional

import httpx
from loguru import logger

from .config import NODE_EXECUTE_PATH
from .models import ForwardResult, ProxyRequest
from .node_pool import NodePool, ScraperNode


class RequestForwarder:
    """
    Sends a request to a node's execute endpoint and records the outcome.

    - Every call counts against the node, even when it fails
    - 403 bans the node for the ban duration
    - Timeouts and network errors feed the node's circuit breaker
    """

    def __init__(self, pool: NodePool, client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            pool: Node registry that owns the counters
            client: Optional shared httpx client (created lazily otherwise)
        """
        self.pool = pool
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def forward(
        self,
        node: ScraperNode,
        request: ProxyRequest,
        timeout: float,
        ban_duration: float,
    ) -> ForwardResult:
        """
        Perform one outbound call through ``node``.

        Args:
            node: Node to use
            request: Request to proxy
            timeout: Hard timeout in seconds for the whole call
            ban_duration: Ban length in seconds applied on 403

        Returns:
            ForwardResult; never raises for HTTP or transport failures
        """
        self.pool.record_attempt(node)

        headers = {"Content-Type": "application/json"}
        headers.update(request.headers or {})

        try:
            # httpx timeouts are per phase; wait_for bounds the whole call
            response = await asyncio.wait_for(
                self.client.post(
                    f"{node.endpoint}{NODE_EXECUTE_PATH}",
                    json=request.to_payload(),
                    headers=headers,
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError):
            logger.warning(f"⏱️ Node {node.name} ({node.region}) timed out after {timeout:.1f}s")
            self.pool.record_transport_error(node, "Timeout")
            return ForwardResult(success=False, error="Timeout")
        except httpx.HTTPError as e:
            message = str(e) or e.__class__.__name__
            logger.warning(f"❌ Node {node.name} ({node.region}) network error: {message}")
            self.pool.record_transport_error(node, message)
            return ForwardResult(success=False, error=message)

        data = _decode_body(response)

        if response.is_success:
            self.pool.record_success(node)
            return ForwardResult(success=True, data=data, status_code=response.status_code)

        error = _error_message(data, response.status_code)
        self.pool.record_http_error(node, error, response.status_code, ban_duration)

        return ForwardResult(success=False, error=error, status_code=response.status_code)


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(data: Any, status_code: int) -> str:
    if isinstance(data, dict) and data.get("error"):
        return str(data["error"])
    return f"HTTP {status_code}"
