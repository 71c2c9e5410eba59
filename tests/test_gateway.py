import asyncio
import time

import httpx
import pytest

from scrape_gateway.forwarder import RequestForwarder
from scrape_gateway.gateway import GatewayConfig, GatewayRouter
from scrape_gateway.models import ProxyRequest, RotationStrategy
from scrape_gateway.node_pool import NodePool, ScraperNode


def make_nodes(count=3):
    return [
        ScraperNode(id=f"node-{i}", region=f"r{i}", endpoint=f"http://node-{i}")
        for i in range(1, count + 1)
    ]


def make_router(handler, count=3, **config):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GatewayRouter(GatewayConfig(nodes=make_nodes(count), **config), client=client)


@pytest.mark.asyncio
async def test_forwarder_posts_payload_to_execute_endpoint():
    seen = {}

    def handler(request: httpx.Request):
        seen["url"] = str(request.url)
        seen["body"] = request.read()
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"success": True, "data": "<html>"})

    pool = NodePool(make_nodes(1))
    forwarder = RequestForwarder(pool, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    request = ProxyRequest(url="https://example.com/x", method="POST", headers={"Authorization": "t"}, body={"q": 1})

    result = await forwarder.forward(pool.nodes[0], request, timeout=5, ban_duration=60)

    assert result.success is True
    assert result.status_code == 200
    assert seen["url"] == "http://node-1/api/v1/scrape/execute"
    assert b'"url":"https://example.com/x"' in seen["body"].replace(b" ", b"")
    assert seen["auth"] == "t"
    node = pool.nodes[0]
    assert (node.request_count, node.success_count, node.error_count) == (1, 1, 0)
    assert node.last_used is not None


@pytest.mark.asyncio
async def test_forwarder_non_403_error_is_not_a_ban():
    def handler(request):
        return httpx.Response(502, json={"success": False, "error": "HTTP 502"})

    pool = NodePool(make_nodes(1))
    forwarder = RequestForwarder(pool, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    result = await forwarder.forward(pool.nodes[0], ProxyRequest(url="https://e.x"), timeout=5, ban_duration=60)

    assert result.success is False
    assert result.status_code == 502
    assert result.error == "HTTP 502"
    assert pool.nodes[0].is_banned is False
    assert pool.nodes[0].error_count == 1


@pytest.mark.asyncio
async def test_scenario_ban_timeout_then_success():
    # node-1 answers 403, node-2 times out, node-3 succeeds
    def handler(request: httpx.Request):
        host = request.url.host
        if host == "node-1":
            return httpx.Response(403, json={"success": False, "error": "HTTP 403"})
        if host == "node-2":
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(200, json={"ok": True})

    router = make_router(handler, rotation_strategy="round-robin", retry_attempts=3)
    result = await router.route_request(ProxyRequest(url="https://www.vinted.fr/items/1"))

    assert result.success is True
    assert result.data == {"ok": True}
    assert result.node_used == "node-3"
    assert result.to_dict() == {"success": True, "data": {"ok": True}, "nodeUsed": "node-3"}

    node1, node2, node3 = router.pool.nodes
    assert node1.is_banned is True
    assert node2.error_count == 1
    assert node2.last_error == "Timeout"
    assert node3.success_count == 1
    await router.aclose()


@pytest.mark.asyncio
async def test_scenario_all_nodes_banned():
    calls = []

    def handler(request: httpx.Request):
        calls.append(request.url.host)
        return httpx.Response(403, json={"success": False, "error": "HTTP 403"})

    router = make_router(handler, retry_attempts=3)
    result = await router.route_request(ProxyRequest(url="https://www.vinted.fr"))

    assert result.success is False
    assert "after 3 tentatives" in result.error
    assert result.to_dict() == {"success": False, "error": result.error}
    assert calls == ["node-1", "node-2", "node-3"]
    assert all(n.is_banned for n in router.pool.nodes)


@pytest.mark.asyncio
async def test_no_available_node_fails_without_consuming_attempts():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(403)

    router = make_router(handler, count=1, retry_attempts=3)
    result = await router.route_request(ProxyRequest(url="https://www.vinted.fr"))

    # One call bans the single node; the next selection finds nothing
    assert len(calls) == 1
    assert result.success is False
    assert result.error == "No scraper node available"
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_attempts_never_exceed_retry_attempts():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(500, text="oops")

    router = make_router(handler, count=3, retry_attempts=2)
    result = await router.route_request(ProxyRequest(url="https://www.vinted.fr"))

    assert result.success is False
    assert len(calls) == 2
    assert router.pool.nodes[0].last_error == "HTTP 500"


@pytest.mark.asyncio
async def test_cluster_stats_and_reset_node():
    def handler(request):
        return httpx.Response(403)

    router = make_router(handler, count=2, retry_attempts=1)
    await router.route_request(ProxyRequest(url="https://www.vinted.fr"))

    stats = router.get_cluster_stats()
    assert stats["totalNodes"] == 2
    assert stats["bannedNodes"] == 1
    assert stats["availableNodes"] == 1
    assert stats["nodes"][0]["isBanned"] is True
    assert stats["nodes"][0]["requestCount"] == 1

    assert router.reset_node("node-1") is True
    assert router.get_cluster_stats()["bannedNodes"] == 0
    assert router.reset_node("unknown") is False


def test_config_validation():
    with pytest.raises(ValueError):
        GatewayConfig(nodes=make_nodes(), retry_attempts=0)
    with pytest.raises(ValueError):
        GatewayConfig(nodes=make_nodes(), rotation_strategy="fastest")
    with pytest.raises(ValueError):
        GatewayConfig(nodes=make_nodes(), timeout=0)


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("SCRAPER_NODES", "a|cdg|http://a")
    monkeypatch.setenv("GATEWAY_ROTATION_STRATEGY", "least-used")
    monkeypatch.setenv("GATEWAY_BAN_DURATION_MS", "60000")
    monkeypatch.setenv("GATEWAY_TIMEOUT_MS", "5000")
    monkeypatch.setenv("GATEWAY_RETRY_ATTEMPTS", "4")

    config = GatewayConfig.from_env()
    assert [n.id for n in config.nodes] == ["a"]
    assert config.rotation_strategy is RotationStrategy.LEAST_USED
    assert config.ban_duration == 60.0
    assert config.timeout == 5.0
    assert config.retry_attempts == 4


def test_update_config_validates_and_rolls_back():
    router = make_router(lambda r: httpx.Response(200))

    router.update_config(rotation_strategy="health-based", retry_attempts=5)
    assert router.config.rotation_strategy is RotationStrategy.HEALTH_BASED
    assert router.config.retry_attempts == 5

    with pytest.raises(ValueError):
        router.update_config(retry_attempts=0, timeout=10)
    assert router.config.retry_attempts == 5
    assert router.config.timeout == 30.0

    with pytest.raises(ValueError):
        router.update_config(nodes=[])


@pytest.mark.asyncio
async def test_fetch_via_gateway_unwraps_node_payload():
    def handler(request: httpx.Request):
        assert request.url.path == "/api/v1/scrape/execute"
        return httpx.Response(200, json={"items": [1, 2]})

    router = make_router(handler)
    response = await router.fetch_via_gateway("https://www.vinted.fr/api/items", use_gateway=True)

    assert response.status_code == 200
    assert response.json() == {"items": [1, 2]}


@pytest.mark.asyncio
async def test_fetch_via_gateway_falls_back_to_direct_request():
    def handler(request: httpx.Request):
        if request.url.host.startswith("node-"):
            return httpx.Response(403)
        return httpx.Response(200, json={"direct": True})

    router = make_router(handler)
    response = await router.fetch_via_gateway("https://www.vinted.fr/api/items", use_gateway=True)

    assert response.json() == {"direct": True}
    assert all(n.is_banned for n in router.pool.nodes)


@pytest.mark.asyncio
async def test_fetch_via_gateway_disabled_goes_direct(monkeypatch):
    monkeypatch.delenv("ENABLE_GATEWAY", raising=False)
    hosts = []

    def handler(request: httpx.Request):
        hosts.append(request.url.host)
        return httpx.Response(200, text="ok")

    router = make_router(handler)
    response = await router.fetch_via_gateway("https://www.vinted.fr/")

    assert response.text == "ok"
    assert hosts == ["www.vinted.fr"]


@pytest.mark.asyncio
async def test_forwarder_aborts_slowly_streamed_response():
    # Headers arrive at once, then one chunk every 100 ms for about 1.5 s
    async def trickle(reader, writer):
        await reader.readuntil(b"\r\n\r\n")
        writer.write(b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\nTransfer-Encoding: chunked\r\n\r\n")
        await writer.drain()
        try:
            for _ in range(15):
                writer.write(b"1\r\nx\r\n")
                await writer.drain()
                await asyncio.sleep(0.1)
            writer.write(b"0\r\n\r\n")
            await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(trickle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]

    node = ScraperNode(id="slow", region="cdg", endpoint=f"http://127.0.0.1:{port}")
    pool = NodePool([node])
    forwarder = RequestForwarder(pool)
    try:
        started = time.monotonic()
        result = await forwarder.forward(node, ProxyRequest(url="http://x"), timeout=0.3, ban_duration=60)
        elapsed = time.monotonic() - started
    finally:
        await forwarder.aclose()
        server.close()
        await server.wait_closed()

    assert result.success is False
    assert result.error == "Timeout"
    assert elapsed < 1.0
    assert node.error_count == 1
    assert node.last_error == "Timeout"
