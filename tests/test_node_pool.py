import random
from datetime import datetime, timedelta

import pytest

from scrape_gateway.models import RotationStrategy
from scrape_gateway.node_pool import NodePool, ScraperNode, clear_expired_ban, is_available, load_nodes_from_env
from scrape_gateway.selector import NodeSelector

T0 = datetime(2025, 1, 1, 12, 0, 0)


def make_pool(count=3):
    return NodePool([
        ScraperNode(id=f"node-{i}", region=f"r{i}", endpoint=f"http://node-{i}")
        for i in range(1, count + 1)
    ])


def test_duplicate_ids_rejected():
    with pytest.raises(ValueError):
        NodePool([
            ScraperNode(id="a", region="cdg", endpoint="http://a"),
            ScraperNode(id="a", region="iad", endpoint="http://b"),
        ])


def test_name_defaults_to_id():
    assert ScraperNode(id="scraper-x", region="cdg", endpoint="http://x").name == "scraper-x"


def test_ban_expires_lazily_on_check():
    pool = make_pool(1)
    node = pool.nodes[0]
    node.ban(60, now=T0)

    assert pool.check_node(node, T0 + timedelta(seconds=59)) is False
    assert node.is_banned is True

    assert pool.check_node(node, T0 + timedelta(seconds=60)) is True
    assert node.is_banned is False
    assert node.banned_until is None


def test_is_available_is_pure():
    node = ScraperNode(id="a", region="cdg", endpoint="http://a")
    node.ban(10, now=T0)

    assert is_available(node, T0 + timedelta(seconds=30)) is True
    # The pure check leaves the ban flag alone
    assert node.is_banned is True

    assert clear_expired_ban(node, T0 + timedelta(seconds=30)) is True
    assert node.is_banned is False


def test_unhealthy_node_stays_unavailable_even_after_ban_expiry():
    pool = make_pool(1)
    node = pool.nodes[0]
    node.ban(10, now=T0)
    node.is_healthy = False

    assert pool.check_node(node, T0 + timedelta(hours=1)) is False
    # Ban is only cleared for healthy nodes
    assert node.is_banned is True


def test_transport_errors_open_circuit_after_threshold():
    pool = make_pool(1)
    node = pool.nodes[0]

    for _ in range(5):
        pool.record_transport_error(node, "Timeout")
    assert node.is_healthy is True

    pool.record_transport_error(node, "Timeout")
    assert node.error_count == 6
    assert node.is_healthy is False


def test_transport_errors_with_more_successes_keep_node_healthy():
    pool = make_pool(1)
    node = pool.nodes[0]
    node.success_count = 10

    for _ in range(8):
        pool.record_transport_error(node, "Timeout")
    assert node.is_healthy is True


def test_http_403_bans_but_other_errors_do_not():
    pool = make_pool(2)
    banned, other = pool.nodes

    pool.record_http_error(banned, "Forbidden", 403, ban_duration=900)
    pool.record_http_error(other, "HTTP 500", 500, ban_duration=900)

    assert banned.is_banned is True
    assert banned.last_error == "Forbidden"
    assert other.is_banned is False
    assert other.error_count == 1


def test_reset_node_clears_ban_and_circuit():
    pool = make_pool(1)
    node = pool.nodes[0]
    node.ban(900)
    node.is_healthy = False
    node.last_error = "Timeout"
    node.request_count = 4

    assert pool.reset_node("node-1") is True
    assert node.is_banned is False
    assert node.banned_until is None
    assert node.is_healthy is True
    assert node.last_error is None
    # Counters are never reset
    assert node.request_count == 4

    assert pool.reset_node("missing") is False


def test_stats_snapshot():
    pool = make_pool(3)
    a, b, c = pool.nodes
    a.request_count, a.success_count = 4, 3
    b.ban(900)
    c.is_healthy = False

    stats = pool.get_stats()
    assert stats["totalNodes"] == 3
    assert stats["availableNodes"] == 1
    assert stats["bannedNodes"] == 1
    assert stats["unhealthyNodes"] == 1
    assert stats["nodes"][0]["successRate"] == 75.0
    assert stats["nodes"][0]["id"] == "node-1"
    assert stats["nodes"][1]["successRate"] == 0.0


def test_round_robin_is_fair_and_cyclic():
    pool = make_pool(3)
    selector = NodeSelector(pool)

    picks = [selector.select(RotationStrategy.ROUND_ROBIN, T0).id for _ in range(6)]
    assert picks == ["node-1", "node-2", "node-3", "node-1", "node-2", "node-3"]


def test_round_robin_skips_unavailable_nodes():
    pool = make_pool(3)
    pool.nodes[1].ban(900, now=T0)
    selector = NodeSelector(pool)

    picks = [selector.select(RotationStrategy.ROUND_ROBIN, T0).id for _ in range(4)]
    assert picks == ["node-1", "node-3", "node-1", "node-3"]


def test_select_returns_none_without_available_nodes():
    pool = make_pool(2)
    for node in pool.nodes:
        node.is_healthy = False

    selector = NodeSelector(pool)
    for strategy in RotationStrategy:
        assert selector.select(strategy, T0) is None


def test_least_used_ties_go_to_first_listed():
    pool = make_pool(3)
    pool.nodes[0].request_count = 5
    pool.nodes[1].request_count = 2
    pool.nodes[2].request_count = 2

    selector = NodeSelector(pool)
    assert selector.select(RotationStrategy.LEAST_USED, T0).id == "node-2"


def test_health_based_picks_best_success_ratio():
    pool = make_pool(3)
    pool.nodes[0].request_count, pool.nodes[0].success_count = 10, 5
    pool.nodes[1].request_count, pool.nodes[1].success_count = 10, 9
    pool.nodes[2].request_count, pool.nodes[2].success_count = 0, 0

    selector = NodeSelector(pool)
    assert selector.select(RotationStrategy.HEALTH_BASED, T0).id == "node-2"


def test_random_only_picks_available_nodes():
    pool = make_pool(3)
    pool.nodes[0].is_healthy = False
    selector = NodeSelector(pool, rng=random.Random(1))

    picks = {selector.select(RotationStrategy.RANDOM, T0).id for _ in range(30)}
    assert picks <= {"node-2", "node-3"}
    assert picks == {"node-2", "node-3"}


def test_rotation_strategy_parse():
    assert RotationStrategy.parse("least-used") is RotationStrategy.LEAST_USED
    assert RotationStrategy.parse(" Round-Robin ") is RotationStrategy.ROUND_ROBIN
    with pytest.raises(ValueError):
        RotationStrategy.parse("fastest")


def test_load_nodes_from_env(monkeypatch):
    monkeypatch.setenv("SCRAPER_NODES", "a|cdg|http://a:3000/, b|iad|http://b:3000")
    nodes = load_nodes_from_env()
    assert [(n.id, n.region, n.endpoint) for n in nodes] == [
        ("a", "cdg", "http://a:3000"),
        ("b", "iad", "http://b:3000"),
    ]


def test_load_default_nodes_from_env(monkeypatch):
    monkeypatch.delenv("SCRAPER_NODES", raising=False)
    monkeypatch.setenv("SCRAPER_NL_URL", "http://nl.example:8080")

    nodes = load_nodes_from_env()
    assert [n.id for n in nodes] == ["scraper-fr", "scraper-nl", "scraper-us"]
    assert nodes[1].endpoint == "http://nl.example:8080"
    assert nodes[1].region == "lhr"
