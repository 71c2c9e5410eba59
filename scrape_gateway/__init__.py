"""Scrape Gateway
Rotating scraper cluster gateway with node banning, failover and an alert worker
"""

__version__ = "0.1.0"

from .concurrency import delay, map_with_concurrency
from .cookie_manager import CookieManager
from .exceptions import (
    FailoverError,
    NodeBannedError,
    RateLimitError,
    ScrapeGatewayError,
    StorageError,
)
from .failover import FailoverConfig, FailoverManager, get_next_app, get_next_region
from .gateway import GatewayConfig, GatewayRouter
from .models import ErrorType, ProxyRequest, RotationStrategy, RouteResult
from .node_pool import NodePool, ScraperNode, clear_expired_ban, is_available
from .retry import classify_error
from .selector import NodeSelector
from .worker import AlertWorker, WorkerSettings

__all__ = [
    "__version__",
    "map_with_concurrency",
    "delay",
    "CookieManager",
    "ScrapeGatewayError",
    "NodeBannedError",
    "RateLimitError",
    "FailoverError",
    "StorageError",
    "FailoverConfig",
    "FailoverManager",
    "get_next_region",
    "get_next_app",
    "GatewayConfig",
    "GatewayRouter",
    "ErrorType",
    "ProxyRequest",
    "RotationStrategy",
    "RouteResult",
    "NodePool",
    "ScraperNode",
    "is_available",
    "clear_expired_ban",
    "classify_error",
    "NodeSelector",
    "AlertWorker",
    "WorkerSettings",
]
