"""Data models and enums for the scrape gateway"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class RotationStrategy(Enum):
    """How the gateway picks the next scraper node"""

    ROUND_ROBIN = "round-robin"
    RANDOM = "random"
    LEAST_USED = "least-used"
    HEALTH_BASED = "health-based"

    @classmethod
    def parse(cls, value) -> "RotationStrategy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(s.value for s in cls)
            raise ValueError(f"Unknown rotation strategy {value!r} (expected one of: {choices})")


class ErrorType(Enum):
    """Error categories for different handling strategies"""

    TRANSIENT = "transient"  # Move to the next node / retry
    RATE_LIMIT = "rate_limit"  # Backoff and retry
    AUTH_FAILURE = "auth_failure"  # Ban node or refresh credentials
    PERMANENT = "permanent"  # Don't retry


@dataclass
class ProxyRequest:
    """A request the gateway forwards through a scraper node"""

    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Any = None

    def to_payload(self) -> Dict[str, Any]:
        """Body sent to a node's execute endpoint"""
        return {"url": self.url, "method": self.method or "GET", "body": self.body}


@dataclass
class ForwardResult:
    """Outcome of a single forwarding attempt"""

    success: bool
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None


@dataclass
class RouteResult:
    """Outcome of a routed request across all attempts"""

    success: bool
    data: Any = None
    error: Optional[str] = None
    node_used: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        if self.success:
            return {"success": True, "data": self.data, "nodeUsed": self.node_used}
        return {"success": False, "error": self.error}
