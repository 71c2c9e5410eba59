"""Custom exception classes for the scrape gateway"""


class ScrapeGatewayError(Exception):
    """Base exception for gateway errors"""

    pass


class NodeBannedError(ScrapeGatewayError):
    """Raised when a node or the marketplace answers 403

    A 403 means the IP or the credentials are blocked, not that the request
    was malformed. The node that produced it is taken out of rotation for
    the configured ban duration.
    """

    def __init__(self, message: str = "Blocked by server (HTTP 403)"):
        super().__init__(message)


class RateLimitError(ScrapeGatewayError):
    """Raised when rate limited past the retry cap"""

    pass


class FailoverError(ScrapeGatewayError):
    """Raised when a machine control command fails"""

    pass


class StorageError(ScrapeGatewayError):
    """Raised when a credential store cannot read or write"""

    pass
