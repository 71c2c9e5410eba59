"""Client for the alert-check service used by the worker"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger

from .config import API_KEY_HEADER, get_api_secret


@dataclass
class AlertCheckResult:
    success: bool
    alerts_checked: int = 0
    items_checked: int = 0
    matches: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    http_status: Optional[int] = None
    needs_cookie_refresh: bool = False

    @property
    def is_blocked(self) -> bool:
        """Systemic 403: blocked IP or invalid cookies"""
        return self.http_status == 403 or self.needs_cookie_refresh

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], http_status: Optional[int] = None) -> "AlertCheckResult":
        return cls(
            success=bool(payload.get("success", http_status is not None and 200 <= http_status < 300)),
            alerts_checked=int(payload.get("alertsChecked") or 0),
            items_checked=int(payload.get("itemsChecked") or 0),
            matches=list(payload.get("matches") or []),
            error=payload.get("error") or payload.get("details"),
            http_status=payload.get("httpStatus", http_status),
            needs_cookie_refresh=bool(payload.get("needsCookieRefresh", False)),
        )


class AlertChecker(ABC):
    """Runs one pass over the active price alerts with the given cookies"""

    @abstractmethod
    async def check(self, cookies: str) -> AlertCheckResult:
        pass


class HttpAlertChecker(AlertChecker):
    """Calls the dashboard's ``POST /api/v1/alerts/check`` endpoint"""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 600.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    @classmethod
    def from_env(cls) -> "HttpAlertChecker":
        url = os.getenv("ALERTS_CHECK_URL", "http://localhost:3000/api/v1/alerts/check")
        return cls(url=url, api_key=get_api_secret())

    async def check(self, cookies: str) -> AlertCheckResult:
        headers = {API_KEY_HEADER: self.api_key} if self.api_key else {}

        try:
            if self._client is not None:
                response = await self._client.post(
                    self.url, json={"fullCookies": cookies}, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(
                        self.url, json={"fullCookies": cookies}, headers=headers, timeout=self.timeout
                    )
        except httpx.HTTPError as e:
            logger.error(f"Alert check request failed: {e}")
            return AlertCheckResult(success=False, error=str(e) or e.__class__.__name__)

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        result = AlertCheckResult.from_payload(payload, http_status=response.status_code)
        if not response.is_success:
            result.success = False
            result.error = result.error or f"HTTP {response.status_code}"
        return result
