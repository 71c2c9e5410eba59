"""HTTP API: gateway routing, cluster stats, enrichment and the node execute endpoint"""

import os
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

from .config import API_KEY_HEADER, DEFAULT_BROWSER_HEADERS, EXECUTE_TIMEOUT, NODE_EXECUTE_PATH, get_api_secret
from .enrichment import enrich_items
from .gateway import GatewayRouter
from .models import ProxyRequest


class GatewayRequest(BaseModel):
    url: Optional[str] = None
    method: Optional[str] = "GET"
    headers: Optional[Dict[str, str]] = None
    body: Any = None


class EnrichRequest(BaseModel):
    ids: Optional[List[Any]] = None
    searchResults: Optional[List[Dict[str, Any]]] = None


def error_response(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, **extra})


async def verify_api_key(x_api_key: Optional[str] = Header(None, alias=API_KEY_HEADER)) -> None:
    expected = get_api_secret()
    if not x_api_key or not expected or x_api_key != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _decode_upstream(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


def create_app(
    router: Optional[GatewayRouter] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    enricher: Callable[..., Awaitable[List[Dict[str, Any]]]] = enrich_items,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        router: Gateway router (defaults to one built from the environment)
        http_client: Client used by the execute endpoint (one per request if None)
        enricher: Enrichment coroutine used by the enrich endpoint
    """
    router = router or GatewayRouter.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await router.aclose()

    app = FastAPI(title="Scrape Gateway", lifespan=lifespan)
    app.state.router = router

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return error_response(400, "Invalid request body", details=str(exc.errors()))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled API error: {exc}")
        return error_response(500, str(exc) or "Internal server error")

    @app.post("/api/v1/scrape/gateway", dependencies=[Depends(verify_api_key)])
    async def route_through_gateway(payload: GatewayRequest):
        if not payload.url:
            return error_response(400, "URL is required")

        logger.info(f"🌐 Gateway: routing request to {payload.url}")
        result = await router.route_request(
            ProxyRequest(
                url=payload.url,
                method=payload.method or "GET",
                headers=payload.headers or {},
                body=payload.body,
            )
        )
        if result.success:
            return result.to_dict()
        return JSONResponse(status_code=500, content=result.to_dict())

    @app.get("/api/v1/scrape/gateway", dependencies=[Depends(verify_api_key)])
    async def cluster_stats():
        return {"success": True, "stats": router.get_cluster_stats()}

    @app.post("/api/v1/scrape/gateway/nodes/{node_id}/reset", dependencies=[Depends(verify_api_key)])
    async def reset_node(node_id: str):
        if not router.reset_node(node_id):
            return error_response(404, f"Unknown node: {node_id}")
        return {"success": True, "node": router.pool.get(node_id).to_stats()}

    @app.post("/api/v1/scrape/enrich", dependencies=[Depends(verify_api_key)])
    async def enrich(payload: EnrichRequest):
        if not payload.ids:
            return error_response(400, "Invalid ids array")

        try:
            return await enricher(payload.ids, payload.searchResults)
        except Exception as e:
            logger.error(f"Enrich API error: {e}")
            return error_response(500, "Enrichment failed", details=str(e))

    @app.post(NODE_EXECUTE_PATH)
    async def execute(payload: GatewayRequest):
        if not payload.url:
            return error_response(400, "URL is required")

        region = os.getenv("FLY_REGION", "unknown")
        logger.info(f"🌐 Scraper node ({region}): scraping {payload.url}")

        headers = {**DEFAULT_BROWSER_HEADERS, **(payload.headers or {})}
        request_kwargs = {
            "headers": headers,
            "timeout": EXECUTE_TIMEOUT,
        }
        if payload.body:
            request_kwargs["json"] = payload.body

        try:
            if http_client is not None:
                response = await http_client.request(payload.method or "GET", payload.url, **request_kwargs)
            else:
                async with httpx.AsyncClient(follow_redirects=True) as client:
                    response = await client.request(payload.method or "GET", payload.url, **request_kwargs)
        except httpx.TimeoutException:
            logger.error(f"❌ Scraper node ({region}): timeout")
            return error_response(504, "Request timeout")

        data = _decode_upstream(response)
        if response.is_success:
            logger.info(f"✅ Scraper node ({region}): success ({response.status_code})")
            return {
                "success": True,
                "data": data,
                "statusCode": response.status_code,
                "headers": dict(response.headers),
            }

        logger.warning(f"⚠️ Scraper node ({region}): HTTP {response.status_code}")
        return error_response(
            response.status_code,
            f"HTTP {response.status_code}",
            statusCode=response.status_code,
            data=data,
        )

    return app
