"""Health check endpoint with a live Brave Search probe.

The probe has a short timeout so it cannot block the response. A service
reporting "unreachable" does not affect the overall status; the endpoint
always returns 200 so load balancers keep routing.
"""

from __future__ import annotations

import asyncio

import httpx
import structlog
from fastapi import APIRouter

from app.api.deps import get_http_client
from app.config import settings
from app.utils.search import BRAVE_WEB_SEARCH_URL, brave_headers

logger = structlog.get_logger()

router = APIRouter(tags=["health"])

_CHECK_TIMEOUT = 3.0  # seconds per service check


def _key_status(key: str) -> str:
    return "configured" if key.strip() else "missing"


async def _check_brave(client: httpx.AsyncClient) -> str:
    """Run a one-result query against Brave to confirm the key and network path."""
    if not settings.brave_search_api_key:
        return "skipped"
    try:
        resp = await asyncio.wait_for(
            client.get(
                BRAVE_WEB_SEARCH_URL,
                params={"q": "health check", "count": 1},
                headers=brave_headers(settings.brave_search_api_key),
            ),
            timeout=_CHECK_TIMEOUT,
        )
    except Exception as exc:
        logger.debug("health_brave_failed", error=str(exc))
        return "unreachable"
    if resp.status_code >= 400:
        logger.debug("health_brave_failed", status=resp.status_code)
        return "unreachable"
    return "reachable"


@router.get("/health")
async def health_check() -> dict:
    """Confirm the API process is alive and report which services are configured."""
    brave = await _check_brave(get_http_client())
    return {
        "status": "ok",
        "version": "0.1.0",
        "environment": settings.environment,
        "anthropic": _key_status(settings.anthropic_api_key),
        "brave_search": _key_status(settings.brave_search_api_key),
        "brave_api": brave,
        "report_mode": settings.report_mode,
    }
