"""Brave Search client used by the research, design and sourcing tools.

One BraveSearch wraps a shared httpx.AsyncClient for the whole run. Web
searches retry transient failures (429 and 5xx) with a linear backoff; text
formatting helpers return model-ready strings and never raise for HTTP
problems, so a flaky search degrades into an explanatory tool result.
"""

from __future__ import annotations

import asyncio
import html
import re
from typing import Any

import httpx
import structlog

log = structlog.get_logger("search")

BRAVE_WEB_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
BRAVE_VIDEO_SEARCH_URL = "https://api.search.brave.com/res/v1/videos/search"

SEARCH_MAX_RETRIES = 2
SEARCH_RETRY_DELAY = 1.0  # seconds, multiplied by the attempt number
SEARCH_TIMEOUT = 10.0
WEB_RESULT_COUNT = 15
WEB_RESULTS_SHOWN = 12

FETCH_TIMEOUT = 10.0
FETCH_MAX_CHARS = 15_000

NOT_CONFIGURED_MESSAGE = (
    "Web search not configured. Please add BRAVE_SEARCH_API_KEY to environment variables."
)

_FETCH_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

_SCRIPT_RE = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_STYLE_RE = re.compile(r"<style[^>]*>.*?</style>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")


class SearchError(Exception):
    """Raised when a Brave request fails after all retries."""


def brave_headers(api_key: str) -> dict[str, str]:
    return {
        "Accept": "application/json",
        "Accept-Encoding": "gzip",
        "X-Subscription-Token": api_key,
    }


def html_to_text(raw_html: str, max_chars: int = FETCH_MAX_CHARS) -> str:
    """Strip scripts, styles, tags and entities; collapse whitespace; truncate."""
    text = _SCRIPT_RE.sub("", raw_html)
    text = _STYLE_RE.sub("", text)
    text = _TAG_RE.sub(" ", text)
    text = html.unescape(text).replace("\xa0", " ")
    text = _SPACE_RE.sub(" ", text).strip()
    return text[:max_chars]


def format_web_results(query: str, results: list[dict[str, Any]]) -> str:
    lines = [f'Search results for "{query}":\n']
    for result in results[:WEB_RESULTS_SHOWN]:
        lines.append(f"**{result.get('title', '')}**")
        lines.append(str(result.get("description", "")))
        lines.append(f"URL: {result.get('url', '')}\n")
    return "\n".join(lines) + "\n"


class BraveSearch:
    """Thin async client for the Brave web and video search APIs."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: str,
        *,
        retry_delay: float = SEARCH_RETRY_DELAY,
    ) -> None:
        self._http = http_client
        self._api_key = api_key
        self._retry_delay = retry_delay

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def _get_json(self, url: str, params: dict[str, Any]) -> dict[str, Any]:
        query = str(params.get("q", ""))[:80]
        last_error = "no response"

        for attempt in range(1 + SEARCH_MAX_RETRIES):
            if attempt > 0:
                await asyncio.sleep(self._retry_delay * attempt)
            try:
                resp = await self._http.get(
                    url,
                    params=params,
                    headers=brave_headers(self._api_key),
                    timeout=SEARCH_TIMEOUT,
                )
            except httpx.HTTPError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                log.warning("brave_search_error", query=query, attempt=attempt + 1, error=last_error)
                continue

            if resp.status_code == 200:
                data: dict[str, Any] = resp.json()
                return data

            last_error = f"HTTP {resp.status_code}"
            if resp.status_code == 429 or resp.status_code >= 500:
                log.warning(
                    "brave_search_retrying",
                    status=resp.status_code,
                    query=query,
                    attempt=attempt + 1,
                )
                continue

            # 400, 401, 403 and friends will not improve on retry
            log.warning("brave_search_failed", status=resp.status_code, query=query)
            break

        raise SearchError(f"Search API error: {last_error}")

    async def web_results(self, query: str, count: int = WEB_RESULT_COUNT) -> list[dict[str, Any]]:
        if not self.configured:
            return []
        data = await self._get_json(BRAVE_WEB_SEARCH_URL, {"q": query, "count": count})
        results: list[dict[str, Any]] = (data.get("web") or {}).get("results") or []
        return results

    async def web_search(self, query: str) -> str:
        """Search the web and return results formatted for the model."""
        if not self.configured:
            log.warning("brave_search_not_configured")
            return NOT_CONFIGURED_MESSAGE
        try:
            results = await self.web_results(query)
        except SearchError as exc:
            return str(exc)
        if not results:
            return "No search results found"
        return format_web_results(query, results)

    async def video_results(self, query: str, count: int = 5) -> list[dict[str, Any]]:
        if not self.configured:
            raise SearchError("Video search not configured")
        data = await self._get_json(BRAVE_VIDEO_SEARCH_URL, {"q": query, "count": count})
        results: list[dict[str, Any]] = data.get("results") or []
        return results

    async def fetch_page(self, url: str) -> str:
        """Fetch a URL and return its visible text (at most FETCH_MAX_CHARS)."""
        try:
            resp = await self._http.get(
                url,
                headers=_FETCH_HEADERS,
                timeout=FETCH_TIMEOUT,
                follow_redirects=True,
            )
        except httpx.TimeoutException:
            return "Error fetching URL: Request timeout"
        except httpx.HTTPError as exc:
            log.warning("web_fetch_error", url=url[:120], error=str(exc))
            return f"Error fetching URL: {exc}"

        if resp.status_code != 200:
            log.warning("web_fetch_failed", url=url[:120], status=resp.status_code)
            return f"Error fetching URL: HTTP {resp.status_code}"
        return html_to_text(resp.text)
