"""Tool execution for the phase runner.

ToolExecutor is what the runner depends on. DefaultToolExecutor wires each
tool name to a handler backed by Brave Search, the wire-size calculator and
the user's inventory. Handler errors propagate; the runner turns them into
tool-result text so the model can recover.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import httpx
import structlog

from app.config import settings
from app.models.contracts import Location
from app.tools.inventory import InventoryStore, format_inventory
from app.tools.wire_size import describe_wire_size
from app.utils.search import BraveSearch, SearchError

log = structlog.get_logger("tools")

UNKNOWN_TOOL_MESSAGE = "Tool not implemented yet."
LOCAL_STORES = ("Home Depot", "Lowe's", "Ace Hardware")
DEFAULT_VIDEO_RESULTS = 5

Handler = Callable[[dict[str, Any]], Awaitable[str]]


class ToolTimeoutError(Exception):
    """A tool handler exceeded its time budget."""


class ToolExecutor(Protocol):
    async def execute(self, name: str, tool_input: dict[str, Any]) -> str: ...


def _required_str(tool_input: dict[str, Any], key: str) -> str:
    value = str(tool_input.get(key) or "").strip()
    if not value:
        raise ValueError(f"missing required input '{key}'")
    return value


def _required_number(tool_input: dict[str, Any], key: str) -> float:
    try:
        return float(tool_input[key])
    except (KeyError, TypeError, ValueError):
        raise ValueError(f"'{key}' must be a number") from None


class DefaultToolExecutor:
    def __init__(
        self,
        search: BraveSearch,
        inventory: InventoryStore,
        location: Location | None = None,
        *,
        timeout_s: float | None = None,
    ) -> None:
        self._search = search
        self._inventory = inventory
        self._location = location
        self._timeout_s = settings.tool_timeout_s if timeout_s is None else timeout_s
        self._handlers: dict[str, Handler] = {
            "search_building_codes": self._search_building_codes,
            "search_local_codes": self._search_local_codes,
            "web_search": self._web_search,
            "web_fetch": self._web_fetch,
            "search_project_videos": self._search_project_videos,
            "calculate_wire_size": self._calculate_wire_size,
            "check_user_inventory": self._check_user_inventory,
            "search_local_stores": self._search_local_stores,
        }

    @property
    def tool_names(self) -> list[str]:
        return list(self._handlers)

    async def execute(self, name: str, tool_input: dict[str, Any]) -> str:
        handler = self._handlers.get(name)
        if handler is None:
            log.warning("unknown_tool_requested", tool=name)
            return UNKNOWN_TOOL_MESSAGE
        try:
            return await asyncio.wait_for(handler(tool_input or {}), timeout=self._timeout_s)
        except TimeoutError:
            raise ToolTimeoutError(f'Tool "{name}" timed out after {self._timeout_s:g}s') from None

    def _city_state(self, tool_input: dict[str, Any]) -> tuple[str, str]:
        city = str(tool_input.get("city") or (self._location.city if self._location else "")).strip()
        state = str(tool_input.get("state") or (self._location.state if self._location else "")).strip()
        if not city or not state:
            raise ValueError("city and state are required")
        return city, state

    # === Research ===

    async def _search_building_codes(self, tool_input: dict[str, Any]) -> str:
        query = _required_str(tool_input, "query")
        results = await self._search.web_search(
            f"national building code {query} NEC IRC IBC requirements"
        )
        return (
            f"**Building Code Search Results:**\n\n{results}\n\n"
            "**Disclaimer:** Always verify these requirements with your local building "
            "department, as local amendments may apply."
        )

    async def _search_local_codes(self, tool_input: dict[str, Any]) -> str:
        query = _required_str(tool_input, "query")
        city, state = self._city_state(tool_input)
        official, permits = await asyncio.gather(
            self._search.web_search(
                f"{city} {state} building code {query} "
                "site:gov OR site:municode.com OR site:ecode360.com"
            ),
            self._search.web_search(f"{city} {state} permit requirements {query}"),
        )
        return (
            f"**Local Building Code Results for {city}, {state}:**\n\n"
            f"### Official / Municipal Sources\n{official}\n\n"
            f"### Permit & General Requirements\n{permits}\n\n"
            f"**Important:** Verify these requirements with the {city} Building Department "
            "before starting work."
        )

    async def _web_search(self, tool_input: dict[str, Any]) -> str:
        return await self._search.web_search(_required_str(tool_input, "query"))

    async def _web_fetch(self, tool_input: dict[str, Any]) -> str:
        return await self._search.fetch_page(_required_str(tool_input, "url"))

    # === Design ===

    async def _search_project_videos(self, tool_input: dict[str, Any]) -> str:
        project_query = _required_str(tool_input, "project_query")
        try:
            max_results = int(tool_input.get("max_results") or DEFAULT_VIDEO_RESULTS)
        except (TypeError, ValueError):
            max_results = DEFAULT_VIDEO_RESULTS

        try:
            raw = await self._search.video_results(
                f"{project_query} DIY tutorial how to", count=max_results
            )
        except (SearchError, httpx.HTTPError) as exc:
            log.warning("video_search_failed", query=project_query[:80], error=str(exc))
            return json.dumps(
                {
                    "success": False,
                    "error": str(exc),
                    "message": "Unable to search for videos at this time. Please try again later.",
                }
            )

        videos = []
        for video in raw:
            meta = video.get("meta_url") or {}
            videos.append(
                {
                    "title": video.get("title") or "Untitled Video",
                    "description": video.get("description") or "No description available",
                    "url": video.get("url") or video.get("page_url") or "#",
                    "thumbnail": (video.get("thumbnail") or {}).get("src"),
                    "duration": meta.get("duration"),
                    "channel": video.get("creator") or meta.get("hostname") or "Unknown",
                    "views": (video.get("video") or {}).get("views"),
                    "published": video.get("age"),
                }
            )
        return json.dumps(
            {
                "success": True,
                "query": project_query,
                "videos": videos,
                "count": len(videos),
                "message": (
                    f"Found {len(videos)} helpful video tutorials"
                    if videos
                    else "No videos found for this search"
                ),
            }
        )

    async def _calculate_wire_size(self, tool_input: dict[str, Any]) -> str:
        amperage = _required_number(tool_input, "amperage")
        distance = _required_number(tool_input, "distance")
        voltage = tool_input.get("voltage")
        return describe_wire_size(amperage, distance, float(voltage) if voltage else None)

    # === Sourcing ===

    async def _check_user_inventory(self, tool_input: dict[str, Any]) -> str:
        categories = tool_input.get("categories")
        if not isinstance(categories, list):
            categories = None
        items = await self._inventory.list_items([str(c) for c in categories] if categories else None)
        return format_inventory(items)

    async def _search_local_stores(self, tool_input: dict[str, Any]) -> str:
        material = _required_str(tool_input, "material_name")
        city, state = self._city_state(tool_input)

        store_results, nearby = await asyncio.gather(
            asyncio.gather(
                *(
                    self._search.web_search(f"{store} {material} {city} {state} price availability")
                    for store in LOCAL_STORES
                ),
                return_exceptions=True,
            ),
            self._search.web_search(f"hardware stores near {city} {state} hours"),
        )

        parts = [f'**Store Search Results for "{material}" near {city}, {state}:**\n']
        for store, result in zip(LOCAL_STORES, store_results, strict=True):
            if isinstance(result, BaseException):
                log.warning("store_search_failed", store=store, error=str(result))
                parts.append(f"### {store}\nSearch unavailable. Visit the store website directly.\n")
            else:
                parts.append(f"### {store}\n{result}\n")
        parts.append(f"### Nearby Store Locations\n{nearby}")
        return "\n".join(parts)
