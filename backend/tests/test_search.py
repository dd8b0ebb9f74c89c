"""Tests for the Brave Search client and its text helpers."""

from __future__ import annotations

import httpx
import pytest

from app.utils.search import (
    NOT_CONFIGURED_MESSAGE,
    BraveSearch,
    SearchError,
    format_web_results,
    html_to_text,
)


def _search(handler, api_key: str = "key") -> BraveSearch:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BraveSearch(http, api_key, retry_delay=0.0)


class TestHtmlToText:
    """html_to_text()"""

    def test_strips_scripts_styles_and_tags(self):
        raw = "<html><style>p{}</style><script>var x=1;</script><p>Hello&nbsp;<b>world</b> &amp; co</p></html>"
        assert html_to_text(raw) == "Hello world & co"

    def test_truncates(self):
        assert html_to_text("<p>" + "a" * 100 + "</p>", max_chars=10) == "a" * 10


class TestFormatWebResults:
    """format_web_results()"""

    def test_caps_results(self):
        results = [{"title": f"T{i}", "description": "d", "url": f"https://x/{i}"} for i in range(20)]
        text = format_web_results("gfci", results)
        assert text.startswith('Search results for "gfci":')
        assert "**T11**" in text
        assert "**T12**" not in text


class TestBraveSearch:
    """BraveSearch web/video/fetch"""

    @pytest.mark.asyncio
    async def test_not_configured(self):
        search = _search(lambda r: httpx.Response(200, json={}), api_key="")
        assert await search.web_search("anything") == NOT_CONFIGURED_MESSAGE

    @pytest.mark.asyncio
    async def test_sends_subscription_header(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"web": {"results": [{"title": "NEC 210.8", "description": "GFCI", "url": "u"}]}}
            )

        text = await _search(handler, api_key="secret").web_search("gfci code")
        assert "**NEC 210.8**" in text
        assert seen[0].headers["X-Subscription-Token"] == "secret"
        assert seen[0].url.params["q"] == "gfci code"

    @pytest.mark.asyncio
    async def test_retries_rate_limit_then_succeeds(self):
        statuses = iter([429, 503, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            status = next(statuses)
            return httpx.Response(status, json={"web": {"results": [{"title": "ok"}]}})

        results = await _search(handler).web_results("q")
        assert results == [{"title": "ok"}]

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(401, json={})

        text = await _search(handler).web_search("q")
        assert text == "Search API error: HTTP 401"
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_retries(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500, json={})

        with pytest.raises(SearchError):
            await _search(handler).web_results("q")
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_empty_results(self):
        search = _search(lambda r: httpx.Response(200, json={"web": {"results": []}}))
        assert await search.web_search("q") == "No search results found"

    @pytest.mark.asyncio
    async def test_video_requires_key(self):
        with pytest.raises(SearchError):
            await _search(lambda r: httpx.Response(200, json={}), api_key="").video_results("q")

    @pytest.mark.asyncio
    async def test_fetch_page_text(self):
        search = _search(lambda r: httpx.Response(200, text="<h1>Permit</h1><p>Required</p>"))
        assert await search.fetch_page("https://city.gov/permits") == "Permit Required"

    @pytest.mark.asyncio
    async def test_fetch_page_http_error(self):
        search = _search(lambda r: httpx.Response(404, text="nope"))
        assert await search.fetch_page("https://x") == "Error fetching URL: HTTP 404"
