"""Tests for GET /health."""

from __future__ import annotations

import httpx
import pytest

from app.config import settings


def _brave_client(status: int) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["X-Subscription-Token"] == "brave-key"
        return httpx.Response(status, json={"web": {"results": []}})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestHealth:
    @pytest.mark.asyncio
    async def test_keys_missing(self, client, monkeypatch):
        monkeypatch.setattr(settings, "anthropic_api_key", "")
        monkeypatch.setattr(settings, "brave_search_api_key", "")
        resp = await client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["anthropic"] == "missing"
        assert body["brave_search"] == "missing"
        assert body["brave_api"] == "skipped"
        assert body["report_mode"] == settings.report_mode

    @pytest.mark.asyncio
    async def test_brave_reachable(self, client, monkeypatch):
        monkeypatch.setattr(settings, "brave_search_api_key", "brave-key")
        monkeypatch.setattr("app.api.routes.health.get_http_client", lambda: _brave_client(200))
        body = (await client.get("/health")).json()
        assert body["brave_search"] == "configured"
        assert body["brave_api"] == "reachable"

    @pytest.mark.asyncio
    async def test_brave_rejecting_key_still_200(self, client, monkeypatch):
        """An unreachable dependency is reported, never turned into a failing health check."""
        monkeypatch.setattr(settings, "brave_search_api_key", "brave-key")
        monkeypatch.setattr("app.api.routes.health.get_http_client", lambda: _brave_client(401))
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["brave_api"] == "unreachable"

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, client):
        resp = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
