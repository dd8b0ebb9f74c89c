"""API tests for the /api/v1/runs endpoints.

The coordinator runs fake phases, so these exercise the HTTP surface and SSE
framing without calling Anthropic or Brave.
"""

from __future__ import annotations

import asyncio
import json

import pytest

from app.api import deps
from app.config import settings
from app.models.contracts import StartRunRequest

_BODY = {
    "project_description": "Replace a bathroom outlet with a GFCI",
    "location": {"city": "Austin", "state": "TX"},
    "inventory": [{"item_name": "Screwdriver set", "category": "hand_tools"}],
}


def _events(body: str) -> list[dict]:
    return [json.loads(line[len("data: ") :]) for line in body.splitlines() if line.startswith("data: ")]


@pytest.fixture
def coordinator(make_coordinator):
    coordinator = make_coordinator()
    deps.set_coordinator(coordinator)
    return coordinator


@pytest.fixture
def api_key(monkeypatch):
    monkeypatch.setattr(settings, "anthropic_api_key", "sk-ant-test")


class TestStartRun:
    """POST /api/v1/runs"""

    @pytest.mark.asyncio
    async def test_streams_to_completion(self, client, coordinator, api_key):
        resp = await client.post("/api/v1/runs", json=_BODY)

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        run_id = resp.headers["x-run-id"]
        events = _events(resp.text)
        assert [e["type"] for e in events[-2:]] == ["complete", "done"]
        assert all(e["run_id"] == run_id for e in events)
        assert events[-2]["report"]["title"] == "GFCI Plan"
        assert coordinator.store.get_run(run_id).status == "completed"

    @pytest.mark.asyncio
    async def test_inventory_reaches_phases(self, client, coordinator, phases, api_key):
        await client.post("/api/v1/runs", json=_BODY)
        assert [i.item_name for i in phases.contexts["research"].inventory] == ["Screwdriver set"]

    @pytest.mark.asyncio
    async def test_missing_key_is_503(self, client, coordinator, monkeypatch):
        monkeypatch.setattr(settings, "anthropic_api_key", "")
        resp = await client.post("/api/v1/runs", json=_BODY)
        assert resp.status_code == 503
        assert resp.json()["error"] == "not_configured"

    @pytest.mark.asyncio
    async def test_short_description_is_422(self, client, coordinator, api_key):
        resp = await client.post("/api/v1/runs", json={**_BODY, "project_description": "short"})
        assert resp.status_code == 422
        body = resp.json()
        assert body["error"] == "validation_error"
        assert "body.project_description" in body["message"]

    @pytest.mark.asyncio
    async def test_error_event_is_recoverable(self, client, coordinator, phases, api_key):
        phases.failures["design"] = RuntimeError("model overloaded")
        resp = await client.post("/api/v1/runs", json=_BODY)
        events = _events(resp.text)
        assert events[-2] == {
            "type": "error",
            "run_id": resp.headers["x-run-id"],
            "phase": "design",
            "message": "model overloaded",
            "recoverable": True,
        }


class TestGetRun:
    """GET /api/v1/runs/{id}"""

    @pytest.mark.asyncio
    async def test_detail_after_completion(self, client, coordinator, api_key):
        started = await client.post("/api/v1/runs", json=_BODY)
        run_id = started.headers["x-run-id"]

        resp = await client.get(f"/api/v1/runs/{run_id}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["run"]["status"] == "completed"
        assert [p["phase"] for p in body["phases"]] == ["research", "design", "sourcing", "report"]
        assert body["report"]["id"] == body["run"]["report_id"]

    @pytest.mark.asyncio
    async def test_unknown_is_404(self, client, coordinator):
        resp = await client.get("/api/v1/runs/nope")
        assert resp.status_code == 404
        assert resp.json() == {"error": "run_not_found", "message": "Run not found", "retryable": False}


class TestRunEvents:
    """GET /api/v1/runs/{id}/events"""

    @pytest.mark.asyncio
    async def test_replays_finished_run(self, client, coordinator, api_key):
        started = await client.post("/api/v1/runs", json=_BODY)
        run_id = started.headers["x-run-id"]

        resp = await client.get(f"/api/v1/runs/{run_id}/events")
        assert resp.status_code == 200
        assert _events(resp.text) == _events(started.text)

    @pytest.mark.asyncio
    async def test_unknown_is_404(self, client, coordinator):
        resp = await client.get("/api/v1/runs/nope/events")
        assert resp.status_code == 404


class TestCancelRun:
    """POST /api/v1/runs/{id}/cancel"""

    @pytest.mark.asyncio
    async def test_cancel_running(self, client, coordinator, phases, api_key):
        gate = asyncio.Event()
        phases.gates["research"] = gate
        run = coordinator.start_run(StartRunRequest.model_validate(_BODY))

        resp = await client.post(f"/api/v1/runs/{run.id}/cancel")
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "message": "Cancellation requested"}

        gate.set()
        await asyncio.wait_for(coordinator.wait(run.id), timeout=2)
        assert coordinator.store.get_run(run.id).status == "cancelled"

    @pytest.mark.asyncio
    async def test_cancel_finished_is_400(self, client, coordinator, api_key):
        started = await client.post("/api/v1/runs", json=_BODY)
        resp = await client.post(f"/api/v1/runs/{started.headers['x-run-id']}/cancel")
        assert resp.status_code == 400
        assert resp.json()["error"] == "run_not_running"

    @pytest.mark.asyncio
    async def test_cancel_unknown_is_404(self, client, coordinator):
        resp = await client.post("/api/v1/runs/nope/cancel")
        assert resp.status_code == 404


class TestRetryRun:
    """POST /api/v1/runs/{id}/retry"""

    @pytest.mark.asyncio
    async def test_retry_failed_run(self, client, coordinator, phases, api_key):
        phases.failures["sourcing"] = RuntimeError("price lookup exploded")
        started = await client.post("/api/v1/runs", json=_BODY)
        run_id = started.headers["x-run-id"]

        resp = await client.post(f"/api/v1/runs/{run_id}/retry")
        assert resp.status_code == 200
        events = _events(resp.text)
        replayed = [e["message"] for e in events if e["type"] == "progress"][:2]
        assert replayed == ["Research phase complete (previous run)", "Design phase complete (previous run)"]
        assert [e["type"] for e in events[-2:]] == ["complete", "done"]
        assert phases.calls["research"] == 1

    @pytest.mark.asyncio
    async def test_retry_completed_is_400(self, client, coordinator, api_key):
        started = await client.post("/api/v1/runs", json=_BODY)
        resp = await client.post(f"/api/v1/runs/{started.headers['x-run-id']}/retry")
        assert resp.status_code == 400
        assert resp.json()["error"] == "run_completed"

    @pytest.mark.asyncio
    async def test_retry_running_is_409(self, client, coordinator, phases, api_key):
        gate = asyncio.Event()
        phases.gates["research"] = gate
        run = coordinator.start_run(StartRunRequest.model_validate(_BODY))

        resp = await client.post(f"/api/v1/runs/{run.id}/retry")
        assert resp.status_code == 409
        assert resp.json()["error"] == "run_in_progress"

        gate.set()
        await asyncio.wait_for(coordinator.wait(run.id), timeout=2)

    @pytest.mark.asyncio
    async def test_retry_limit_is_409(self, client, make_coordinator, phases, api_key):
        coordinator = make_coordinator(config=settings.model_copy(update={"max_phase_retries": 0}))
        deps.set_coordinator(coordinator)
        phases.failures["research"] = RuntimeError("boom")
        started = await client.post("/api/v1/runs", json=_BODY)

        resp = await client.post(f"/api/v1/runs/{started.headers['x-run-id']}/retry")
        assert resp.status_code == 409
        assert resp.json()["error"] == "retry_limit_exceeded"

    @pytest.mark.asyncio
    async def test_retry_unknown_is_404(self, client, coordinator, api_key):
        resp = await client.post("/api/v1/runs/nope/retry")
        assert resp.status_code == 404
