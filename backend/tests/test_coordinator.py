"""Tests for PlanningRunCoordinator: phase sequencing, cancel, retry and event streams."""

from __future__ import annotations

import asyncio

import pytest

from app.config import settings
from app.models.contracts import (
    CompleteEvent,
    DoneEvent,
    ErrorEvent,
    Location,
    ProgressEvent,
    StartRunRequest,
    TokenUsage,
)
from app.workflows.events import RunEventBroker
from app.workflows.planning_run import (
    CANCELLED_MESSAGE,
    PlanningRunCoordinator,
    RetryLimitError,
    RunNotFoundError,
    RunStateError,
    estimate_cost,
)

_REQUEST = StartRunRequest(
    project_description="Replace a bathroom outlet with a GFCI",
    location=Location(city="Austin", state="TX"),
)


@pytest.fixture
def coordinator(make_coordinator) -> PlanningRunCoordinator:
    return make_coordinator()


@pytest.fixture
def broker(coordinator) -> RunEventBroker:
    return coordinator.broker


async def _run_to_end(coordinator: PlanningRunCoordinator, run_id: str) -> None:
    await asyncio.wait_for(coordinator.wait(run_id), timeout=2)


class TestEstimateCost:
    def test_sonnet_pricing(self):
        assert estimate_cost(TokenUsage(input_tokens=1_000_000, output_tokens=100_000)) == 4.5


class TestSuccessfulRun:
    """A run that completes every phase."""

    @pytest.mark.asyncio
    async def test_completes_and_stores_report(self, coordinator, broker, phases):
        run = coordinator.start_run(_REQUEST)
        await _run_to_end(coordinator, run.id)

        stored = coordinator.store.get_run(run.id)
        assert stored.status == "completed"
        assert stored.report_id is not None
        assert [p.status for p in coordinator.store.list_phases(run.id)] == ["completed"] * 4

        record = coordinator.store.get_report(stored.report_id)
        assert record.report.id == stored.report_id
        assert record.run_id == run.id

        events = broker.buffered(run.id)
        assert isinstance(events[-1], DoneEvent)
        complete = events[-2]
        assert isinstance(complete, CompleteEvent)
        assert complete.report_id == stored.report_id
        assert complete.total_cost == 62.94
        assert complete.api_cost.total_tokens == 4400
        assert coordinator.is_active(run.id) is False

    @pytest.mark.asyncio
    async def test_each_phase_sees_prior_outputs(self, coordinator, phases, research_output, design_output):
        run = coordinator.start_run(_REQUEST)
        await _run_to_end(coordinator, run.id)

        assert phases.contexts["research"].research is None
        assert phases.contexts["design"].research == research_output
        assert phases.contexts["sourcing"].design == design_output
        assert phases.contexts["report"].sourcing is not None

    @pytest.mark.asyncio
    async def test_phase_records_snapshots(self, coordinator):
        run = coordinator.start_run(_REQUEST)
        await _run_to_end(coordinator, run.id)

        design_record = coordinator.store.get_phase(run.id, "design")
        assert design_record.input_snapshot["research"] is not None
        assert design_record.output_snapshot["approach"].startswith("Replace the existing receptacle")
        assert design_record.token_usage.input_tokens == 1000
        assert design_record.duration_ms == 5


class TestFailure:
    """A phase raising ends the run in error, recoverably."""

    @pytest.mark.asyncio
    async def test_phase_error(self, coordinator, broker, phases):
        phases.failures["sourcing"] = RuntimeError("price lookup exploded")
        run = coordinator.start_run(_REQUEST)
        await _run_to_end(coordinator, run.id)

        stored = coordinator.store.get_run(run.id)
        assert stored.status == "error"
        assert stored.error_message == "price lookup exploded"
        statuses = [p.status for p in coordinator.store.list_phases(run.id)]
        assert statuses == ["completed", "completed", "error", "pending"]
        assert phases.calls["report"] == 0

        events = broker.buffered(run.id)
        error = events[-2]
        assert isinstance(error, ErrorEvent)
        assert error.phase == "sourcing"
        assert error.recoverable is True
        assert isinstance(events[-1], DoneEvent)


class TestCancel:
    """cancel() stops the run at the next checkpoint."""

    @pytest.mark.asyncio
    async def test_cancel_mid_phase(self, coordinator, broker, phases):
        gate = asyncio.Event()
        phases.gates["design"] = gate
        run = coordinator.start_run(_REQUEST)
        while phases.calls["design"] == 0:
            await asyncio.sleep(0)

        coordinator.cancel(run.id)
        gate.set()
        await _run_to_end(coordinator, run.id)

        stored = coordinator.store.get_run(run.id)
        assert stored.status == "cancelled"
        assert stored.cancelled_at is not None
        statuses = [p.status for p in coordinator.store.list_phases(run.id)]
        assert statuses == ["completed", "skipped", "skipped", "skipped"]
        assert phases.calls["sourcing"] == 0

        error = broker.buffered(run.id)[-2]
        assert isinstance(error, ErrorEvent)
        assert error.message == CANCELLED_MESSAGE
        assert error.recoverable is False

    @pytest.mark.asyncio
    async def test_cancel_finished_run_rejected(self, coordinator):
        run = coordinator.start_run(_REQUEST)
        await _run_to_end(coordinator, run.id)
        with pytest.raises(RunStateError) as exc_info:
            coordinator.cancel(run.id)
        assert exc_info.value.code == "run_not_running"

    def test_cancel_unknown_run(self, coordinator):
        with pytest.raises(RunNotFoundError):
            coordinator.cancel("nope")


class TestRetry:
    """retry() resumes from the first incomplete phase."""

    @pytest.mark.asyncio
    async def test_resumes_without_rerunning_completed_phases(self, coordinator, broker, phases, research_output):
        phases.failures["design"] = RuntimeError("model overloaded")
        run = coordinator.start_run(_REQUEST)
        await _run_to_end(coordinator, run.id)
        assert coordinator.store.get_run(run.id).status == "error"

        coordinator.retry(run.id)
        await _run_to_end(coordinator, run.id)

        assert coordinator.store.get_run(run.id).status == "completed"
        assert phases.calls["research"] == 1
        assert phases.calls["design"] == 2
        assert phases.contexts["design"].research == research_output
        assert coordinator.store.get_phase(run.id, "design").retry_count == 1
        assert coordinator.store.get_phase(run.id, "research").retry_count == 0

        events = broker.buffered(run.id)
        first = events[0]
        assert isinstance(first, ProgressEvent)
        assert first.message == "Research phase complete (previous run)"
        assert first.overall_progress == 25
        assert isinstance(events[-2], CompleteEvent)
        assert isinstance(events[-1], DoneEvent)

    @pytest.mark.asyncio
    async def test_retry_after_cancel(self, coordinator, phases):
        gate = asyncio.Event()
        phases.gates["research"] = gate
        run = coordinator.start_run(_REQUEST)
        while phases.calls["research"] == 0:
            await asyncio.sleep(0)
        coordinator.cancel(run.id)
        gate.set()
        await _run_to_end(coordinator, run.id)

        phases.gates.clear()
        coordinator.retry(run.id)
        await _run_to_end(coordinator, run.id)
        assert coordinator.store.get_run(run.id).status == "completed"

    @pytest.mark.asyncio
    async def test_retry_limit(self, make_coordinator, phases):
        coordinator = make_coordinator(config=settings.model_copy(update={"max_phase_retries": 1}))
        phases.failures["research"] = RuntimeError("first")
        run = coordinator.start_run(_REQUEST)
        await _run_to_end(coordinator, run.id)

        phases.failures["research"] = RuntimeError("second")
        coordinator.retry(run.id)
        await _run_to_end(coordinator, run.id)

        with pytest.raises(RetryLimitError):
            coordinator.retry(run.id)

    @pytest.mark.asyncio
    async def test_completed_run_rejected(self, coordinator):
        run = coordinator.start_run(_REQUEST)
        await _run_to_end(coordinator, run.id)
        with pytest.raises(RunStateError) as exc_info:
            coordinator.retry(run.id)
        assert exc_info.value.code == "run_completed"

    @pytest.mark.asyncio
    async def test_running_run_rejected(self, coordinator, phases):
        gate = asyncio.Event()
        phases.gates["research"] = gate
        run = coordinator.start_run(_REQUEST)
        with pytest.raises(RunStateError) as exc_info:
            coordinator.retry(run.id)
        assert exc_info.value.code == "run_in_progress"
        gate.set()
        await _run_to_end(coordinator, run.id)


class TestSubscribe:
    """subscribe() replays buffered events and follows the live tail."""

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_full_history(self, coordinator):
        run = coordinator.start_run(_REQUEST)
        await _run_to_end(coordinator, run.id)

        events = [e async for e in coordinator.subscribe(run.id)]
        assert isinstance(events[-1], DoneEvent)
        assert any(isinstance(e, CompleteEvent) for e in events)

    @pytest.mark.asyncio
    async def test_live_subscriber(self, coordinator, phases):
        gate = asyncio.Event()
        phases.gates["research"] = gate
        run = coordinator.start_run(_REQUEST)

        async def collect():
            return [e async for e in coordinator.subscribe(run.id)]

        consumer = asyncio.create_task(collect())
        await asyncio.sleep(0)
        gate.set()
        events = await asyncio.wait_for(consumer, timeout=2)
        assert [e.type for e in events[-2:]] == ["complete", "done"]

    def test_unknown_run(self, coordinator):
        with pytest.raises(RunNotFoundError):
            coordinator.subscribe("nope")

    @pytest.mark.asyncio
    async def test_unknown_channel_yields_done(self):
        events = [e async for e in RunEventBroker().stream("ghost", heartbeat_s=1)]
        assert events == [DoneEvent(run_id="ghost")]

    @pytest.mark.asyncio
    async def test_heartbeat_when_idle(self):
        broker = RunEventBroker()
        broker.open("r1")
        stream = broker.stream("r1", heartbeat_s=0.01)
        first = await stream.__anext__()
        assert first.type == "heartbeat"
        broker.publish(DoneEvent(run_id="r1"))
        rest = [e async for e in stream]
        assert rest[-1].type == "done"
