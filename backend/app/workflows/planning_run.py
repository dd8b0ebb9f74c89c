"""Run coordinator: drives research -> design -> sourcing -> report for one run.

Each run executes as one asyncio task. Phases run strictly in order against a
frozen RunContext snapshot; a completed phase's output is merged into the next
snapshot and persisted on its phase record, which is what retry resumes from.
Every event goes through the RunEventBroker and every run's stream ends with
`done`, whatever happened.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping, Sequence
from typing import Any

import structlog
from pydantic import BaseModel

from app.config import Settings, settings
from app.models.contracts import (
    PHASE_ORDER,
    ApiCost,
    CompleteEvent,
    DesignOutput,
    DoneEvent,
    ErrorEvent,
    InventoryItem,
    PhaseName,
    PhaseRecord,
    ProgressEvent,
    ReportOutput,
    ReportRecord,
    ResearchOutput,
    Run,
    RunContext,
    SourcingOutput,
    StartRunRequest,
    TokenUsage,
    utc_now,
)
from app.phases import design, report, research, sourcing
from app.phases.runner import PhaseResult, ProgressSink, ProgressWindow
from app.phases.services import PhaseServices
from app.utils.cancellation import CancellationToken, RunCancelledError
from app.workflows.events import RunEventBroker
from app.workflows.run_store import RunStore

log = structlog.get_logger("planning_run")

CANCELLED_MESSAGE = "Project planning was cancelled."
INPUT_COST_PER_MTOK = 3.0
OUTPUT_COST_PER_MTOK = 15.0

PhaseRunner = Callable[[RunContext, PhaseServices], Awaitable[tuple[BaseModel, PhaseResult]]]
ServicesFactory = Callable[[Run, CancellationToken, ProgressSink, Sequence[InventoryItem]], PhaseServices]

DEFAULT_PHASE_RUNNERS: dict[PhaseName, PhaseRunner] = {
    "research": research.run_research_phase,
    "design": design.run_design_phase,
    "sourcing": sourcing.run_sourcing_phase,
    "report": report.run_report_phase,
}

PHASE_WINDOWS: dict[PhaseName, ProgressWindow] = {
    "research": research.WINDOW,
    "design": design.WINDOW,
    "sourcing": sourcing.WINDOW,
    "report": report.WINDOW,
}

_OUTPUT_MODELS: dict[PhaseName, type[BaseModel]] = {
    "research": ResearchOutput,
    "design": DesignOutput,
    "sourcing": SourcingOutput,
    "report": ReportOutput,
}


class RunNotFoundError(Exception):
    pass


class RunStateError(Exception):
    """The run is in the wrong state for the requested action."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class RetryLimitError(Exception):
    pass


def estimate_cost(usage: TokenUsage) -> float:
    cost = (
        usage.input_tokens * INPUT_COST_PER_MTOK + usage.output_tokens * OUTPUT_COST_PER_MTOK
    ) / 1_000_000
    return round(cost, 4)


class PlanningRunCoordinator:
    def __init__(
        self,
        store: RunStore,
        broker: RunEventBroker,
        services_factory: ServicesFactory,
        phase_runners: Mapping[PhaseName, PhaseRunner] | None = None,
        config: Settings = settings,
    ) -> None:
        self._store = store
        self._broker = broker
        self._services_factory = services_factory
        self._runners = dict(phase_runners or DEFAULT_PHASE_RUNNERS)
        self._config = config
        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._inventories: dict[str, tuple[InventoryItem, ...]] = {}

    @property
    def store(self) -> RunStore:
        return self._store

    @property
    def broker(self) -> RunEventBroker:
        return self._broker

    def is_active(self, run_id: str) -> bool:
        return run_id in self._tasks

    # === Public operations ===

    def start_run(self, request: StartRunRequest) -> Run:
        run = Run(
            id=str(uuid.uuid4()),
            project_description=request.project_description,
            location=request.location,
            preferences=request.preferences,
            status="running",
            started_at=utc_now(),
        )
        self._store.create_run(run)
        self._inventories[run.id] = tuple(request.inventory)
        context = RunContext(
            run_id=run.id,
            project_description=run.project_description,
            location=run.location,
            preferences=run.preferences,
            inventory=tuple(request.inventory),
        )
        log.info("run_started", run_id=run.id, inventory_items=len(request.inventory))
        self._spawn(run, context, resume_index=0)
        return run

    def cancel(self, run_id: str) -> None:
        run = self._store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        token = self._tokens.get(run_id)
        if run.status != "running" or token is None:
            raise RunStateError("run_not_running", "Run is not currently running")
        token.cancel()
        log.info("run_cancel_requested", run_id=run_id, phase=run.current_phase)

    def retry(self, run_id: str) -> Run:
        """Resume a failed or cancelled run from its first incomplete phase."""
        run = self._store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.status == "completed":
            raise RunStateError("run_completed", "Run already completed")
        if run.status in ("running", "pending") or self.is_active(run_id):
            raise RunStateError("run_in_progress", "Run is still in progress")

        records = self._store.list_phases(run_id)
        resume_index = next(
            (i for i, record in enumerate(records) if record.status != "completed"),
            len(records),
        )
        if resume_index < len(records):
            failing = records[resume_index]
            if failing.retry_count >= self._config.max_phase_retries:
                raise RetryLimitError(
                    f"Phase {failing.phase} has already been retried {failing.retry_count} times"
                )

        context = RunContext(
            run_id=run.id,
            project_description=run.project_description,
            location=run.location,
            preferences=run.preferences,
            inventory=self._inventories.get(run_id, ()),
            **self._restore_outputs(records[:resume_index]),
        )

        for i, record in enumerate(records[resume_index:]):
            update: dict[str, Any] = {"status": "pending", "error_message": None}
            if i == 0:
                update["retry_count"] = record.retry_count + 1
            self._store.save_phase(run_id, record.model_copy(update=update))

        run = self._store.save_run(
            run.model_copy(
                update={
                    "status": "running",
                    "error_message": None,
                    "completed_at": None,
                    "cancelled_at": None,
                }
            )
        )
        log.info(
            "run_retry_started",
            run_id=run_id,
            resume_phase=PHASE_ORDER[resume_index] if resume_index < len(PHASE_ORDER) else None,
        )

        self._spawn(run, context, resume_index=resume_index, replay=records[:resume_index])
        return run

    def subscribe(self, run_id: str) -> AsyncIterator[BaseModel]:
        if self._store.get_run(run_id) is None:
            raise RunNotFoundError(run_id)
        return self._broker.stream(run_id, heartbeat_s=self._config.heartbeat_interval_s)

    async def wait(self, run_id: str) -> None:
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)

    # === Pipeline ===

    def _restore_outputs(self, records: Sequence[PhaseRecord]) -> dict[str, BaseModel]:
        outputs: dict[str, BaseModel] = {}
        for record in records:
            if record.output_snapshot is not None:
                outputs[record.phase] = _OUTPUT_MODELS[record.phase].model_validate(record.output_snapshot)
        return outputs

    def _spawn(
        self,
        run: Run,
        context: RunContext,
        *,
        resume_index: int,
        replay: Sequence[PhaseRecord] = (),
    ) -> None:
        token = CancellationToken()
        self._tokens[run.id] = token
        self._broker.open(run.id)
        for record in replay:
            self._broker.publish(
                ProgressEvent(
                    run_id=run.id,
                    phase=record.phase,
                    phase_status="completed",
                    message=f"{record.phase.capitalize()} phase complete (previous run)",
                    overall_progress=PHASE_WINDOWS[record.phase].end,
                )
            )
        self._tasks[run.id] = asyncio.create_task(
            self._execute(run, context, token, resume_index),
            name=f"planning-run-{run.id}",
        )

    def _update_run(self, run_id: str, **changes: Any) -> Run:
        run = self._store.get_run(run_id)
        assert run is not None
        return self._store.save_run(run.model_copy(update=changes))

    def _update_phase(self, run_id: str, phase: PhaseName, **changes: Any) -> PhaseRecord:
        record = self._store.get_phase(run_id, phase)
        return self._store.save_phase(run_id, record.model_copy(update=changes))

    async def _execute(
        self,
        run: Run,
        context: RunContext,
        token: CancellationToken,
        resume_index: int,
    ) -> None:
        structlog.contextvars.bind_contextvars(run_id=run.id)
        services = self._services_factory(run, token, self._broker.publish, context.inventory)
        current: PhaseName | None = None
        try:
            for phase in PHASE_ORDER[resume_index:]:
                token.raise_if_cancelled()
                current = phase
                self._update_phase(
                    run.id,
                    phase,
                    status="running",
                    started_at=utc_now(),
                    input_snapshot=context.model_dump(mode="json"),
                )
                self._update_run(run.id, status="running", current_phase=phase)

                output, result = await self._runners[phase](context, services)

                context = context.model_copy(update={phase: output})
                self._update_phase(
                    run.id,
                    phase,
                    status="completed",
                    output_snapshot=output.model_dump(mode="json"),
                    tool_calls=result.tool_calls,
                    token_usage=result.token_usage,
                    duration_ms=result.duration_ms,
                    completed_at=utc_now(),
                )
                log.info(
                    "run_phase_completed",
                    phase=phase,
                    duration_ms=result.duration_ms,
                    tool_call_count=len(result.tool_calls),
                )
            current = None
            self._finish(run.id, context)
        except RunCancelledError:
            self._mark_cancelled(run.id, current)
        except Exception as exc:
            self._mark_failed(run.id, current, exc)
        finally:
            self._broker.publish(DoneEvent(run_id=run.id))
            self._tokens.pop(run.id, None)
            self._tasks.pop(run.id, None)
            structlog.contextvars.unbind_contextvars("run_id")

    def _finish(self, run_id: str, context: RunContext) -> None:
        assert context.report is not None
        report_id = str(uuid.uuid4())
        final = context.report.model_copy(update={"id": report_id})
        self._store.save_report(ReportRecord(id=report_id, run_id=run_id, report=final))
        self._update_run(
            run_id,
            status="completed",
            current_phase=None,
            report_id=report_id,
            completed_at=utc_now(),
        )

        usage = TokenUsage()
        for record in self._store.list_phases(run_id):
            usage = usage + record.token_usage
        self._broker.publish(
            CompleteEvent(
                run_id=run_id,
                report_id=report_id,
                summary=final.summary,
                total_cost=final.total_cost,
                report=final,
                api_cost=ApiCost(total_tokens=usage.total, estimated_cost=estimate_cost(usage)),
            )
        )
        log.info("run_completed", report_id=report_id, total_tokens=usage.total)

    def _mark_cancelled(self, run_id: str, current: PhaseName | None) -> None:
        for record in self._store.list_phases(run_id):
            if record.status in ("pending", "running"):
                self._update_phase(run_id, record.phase, status="skipped")
        self._update_run(run_id, status="cancelled", cancelled_at=utc_now())
        self._broker.publish(
            ErrorEvent(run_id=run_id, phase=current, message=CANCELLED_MESSAGE, recoverable=False)
        )
        log.info("run_cancelled", phase=current)

    def _mark_failed(self, run_id: str, current: PhaseName | None, exc: Exception) -> None:
        message = str(exc) or type(exc).__name__
        if current is not None:
            self._update_phase(run_id, current, status="error", error_message=message, completed_at=utc_now())
        self._update_run(run_id, status="error", error_message=message)
        self._broker.publish(ErrorEvent(run_id=run_id, phase=current, message=message, recoverable=True))
        log.error("run_failed", phase=current, error=message, error_type=type(exc).__name__, exc_info=exc)
