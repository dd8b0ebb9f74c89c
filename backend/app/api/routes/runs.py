"""Planning run endpoints.

Starting or retrying a run answers with a text/event-stream of the run's
events. The stream can be dropped and picked up again from /runs/{id}/events,
which replays what was missed before going live.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from app.api.deps import get_coordinator
from app.config import settings
from app.models.contracts import (
    ActionResponse,
    ErrorResponse,
    RunDetailResponse,
    StartRunRequest,
)
from app.workflows.events import sse_format
from app.workflows.planning_run import (
    PlanningRunCoordinator,
    RetryLimitError,
    RunNotFoundError,
    RunStateError,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/runs", tags=["runs"])

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
_NOT_FOUND = ("run_not_found", "Run not found")

# 400 when the request can never succeed, 409 when it may once the run settles
_STATE_STATUS = {"run_not_running": 400, "run_completed": 400, "run_in_progress": 409}


def _error(status: int, code: str, message: str, *, retryable: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=code, message=message, retryable=retryable).model_dump(),
    )


async def _sse(events: AsyncIterator[BaseModel]) -> AsyncIterator[str]:
    async for event in events:
        yield sse_format(event)


def _stream(coordinator: PlanningRunCoordinator, run_id: str) -> StreamingResponse:
    return StreamingResponse(
        _sse(coordinator.subscribe(run_id)),
        media_type="text/event-stream",
        headers={**_SSE_HEADERS, "X-Run-ID": run_id},
    )


@router.post("", responses={503: {"model": ErrorResponse}})
async def start_run(
    body: StartRunRequest,
    coordinator: PlanningRunCoordinator = Depends(get_coordinator),
):
    """Start a planning run and stream its progress."""
    if not settings.anthropic_api_key:
        return _error(503, "not_configured", "Anthropic API key is not configured")

    run = coordinator.start_run(body)
    logger.info("run_requested", run_id=run.id, city=body.location.city, state=body.location.state)
    return _stream(coordinator, run.id)


@router.get("/{run_id}", response_model=RunDetailResponse, responses={404: {"model": ErrorResponse}})
async def get_run(run_id: str, coordinator: PlanningRunCoordinator = Depends(get_coordinator)):
    store = coordinator.store
    run = store.get_run(run_id)
    if run is None:
        return _error(404, *_NOT_FOUND)
    record = store.get_report(run.report_id) if run.report_id else None
    return RunDetailResponse(
        run=run,
        phases=store.list_phases(run_id),
        report=record.report if record else None,
    )


@router.get("/{run_id}/events", responses={404: {"model": ErrorResponse}})
async def stream_run_events(run_id: str, coordinator: PlanningRunCoordinator = Depends(get_coordinator)):
    """Re-attach to a run's event stream."""
    if coordinator.store.get_run(run_id) is None:
        return _error(404, *_NOT_FOUND)
    return _stream(coordinator, run_id)


@router.post(
    "/{run_id}/cancel",
    response_model=ActionResponse,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def cancel_run(run_id: str, coordinator: PlanningRunCoordinator = Depends(get_coordinator)):
    try:
        coordinator.cancel(run_id)
    except RunNotFoundError:
        return _error(404, *_NOT_FOUND)
    except RunStateError as exc:
        return _error(_STATE_STATUS.get(exc.code, 400), exc.code, exc.message)
    return ActionResponse(success=True, message="Cancellation requested")


@router.post(
    "/{run_id}/retry",
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        503: {"model": ErrorResponse},
    },
)
async def retry_run(run_id: str, coordinator: PlanningRunCoordinator = Depends(get_coordinator)):
    """Resume a failed or cancelled run from its first incomplete phase."""
    if not settings.anthropic_api_key:
        return _error(503, "not_configured", "Anthropic API key is not configured")
    try:
        run = coordinator.retry(run_id)
    except RunNotFoundError:
        return _error(404, *_NOT_FOUND)
    except RunStateError as exc:
        return _error(_STATE_STATUS.get(exc.code, 400), exc.code, exc.message)
    except RetryLimitError as exc:
        return _error(409, "retry_limit_exceeded", str(exc))
    return _stream(coordinator, run.id)
