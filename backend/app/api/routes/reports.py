"""Report endpoints: fetch a generated report and manage its share link."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from app.api.deps import get_store
from app.models.contracts import ErrorResponse, ReportRecord, ShareResponse
from app.workflows.run_store import RunStore

logger = structlog.get_logger()

router = APIRouter(prefix="/reports", tags=["reports"])

_NOT_FOUND = ("report_not_found", "Report not found")


def _error(status: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=code, message=message).model_dump(),
    )


# Declared before /{report_id} so "shared" is never taken for an id
@router.get("/shared/{token}", response_model=ReportRecord, responses={404: {"model": ErrorResponse}})
async def get_shared_report(token: str, store: RunStore = Depends(get_store)):
    record = store.get_shared_report(token)
    if record is None:
        return _error(404, "share_not_found", "Shared report not found")
    return record


@router.get("/{report_id}", response_model=ReportRecord, responses={404: {"model": ErrorResponse}})
async def get_report(report_id: str, store: RunStore = Depends(get_store)):
    record = store.get_report(report_id)
    if record is None:
        return _error(404, *_NOT_FOUND)
    return record


@router.post("/{report_id}/share", response_model=ShareResponse, responses={404: {"model": ErrorResponse}})
async def share_report(report_id: str, store: RunStore = Depends(get_store)):
    record = store.enable_sharing(report_id)
    if record is None:
        return _error(404, *_NOT_FOUND)
    assert record.share_token is not None
    logger.info("report_shared", report_id=report_id)
    return ShareResponse(share_token=record.share_token, share_enabled=True)


@router.delete("/{report_id}/share", response_model=ShareResponse, responses={404: {"model": ErrorResponse}})
async def unshare_report(report_id: str, store: RunStore = Depends(get_store)):
    record = store.disable_sharing(report_id)
    if record is None:
        return _error(404, *_NOT_FOUND)
    logger.info("report_unshared", report_id=report_id)
    return ShareResponse(share_token=record.share_token or "", share_enabled=False)
