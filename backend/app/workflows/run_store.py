"""In-process store for runs, phase execution records and reports.

State lives for the life of the process. Records are pydantic models and are
replaced whole on every save, never mutated in place by callers.
"""

from __future__ import annotations

import secrets

from app.models.contracts import PHASE_ORDER, PhaseName, PhaseRecord, ReportRecord, Run


class RunStore:
    def __init__(self) -> None:
        self._runs: dict[str, Run] = {}
        self._phases: dict[str, dict[PhaseName, PhaseRecord]] = {}
        self._reports: dict[str, ReportRecord] = {}
        self._share_tokens: dict[str, str] = {}

    # --- runs ---

    def create_run(self, run: Run) -> Run:
        self._runs[run.id] = run
        self._phases[run.id] = {phase: PhaseRecord(phase=phase) for phase in PHASE_ORDER}
        return run

    def get_run(self, run_id: str) -> Run | None:
        return self._runs.get(run_id)

    def save_run(self, run: Run) -> Run:
        self._runs[run.id] = run
        return run

    # --- phase records ---

    def list_phases(self, run_id: str) -> list[PhaseRecord]:
        records = self._phases.get(run_id, {})
        return [records[phase] for phase in PHASE_ORDER if phase in records]

    def get_phase(self, run_id: str, phase: PhaseName) -> PhaseRecord:
        return self._phases[run_id][phase]

    def save_phase(self, run_id: str, record: PhaseRecord) -> PhaseRecord:
        self._phases[run_id][record.phase] = record
        return record

    # --- reports ---

    def save_report(self, record: ReportRecord) -> ReportRecord:
        self._reports[record.id] = record
        return record

    def get_report(self, report_id: str) -> ReportRecord | None:
        return self._reports.get(report_id)

    def enable_sharing(self, report_id: str) -> ReportRecord | None:
        """Turn sharing on, reusing the existing token if the report has one."""
        record = self._reports.get(report_id)
        if record is None:
            return None
        token = record.share_token or secrets.token_urlsafe(16)
        record = record.model_copy(update={"share_token": token, "share_enabled": True})
        self._reports[report_id] = record
        self._share_tokens[token] = report_id
        return record

    def disable_sharing(self, report_id: str) -> ReportRecord | None:
        record = self._reports.get(report_id)
        if record is None:
            return None
        record = record.model_copy(update={"share_enabled": False})
        self._reports[report_id] = record
        return record

    def get_shared_report(self, token: str) -> ReportRecord | None:
        report_id = self._share_tokens.get(token)
        record = self._reports.get(report_id) if report_id else None
        if record is None or not record.share_enabled:
            return None
        return record
