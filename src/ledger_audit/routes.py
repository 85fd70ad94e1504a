from datetime import date

from fastapi import APIRouter, Header, HTTPException
from pydantic import BaseModel, Field

from ledger_audit.analysis.errors import (
    AnalysisError,
    CorrectionProtocolError,
    DataLoadError,
    OptionsError,
    PersistenceError,
    ReportNotFoundError,
    SessionNotFoundError,
    StrategyExhaustedError,
    TransportError,
    ValidationError,
)
from ledger_audit.config import settings
from ledger_audit.models import AnalysisFocus, AnalysisOptions
from ledger_audit.wiring import build_engine

router = APIRouter()


class AnalysisRunRequest(BaseModel):
    start_date: date
    end_date: date
    focus: AnalysisFocus | None = None
    session_id: str = ""
    max_issues: int | None = Field(default=None, ge=0)
    dry_run: bool = False
    auto_apply: bool = False


@router.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


def _require_job_token(provided_token: str | None) -> None:
    if not settings.job_trigger_token:
        return
    if provided_token != settings.job_trigger_token:
        raise HTTPException(status_code=401, detail="Invalid job token")


@router.post("/v1/analysis/run")
def run_analysis(
    request: AnalysisRunRequest, x_job_token: str | None = Header(default=None)
) -> dict:
    _require_job_token(x_job_token)

    options = AnalysisOptions(
        start_date=request.start_date,
        end_date=request.end_date,
        focus=request.focus,
        session_id=request.session_id,
        max_issues=(
            settings.analysis_max_issues
            if request.max_issues is None
            else request.max_issues
        ),
        dry_run=request.dry_run,
        auto_apply=request.auto_apply,
    )

    try:
        report = build_engine().analyze(options)
    except OptionsError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (StrategyExhaustedError, ValidationError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except (DataLoadError, PersistenceError) as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except (CorrectionProtocolError, TransportError, AnalysisError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    return report.model_dump(mode="json")


@router.get("/v1/analysis/sessions/{session_id}")
def get_session(session_id: str) -> dict:
    try:
        session = build_engine().session_store.get(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Session not found") from exc
    return {
        "id": session.id,
        "status": session.status.value,
        "started_at": session.started_at.isoformat(),
        "last_attempt": session.last_attempt.isoformat(),
        "attempts": session.attempts,
        "completed_at": session.completed_at.isoformat() if session.completed_at else None,
        "error": session.error,
        "report_id": session.report_id,
    }


@router.get("/v1/analysis/reports/{report_id}")
def get_report(report_id: str) -> dict:
    try:
        report = build_engine().report_store.get_report(report_id)
    except ReportNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Report not found") from exc
    return report.model_dump(mode="json")
