"""Repository for analysis sessions and the reports they produce."""

from datetime import datetime
from typing import Any

from ledger_audit.analysis.errors import (
    PersistenceError,
    ReportNotFoundError,
    SessionNotFoundError,
)
from ledger_audit.analysis.report import Report
from ledger_audit.models import Session, SessionStatus
from ledger_audit.services.supabase_client import get_supabase

SESSIONS_TABLE = "analysis_sessions"
REPORTS_TABLE = "analysis_reports"

SESSION_COLUMNS = "id, status, started_at, last_attempt, attempts, completed_at, error, report_id"


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _session_row(session: Session) -> dict[str, Any]:
    return {
        "id": session.id,
        "status": session.status.value,
        "started_at": session.started_at.isoformat(),
        "last_attempt": session.last_attempt.isoformat(),
        "attempts": session.attempts,
        "completed_at": _isoformat(session.completed_at),
        "error": session.error,
        "report_id": session.report_id,
    }


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _build_session(row: dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        status=SessionStatus(row["status"]),
        started_at=_parse_datetime(row["started_at"]),
        last_attempt=_parse_datetime(row["last_attempt"]),
        attempts=int(row.get("attempts") or 0),
        completed_at=_parse_datetime(row.get("completed_at")),
        error=row.get("error"),
        report_id=row.get("report_id"),
    )


class SupabaseSessionStore:
    def __init__(self, client=None) -> None:
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_supabase()
        return self._client

    def create(self, session: Session) -> None:
        if not session.id:
            raise PersistenceError("session ID is required")
        self.client.table(SESSIONS_TABLE).insert(_session_row(session)).execute()

    def get(self, session_id: str) -> Session:
        if not session_id:
            raise SessionNotFoundError("session ID is required")
        response = (
            self.client.table(SESSIONS_TABLE)
            .select(SESSION_COLUMNS)
            .eq("id", session_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            raise SessionNotFoundError(f"session not found: {session_id}")
        return _build_session(rows[0])

    def update(self, session: Session) -> None:
        if not session.id:
            raise PersistenceError("session ID is required")
        row = _session_row(session)
        row.pop("id")
        response = (
            self.client.table(SESSIONS_TABLE).update(row).eq("id", session.id).execute()
        )
        if not response.data:
            raise SessionNotFoundError(f"session not found: {session.id}")


class SupabaseReportStore:
    """Reports are stored whole as a JSON payload next to a few indexed columns."""

    def __init__(self, client=None) -> None:
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_supabase()
        return self._client

    def save_report(self, report: Report) -> None:
        if not report.id:
            raise PersistenceError("invalid report: report ID is required")
        if not report.session_id:
            raise PersistenceError("invalid report: session ID is required")
        self.client.table(REPORTS_TABLE).insert(
            {
                "id": report.id,
                "session_id": report.session_id,
                "generated_at": _isoformat(report.generated_at),
                "period_start": report.period_start.isoformat() if report.period_start else None,
                "period_end": report.period_end.isoformat() if report.period_end else None,
                "coherence_score": report.coherence_score,
                "payload": report.model_dump(mode="json"),
            }
        ).execute()

    def get_report(self, report_id: str) -> Report:
        if not report_id:
            raise ReportNotFoundError("report ID is required")
        response = (
            self.client.table(REPORTS_TABLE)
            .select("payload")
            .eq("id", report_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            raise ReportNotFoundError(f"report not found: {report_id}")
        return Report.model_validate(rows[0]["payload"])
