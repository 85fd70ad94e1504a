"""In-memory session and report store for single-process deployments."""

from __future__ import annotations

import copy
import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from typing import Iterator

from ledger_audit.analysis.errors import (
    PersistenceError,
    ReportNotFoundError,
    SessionNotFoundError,
)
from ledger_audit.analysis.report import Report
from ledger_audit.config import settings
from ledger_audit.models import Session

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Many concurrent readers or a single writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class MemorySessionStore:
    """
    Implements both SessionStore and ReportStore.

    Every read and write goes through a deep copy, so callers may mutate
    what they pass in or get back without touching the stored state.
    Terminal sessions older than ``max_age`` are purged, together with
    their reports, by ``cleanup()``; ``start()`` runs it periodically on a
    daemon thread until ``stop()``.
    """

    def __init__(
        self,
        max_age: timedelta | None = None,
        cleanup_interval: float | None = None,
    ) -> None:
        self._sessions: dict[str, Session] = {}
        self._reports: dict[str, Report] = {}
        self._lock = ReadWriteLock()
        self.max_age = max_age or timedelta(hours=settings.session_retention_hours)
        self.cleanup_interval = (
            cleanup_interval
            if cleanup_interval is not None
            else float(settings.session_cleanup_interval_seconds)
        )
        self._stop_event = threading.Event()
        self._sweeper: threading.Thread | None = None

    def create(self, session: Session) -> None:
        if session is None:
            raise PersistenceError("session cannot be None")
        if not session.id:
            raise PersistenceError("session ID is required")
        with self._lock.write():
            if session.id in self._sessions:
                raise PersistenceError(f"session already exists: {session.id}")
            self._sessions[session.id] = copy.deepcopy(session)

    def get(self, session_id: str) -> Session:
        if not session_id:
            raise SessionNotFoundError("session ID is required")
        with self._lock.read():
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(f"session not found: {session_id}")
            return copy.deepcopy(session)

    def update(self, session: Session) -> None:
        if session is None:
            raise PersistenceError("session cannot be None")
        if not session.id:
            raise PersistenceError("session ID is required")
        with self._lock.write():
            if session.id not in self._sessions:
                raise SessionNotFoundError(f"session not found: {session.id}")
            self._sessions[session.id] = copy.deepcopy(session)

    def save_report(self, report: Report) -> None:
        if report is None:
            raise PersistenceError("report cannot be None")
        if not report.id:
            raise PersistenceError("invalid report: report ID is required")
        if not report.session_id:
            raise PersistenceError("invalid report: session ID is required")
        with self._lock.write():
            if report.id in self._reports:
                raise PersistenceError(f"report already exists: {report.id}")
            self._reports[report.id] = report.model_copy(deep=True)

    def get_report(self, report_id: str) -> Report:
        if not report_id:
            raise ReportNotFoundError("report ID is required")
        with self._lock.read():
            report = self._reports.get(report_id)
            if report is None:
                raise ReportNotFoundError(f"report not found: {report_id}")
            return report.model_copy(deep=True)

    def active_sessions(self) -> list[Session]:
        with self._lock.read():
            return [
                copy.deepcopy(session)
                for session in self._sessions.values()
                if not session.status.is_terminal
            ]

    def reports_in_range(self, start: date, end: date) -> list[Report]:
        with self._lock.read():
            return [
                report.model_copy(deep=True)
                for report in self._reports.values()
                if report.period_start is not None
                and report.period_end is not None
                and report.period_start >= start
                and report.period_end <= end
            ]

    def cleanup(self, now: datetime | None = None) -> int:
        """Purge terminal sessions idle longer than ``max_age``; returns how many."""
        cutoff = (now or datetime.now(timezone.utc)) - self.max_age
        with self._lock.write():
            expired = [
                session_id
                for session_id, session in self._sessions.items()
                if session.status.is_terminal and session.last_attempt < cutoff
            ]
            for session_id in expired:
                session = self._sessions.pop(session_id)
                if session.report_id:
                    self._reports.pop(session.report_id, None)
        if expired:
            logger.info("Purged %d expired analysis sessions", len(expired))
        return len(expired)

    def start(self) -> None:
        if self._sweeper is not None:
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(
            target=self._sweep, name="analysis-session-sweeper", daemon=True
        )
        self._sweeper.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join()
            self._sweeper = None

    def _sweep(self) -> None:
        while not self._stop_event.wait(self.cleanup_interval):
            try:
                self.cleanup()
            except Exception:
                logger.exception("Session cleanup failed")
