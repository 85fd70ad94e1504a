from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import date
from typing import Any, Protocol, runtime_checkable

from ledger_audit.analysis.prompts import CorrectionPromptData, PromptData
from ledger_audit.analysis.report import (
    CorrectionRequest,
    CorrectionResponse,
    Fix,
    Issue,
    PatternRule,
    Report,
    SuggestedPattern,
)
from ledger_audit.models import Category, CheckPattern, Classification, Session


@dataclass(frozen=True)
class SessionAnalysisResult:
    response: str
    session_id: str
    # Cumulative for the conversation; informational only.
    total_cost: float = 0.0
    num_turns: int = 0


class Storage(Protocol):
    def get_classifications_by_date_range(
        self, start: date, end: date
    ) -> list[Classification]: ...

    def get_categories(self) -> list[Category]: ...

    def get_active_pattern_rules(self) -> list[PatternRule]: ...

    def get_active_check_patterns(self) -> list[CheckPattern]: ...


class PromptBuilder(Protocol):
    def build_analysis_prompt(self, data: PromptData) -> str: ...

    def build_correction_prompt(self, data: CorrectionPromptData) -> str: ...


@runtime_checkable
class LLMClient(Protocol):
    def analyze_transactions_with_file(
        self,
        prompt: str,
        transaction_data: dict[str, Any],
        cancel_event: threading.Event | None = None,
    ) -> str: ...


@runtime_checkable
class SessionLLMClient(LLMClient, Protocol):
    """An LLM client that keeps conversation state between calls."""

    def analyze_transactions_with_file_session(
        self,
        prompt: str,
        transaction_data: dict[str, Any],
        session_id: str = "",
        cancel_event: threading.Event | None = None,
    ) -> SessionAnalysisResult: ...

    def request_correction(
        self,
        request: CorrectionRequest,
        session_id: str,
        cancel_event: threading.Event | None = None,
    ) -> CorrectionResponse: ...


class SessionStore(Protocol):
    def create(self, session: Session) -> None: ...

    def get(self, session_id: str) -> Session:
        """Raise SessionNotFoundError for unknown ids."""
        ...

    def update(self, session: Session) -> None: ...


class ReportStore(Protocol):
    def save_report(self, report: Report) -> None: ...

    def get_report(self, report_id: str) -> Report: ...


class FixApplier(Protocol):
    def apply_pattern_fixes(self, patterns: list[SuggestedPattern]) -> None: ...

    def apply_category_fixes(self, fixes: list[Fix]) -> None: ...

    def apply_recategorizations(self, issues: list[Issue]) -> None: ...
