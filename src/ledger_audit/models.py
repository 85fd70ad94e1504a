from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Callable

from ledger_audit.analysis.errors import OptionsError


@dataclass(frozen=True)
class Transaction:
    id: str
    date: date
    name: str
    amount: float
    merchant_name: str = ""
    account_id: str = ""
    type: str = ""
    category: str | None = None


@dataclass(frozen=True)
class Category:
    id: int
    name: str
    description: str = ""
    is_active: bool = True


@dataclass(frozen=True)
class Classification:
    """A transaction together with the category it was filed under."""

    transaction: Transaction
    category: str
    status: str
    confidence: float
    classified_at: datetime | None = None
    notes: str = ""


@dataclass(frozen=True)
class CheckPattern:
    id: int
    pattern_name: str
    category: str
    amount_min: float | None = None
    amount_max: float | None = None
    amounts: list[float] = field(default_factory=list)
    day_of_month_min: int | None = None
    day_of_month_max: int | None = None
    notes: str = ""
    use_count: int = 0


@dataclass(frozen=True)
class VendorSummary:
    """Majority category observed for one merchant."""

    name: str
    category: str
    occurrences: int


class SessionStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


@dataclass
class Session:
    """State record for one analysis attempt sequence."""

    id: str
    status: SessionStatus
    started_at: datetime
    last_attempt: datetime
    attempts: int = 0
    completed_at: datetime | None = None
    error: str | None = None
    report_id: str | None = None


class AnalysisFocus(str, Enum):
    COHERENCE = "coherence"
    PATTERNS = "patterns"
    CATEGORIES = "categories"
    ALL = "all"


ProgressCallback = Callable[[str, int], None]


@dataclass
class AnalysisOptions:
    start_date: date | None
    end_date: date | None
    focus: AnalysisFocus | None = None
    session_id: str = ""
    max_issues: int = 0
    dry_run: bool = False
    auto_apply: bool = False
    progress: ProgressCallback | None = None

    def validate(self) -> None:
        """Check the date range and limits; defaults an empty focus to ``all``."""
        if self.start_date is None:
            raise OptionsError("start date is required")
        if self.end_date is None:
            raise OptionsError("end date is required")
        if self.end_date < self.start_date:
            raise OptionsError("end date must be after start date")
        if self.max_issues < 0:
            raise OptionsError("max issues must be non-negative")
        if not self.focus:
            self.focus = AnalysisFocus.ALL
