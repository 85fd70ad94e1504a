"""Report payload produced by the LLM, and the correction protocol messages."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

ISSUE_TYPE_MISCATEGORIZED = "miscategorized"
ISSUE_TYPE_INCONSISTENT = "inconsistent"
ISSUE_TYPE_MISSING_PATTERN = "missing_pattern"
ISSUE_TYPE_DUPLICATE_PATTERN = "duplicate_pattern"
ISSUE_TYPE_AMBIGUOUS_VENDOR = "ambiguous_vendor"

FIX_TYPE_UPDATE_CATEGORY = "update_category"


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def order(self) -> int:
        """Priority rank; lower is more severe."""
        return _SEVERITY_ORDER[self]


_SEVERITY_ORDER = {
    IssueSeverity.CRITICAL: 1,
    IssueSeverity.HIGH: 2,
    IssueSeverity.MEDIUM: 3,
    IssueSeverity.LOW: 4,
}


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class Fix(_StrictModel):
    id: str = ""
    issue_id: str = ""
    type: str = ""
    description: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    applied: bool = False
    applied_at: datetime | None = None


class Issue(_StrictModel):
    id: str = ""
    # Open set: the LLM may report issue types nobody enumerated.
    type: str = ""
    severity: IssueSeverity
    description: str = ""
    transaction_ids: list[str] = Field(default_factory=list)
    affected_count: int = 0
    confidence: float = 0.0
    current_category: str | None = None
    suggested_category: str | None = None
    fix: Fix | None = None


class PatternRule(_StrictModel):
    id: int = 0
    name: str = ""
    description: str = ""
    merchant_pattern: str = ""
    is_regex: bool = False
    amount_condition: str = ""
    amount_value: float | None = None
    amount_min: float | None = None
    amount_max: float | None = None
    direction: str | None = None
    default_category: str = ""
    priority: int = 0
    confidence: float = 0.0
    use_count: int = 0
    is_active: bool = True


class SuggestedPattern(_StrictModel):
    id: str = ""
    name: str = ""
    description: str = ""
    impact: str = ""
    pattern: PatternRule = Field(default_factory=PatternRule)
    match_count: int = 0
    confidence: float = 0.0
    example_txn_ids: list[str] = Field(default_factory=list)


class CategoryStat(_StrictModel):
    category_id: str = ""
    category_name: str = ""
    transaction_count: int = 0
    total_amount: float = 0.0
    consistency: float = 0.0
    issues: int = 0


class Report(_StrictModel):
    id: str = ""
    session_id: str = ""
    generated_at: datetime | None = None
    period_start: date | None = None
    period_end: date | None = None
    coherence_score: float
    issues: list[Issue] = Field(default_factory=list)
    suggested_patterns: list[SuggestedPattern] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)
    category_summary: dict[str, CategoryStat] = Field(default_factory=dict)

    def issues_by_severity(self, severity: IssueSeverity) -> list[Issue]:
        return [issue for issue in self.issues if issue.severity == severity]

    def issues_by_type(self, issue_type: str) -> list[Issue]:
        return [issue for issue in self.issues if issue.type == issue_type]

    def has_actionable_issues(self) -> bool:
        return any(issue.fix is not None for issue in self.issues)


class ErrorCorrection(BaseModel):
    path: str
    description: str
    current_value: Any = None
    expected_format: str = ""


class CorrectionRequest(BaseModel):
    validation_error: str
    instructions: str
    error_locations: list[ErrorCorrection] = Field(default_factory=list)


class JSONPatch(BaseModel):
    path: str
    value: Any


class CorrectionResponse(BaseModel):
    patches: list[JSONPatch]
    reason: str = ""
