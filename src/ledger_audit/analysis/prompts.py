"""Prompt construction for analysis and correction requests."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date

from ledger_audit.analysis.report import PatternRule
from ledger_audit.models import (
    AnalysisFocus,
    Category,
    CheckPattern,
    VendorSummary,
)

MAX_INVALID_RESPONSE_CHARS = 8000

REPORT_SCHEMA = """{
  "coherence_score": number between 0 and 1,
  "issues": [
    {
      "id": string,
      "type": string (e.g. miscategorized, inconsistent, missing_pattern, duplicate_pattern, ambiguous_vendor),
      "severity": "critical" | "high" | "medium" | "low",
      "description": string,
      "transaction_ids": [string],
      "affected_count": integer,
      "confidence": number between 0 and 1,
      "current_category": string (optional),
      "suggested_category": string (optional),
      "fix": {"id": string, "issue_id": string, "type": string, "description": string, "data": object, "applied": false} (optional)
    }
  ],
  "suggested_patterns": [
    {
      "id": string,
      "name": string,
      "description": string,
      "impact": string,
      "pattern": {"name": string, "merchant_pattern": string, "is_regex": boolean, "amount_condition": string, "amount_min": number, "amount_max": number, "default_category": string, "confidence": number},
      "match_count": integer greater than 0,
      "confidence": number between 0 and 1,
      "example_txn_ids": [string]
    }
  ],
  "insights": [string],
  "category_summary": {
    "<category name>": {"category_id": string, "category_name": string, "transaction_count": integer, "total_amount": number, "consistency": number, "issues": integer}
  }
}"""


@dataclass
class PromptData:
    start_date: date
    end_date: date
    total_count: int
    categories: list[Category] = field(default_factory=list)
    patterns: list[PatternRule] = field(default_factory=list)
    check_patterns: list[CheckPattern] = field(default_factory=list)
    vendors: list[VendorSummary] = field(default_factory=list)
    focus: AnalysisFocus = AnalysisFocus.ALL
    max_issues: int = 0


@dataclass
class CorrectionPromptData:
    original_prompt: str
    invalid_response: str
    error_details: str
    error_section: str
    line_number: int
    column_number: int


def _truncate(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[:limit] + "..."


def _format_amount(value: float | None) -> str:
    if value is None:
        return "-"
    return f"${value:,.2f}"


class TemplatePromptBuilder:
    def build_analysis_prompt(self, data: PromptData) -> str:
        lines = [
            "Analyze the categorization history of the transactions in the attached data "
            f"for the period {data.start_date.isoformat()} to {data.end_date.isoformat()} "
            f"({data.total_count} transactions).",
            f"Focus: {data.focus.value}.",
        ]
        if data.max_issues > 0:
            lines.append(f"Report at most {data.max_issues} issues, most severe first.")

        if data.categories:
            lines.append("")
            lines.append("Categories:")
            for category in data.categories:
                suffix = f" - {category.description}" if category.description else ""
                status = "" if category.is_active else " (inactive)"
                lines.append(f"- {category.name}{status}{suffix}")

        if data.patterns:
            lines.append("")
            lines.append("Active pattern rules:")
            for rule in data.patterns:
                kind = "regex" if rule.is_regex else "contains"
                lines.append(
                    f"- {rule.name}: merchant {kind} '{rule.merchant_pattern}' "
                    f"-> {rule.default_category} (amount {rule.amount_condition or 'any'})"
                )

        if data.check_patterns:
            lines.append("")
            lines.append("Check patterns:")
            for check in data.check_patterns:
                lines.append(
                    f"- {check.pattern_name} -> {check.category} "
                    f"(amount {_format_amount(check.amount_min)} to {_format_amount(check.amount_max)})"
                )

        if data.vendors:
            lines.append("")
            lines.append("Frequent vendors (majority category):")
            for vendor in data.vendors:
                lines.append(f"- {vendor.name}: {vendor.category} ({vendor.occurrences}x)")

        lines.extend(
            [
                "",
                "Respond with a single JSON object matching this schema, and nothing else:",
                REPORT_SCHEMA,
                "Every issue with affected_count > 0 must list its transaction_ids.",
            ]
        )
        return "\n".join(lines)

    def build_correction_prompt(self, data: CorrectionPromptData) -> str:
        location = (
            f"line {data.line_number}, column {data.column_number}"
            if data.line_number > 0
            else "unknown position"
        )
        return "\n".join(
            [
                data.original_prompt,
                "",
                "Your previous response was invalid:",
                _truncate(data.invalid_response, MAX_INVALID_RESPONSE_CHARS),
                "",
                f"Error: {data.error_details}",
                f"Location: {location}",
                f"Problematic section: {data.error_section}",
                "",
                "Return the complete corrected JSON object only. "
                "Fix the error above and keep every other part of the response intact.",
            ]
        )
