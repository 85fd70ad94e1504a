"""Strict validation of LLM report payloads and best-effort error location."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

import pydantic

from ledger_audit.analysis.errors import (
    ReportSyntaxError,
    ReportTypeError,
    ReportValidationError,
)
from ledger_audit.analysis.report import Fix, Issue, Report, SuggestedPattern

logger = logging.getLogger(__name__)

SYNTAX_WINDOW = 50
ARRAY_CONTEXT_WINDOW = 100
FIELD_CONTEXT_WINDOW = 50

_EXPECTED_TYPES = {
    "float_type": "number",
    "float_parsing": "number",
    "int_type": "integer",
    "int_parsing": "integer",
    "int_from_float": "integer",
    "string_type": "string",
    "bool_type": "boolean",
    "bool_parsing": "boolean",
    "list_type": "array",
    "dict_type": "object",
    "model_type": "object",
    "model_attributes_type": "object",
    "datetime_type": "datetime",
    "datetime_parsing": "datetime",
    "datetime_from_date_parsing": "datetime",
    "date_type": "date",
    "date_parsing": "date",
    "date_from_datetime_parsing": "date",
    "date_from_datetime_inexact": "date",
}

# Phrases used in semantic error messages, mapped to the JSON arrays they refer to.
# "suggested pattern" must be tried before "issue".
_ARRAY_MARKERS = (
    ("suggested pattern", "suggested_patterns"),
    ("suggested_patterns", "suggested_patterns"),
    ("example_txn_ids", "example_txn_ids"),
    ("transaction_ids", "transaction_ids"),
    ("transaction IDs", "transaction_ids"),
    ("issue", "issues"),
    ("insight", "insights"),
)

_QUOTED_FIELD = re.compile(r"'([^']+)'")


def _json_type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def format_path(loc: tuple[Any, ...]) -> str:
    """Render a pydantic location as ``issues[0].transaction_ids``."""
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        elif path:
            path += f".{part}"
        else:
            path = str(part)
    return path


def _message_prefix(loc: tuple[Any, ...]) -> str:
    if len(loc) >= 2 and isinstance(loc[1], int):
        if loc[0] == "issues":
            prefix = f"invalid issue at index {loc[1]}: "
            if len(loc) > 3 and loc[2] == "fix":
                prefix += "invalid fix: "
            return prefix
        if loc[0] == "suggested_patterns":
            return f"invalid suggested pattern at index {loc[1]}: "
    return ""


def calculate_position(data: bytes, offset: int) -> tuple[int, int]:
    """Convert a byte offset into a 1-based (line, column) pair."""
    line = 1
    column = 1
    for byte in data[: max(offset, 0)]:
        if byte == 0x0A:
            line += 1
            column = 1
        else:
            column += 1
    return line, column


def _locate(data: bytes, loc: tuple[Any, ...]) -> int:
    """Best-effort byte offset of the value addressed by ``loc``."""
    position = 0
    for part in loc:
        if isinstance(part, int):
            continue
        index = data.find(f'"{part}"'.encode("utf-8"), position)
        if index < 0:
            break
        position = index
    return position


def _to_bytes(data: bytes | str) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def _check_fix(fix: Fix) -> None:
    if not fix.id:
        raise ValueError("fix ID is required")
    if not fix.issue_id:
        raise ValueError("fix issue ID is required")
    if not fix.type:
        raise ValueError("fix type is required")
    if not fix.description:
        raise ValueError("fix description is required")
    if not fix.data:
        raise ValueError("fix data is required")
    if fix.applied and fix.applied_at is None:
        raise ValueError("applied_at is required when the fix is applied")
    if not fix.applied and fix.applied_at is not None:
        raise ValueError("applied_at must be empty when the fix is not applied")


def _check_issue(issue: Issue) -> None:
    if not issue.id:
        raise ValueError("issue ID is required")
    # Any non-empty type is accepted; the LLM may discover new kinds of issue.
    if not issue.type:
        raise ValueError("issue type is required")
    if not issue.description:
        raise ValueError("issue description is required")
    if not 0.0 <= issue.confidence <= 1.0:
        raise ValueError("confidence must be between 0 and 1")
    if issue.affected_count < 0:
        raise ValueError("affected count must be non-negative")
    if issue.affected_count > 0 and not issue.transaction_ids:
        raise ValueError("transaction IDs required when affected count > 0")
    if issue.fix is not None:
        try:
            _check_fix(issue.fix)
        except ValueError as exc:
            raise ValueError(f"invalid fix: {exc}") from exc


def _check_suggested_pattern(pattern: SuggestedPattern) -> None:
    if not pattern.id:
        raise ValueError("pattern ID is required")
    if not pattern.name:
        raise ValueError("pattern name is required")
    if not pattern.description:
        raise ValueError("pattern description is required")
    if not pattern.impact:
        raise ValueError("pattern impact is required")
    if pattern.match_count <= 0:
        raise ValueError("match count must be positive")
    if not 0.0 <= pattern.confidence <= 1.0:
        raise ValueError("confidence must be between 0 and 1")

    rule = pattern.pattern
    if not rule.default_category:
        raise ValueError("pattern rule default category is required")
    if not 0.0 <= rule.confidence <= 1.0:
        raise ValueError("pattern rule confidence must be between 0 and 1")
    if (
        rule.amount_min is not None
        and rule.amount_max is not None
        and rule.amount_min > rule.amount_max
    ):
        raise ValueError("pattern rule amount_min must not exceed amount_max")


def check_report(report: Report) -> None:
    """Re-check every semantic rule the JSON schema alone cannot express."""
    if not 0.0 <= report.coherence_score <= 1.0:
        raise ReportValidationError("coherence score must be between 0 and 1")
    for index, issue in enumerate(report.issues):
        try:
            _check_issue(issue)
        except ValueError as exc:
            raise ReportValidationError(f"invalid issue at index {index}: {exc}") from exc
    for index, pattern in enumerate(report.suggested_patterns):
        try:
            _check_suggested_pattern(pattern)
        except ValueError as exc:
            raise ReportValidationError(
                f"invalid suggested pattern at index {index}: {exc}"
            ) from exc


class ReportValidator:
    """Turns a raw LLM response into a Report or raises a ValidationError subclass."""

    def validate(self, data: bytes | str) -> Report:
        raw = _to_bytes(data)
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            line, column = calculate_position(raw, exc.start)
            raise ReportSyntaxError(
                f"invalid JSON at line {line}, column {column}: payload is not UTF-8",
                offset=exc.start,
                line=line,
                column=column,
            ) from exc

        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            offset = len(text[: exc.pos].encode("utf-8"))
            raise ReportSyntaxError(
                f"invalid JSON at line {exc.lineno}, column {exc.colno}: {exc.msg}",
                offset=offset,
                line=exc.lineno,
                column=exc.colno,
            ) from exc
        except RecursionError as exc:
            raise ReportSyntaxError(
                "invalid JSON at line 1, column 1: nesting too deep",
                offset=0,
                line=1,
                column=1,
            ) from exc

        if not isinstance(payload, dict):
            raise ReportTypeError(
                f"invalid type for field 'report': expected object, got {_json_type_name(payload)}",
                field="report",
                expected="object",
                offset=0,
            )

        try:
            report = Report.model_validate_json(text, strict=True)
        except pydantic.ValidationError as exc:
            raise self._translate(raw, exc) from exc

        check_report(report)
        for issue in report.issues:
            logger.debug("Accepted issue %s of type %s", issue.id, issue.type)
        return report

    def _translate(self, raw: bytes, exc: pydantic.ValidationError) -> Exception:
        error = exc.errors()[0]
        loc = tuple(error.get("loc", ()))
        kind = error.get("type", "")
        path = format_path(loc) or "report"
        name = str(loc[-1]) if loc else "report"
        value = error.get("input")

        if kind in _EXPECTED_TYPES:
            expected = _EXPECTED_TYPES[kind]
            return ReportTypeError(
                f"invalid type for field '{path}': expected {expected}, "
                f"got {_json_type_name(value)}",
                field=path,
                expected=expected,
                offset=_locate(raw, loc),
            )

        prefix = _message_prefix(loc)
        if kind == "extra_forbidden":
            return ReportValidationError(f"{prefix}unknown field '{name}'")
        if kind == "missing":
            return ReportValidationError(f"{prefix}field '{name}' is required")
        if kind == "enum" and name == "severity":
            return ReportValidationError(f"{prefix}invalid issue severity: {value}")
        return ReportValidationError(f"{prefix}field '{name}': {error.get('msg', kind)}")

    def extract_error(self, data: bytes | str, err: BaseException) -> tuple[str, int, int]:
        """
        Locate the part of ``data`` an error refers to.

        Returns ``(section, line, column)``. Syntax errors yield an exact
        window around the failing offset; type errors name the field and
        expected type; semantic errors fall back to substring heuristics and
        may point at the wrong element for ambiguous payloads.
        """
        raw = _to_bytes(data)

        offset: int | None = None
        if isinstance(err, ReportSyntaxError):
            offset = err.offset
        elif isinstance(err, json.JSONDecodeError):
            offset = len(err.doc[: err.pos].encode("utf-8"))

        if offset is not None:
            offset = min(max(offset, 0), len(raw))
            line, column = calculate_position(raw, offset)
            start = max(offset - SYNTAX_WINDOW, 0)
            end = min(offset + SYNTAX_WINDOW, len(raw))
            return raw[start:end].decode("utf-8", errors="replace"), line, column

        if isinstance(err, ReportTypeError):
            line, column = calculate_position(raw, min(max(err.offset, 0), len(raw)))
            return f"field '{err.field}' (expected {err.expected})", line, column

        message = str(err)
        if "at index" in message:
            section, index = self._array_context(raw, message)
        elif "field" in message:
            section, index = self._field_context(raw, message)
        else:
            section, index = "unknown", 0
        line, column = calculate_position(raw, index)
        return section, line, column

    def _array_context(self, raw: bytes, message: str) -> tuple[str, int]:
        for marker, field in _ARRAY_MARKERS:
            if marker not in message:
                continue
            index = raw.find(f'"{field}"'.encode("utf-8"))
            if index >= 0:
                section = raw[index : index + ARRAY_CONTEXT_WINDOW]
                return section.decode("utf-8", errors="replace"), index
        return "array element", 0

    def _field_context(self, raw: bytes, message: str) -> tuple[str, int]:
        match = _QUOTED_FIELD.search(message)
        if match:
            field = match.group(1).split(".")[-1].split("[")[0]
            index = raw.find(f'"{field}"'.encode("utf-8"))
            if index >= 0:
                section = raw[index : index + FIELD_CONTEXT_WINDOW]
                return section.decode("utf-8", errors="replace"), index
        return "field", 0
