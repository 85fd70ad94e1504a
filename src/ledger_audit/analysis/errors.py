"""Exceptions raised by the analysis engine and its collaborators."""

from __future__ import annotations


class AnalysisError(Exception):
    """Base class for analysis failures."""


class OptionsError(AnalysisError):
    """Invalid analysis options."""


class DataLoadError(AnalysisError):
    """A storage read failed while loading analysis inputs."""


class ValidationError(AnalysisError):
    """The LLM output could not be turned into a valid Report."""


class ReportSyntaxError(ValidationError):
    """The payload is not well-formed JSON."""

    def __init__(self, message: str, offset: int, line: int, column: int) -> None:
        super().__init__(message)
        self.offset = offset
        self.line = line
        self.column = column


class ReportTypeError(ValidationError):
    """A field holds a value of the wrong JSON type."""

    def __init__(self, message: str, field: str, expected: str, offset: int) -> None:
        super().__init__(message)
        self.field = field
        self.expected = expected
        self.offset = offset


class ReportValidationError(ValidationError):
    """The payload parsed but breaks a schema or semantic rule."""


class PatchError(AnalysisError):
    """A JSON patch could not be applied."""


class CorrectionProtocolError(AnalysisError):
    """The session-based correction exchange broke down."""


class StrategyExhaustedError(AnalysisError):
    """Every attempt allowed by a strategy produced invalid output."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class PersistenceError(AnalysisError):
    """A session or report write failed."""


class SessionNotFoundError(AnalysisError):
    pass


class ReportNotFoundError(AnalysisError):
    pass


class AnalysisCancelledError(AnalysisError):
    pass


class TransportError(AnalysisError):
    """An LLM call failed after transport-level retries."""
