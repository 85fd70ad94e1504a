"""Validation strategies that turn LLM output into a valid Report.

``RetryStrategy`` re-prompts a stateless client from scratch after each
invalid response. ``SessionCorrectionStrategy`` keeps a conversation open
with a session-capable client and asks it for minimal JSON patches.
"""

from __future__ import annotations

import logging
import re
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

from ledger_audit.analysis.errors import (
    AnalysisCancelledError,
    AnalysisError,
    CorrectionProtocolError,
    PatchError,
    StrategyExhaustedError,
    ValidationError,
)
from ledger_audit.analysis.interfaces import (
    LLMClient,
    PromptBuilder,
    SessionLLMClient,
    SessionStore,
)
from ledger_audit.analysis.json_patch import apply_patches
from ledger_audit.analysis.prompts import CorrectionPromptData, PromptData
from ledger_audit.analysis.report import CorrectionRequest, ErrorCorrection, Report
from ledger_audit.analysis.validator import ReportValidator
from ledger_audit.models import ProgressCallback, Session, SessionStatus

logger = logging.getLogger(__name__)

CORRECTION_INSTRUCTIONS = (
    "provide minimal patches fixing only the named errors; do not alter anything else."
)

_ISSUE_INDEX = re.compile(r"issue at index (\d+)")


def check_cancelled(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise AnalysisCancelledError("analysis cancelled")


class ProgressReporter:
    """Advisory progress delivery; a failing callback never interrupts analysis."""

    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback

    def __call__(self, stage: str, percent: int) -> None:
        if self._callback is None:
            return
        try:
            self._callback(stage, max(0, min(100, percent)))
        except Exception as exc:
            logger.warning("Progress callback failed at %r: %s", stage, exc)


def build_correction_request(
    data: bytes, error: Exception, validator: ReportValidator
) -> CorrectionRequest:
    message = str(error)
    locations: list[ErrorCorrection] = []

    match = _ISSUE_INDEX.search(message)
    if "transaction IDs required" in message and match:
        locations.append(
            ErrorCorrection(
                path=f"issues[{match.group(1)}].transaction_ids",
                description="Transaction IDs array is required when affected_count > 0",
                current_value=None,
                expected_format="array of transaction ID strings",
            )
        )
    elif "invalid JSON" in message:
        section, line, column = validator.extract_error(data, error)
        locations.append(
            ErrorCorrection(
                path=f"line {line}, column {column}",
                description="JSON syntax error",
                current_value=section,
                expected_format="valid JSON syntax",
            )
        )
    else:
        locations.append(
            ErrorCorrection(
                path="unknown",
                description=message,
                current_value=None,
                expected_format="valid according to the report schema",
            )
        )

    return CorrectionRequest(
        validation_error=message,
        instructions=CORRECTION_INSTRUCTIONS,
        error_locations=locations,
    )


class AnalysisStrategy(ABC):
    name = "base"
    max_attempts = 1

    def __init__(
        self,
        client: LLMClient,
        validator: ReportValidator,
        prompt_builder: PromptBuilder,
        session_store: SessionStore,
    ) -> None:
        self.client = client
        self.validator = validator
        self.prompt_builder = prompt_builder
        self.session_store = session_store

    @abstractmethod
    def run(
        self,
        session: Session,
        prompt_data: PromptData,
        transaction_data: dict[str, Any],
        progress: ProgressReporter,
        cancel_event: threading.Event | None = None,
    ) -> Report:
        """Return a validated Report or raise an AnalysisError."""

    def _begin_attempt(
        self, session: Session, attempts: int, cancel_event: threading.Event | None
    ) -> None:
        session.attempts = attempts
        session.status = SessionStatus.VALIDATING
        session.last_attempt = datetime.now(timezone.utc)
        check_cancelled(cancel_event)
        try:
            self.session_store.update(session)
        except Exception as exc:
            logger.warning("Failed to record attempt %d for session %s: %s", attempts, session.id, exc)


class RetryStrategy(AnalysisStrategy):
    """Up to three full generations; each retry re-sends a self-contained correction prompt."""

    name = "retry"
    max_attempts = 3

    def run(
        self,
        session: Session,
        prompt_data: PromptData,
        transaction_data: dict[str, Any],
        progress: ProgressReporter,
        cancel_event: threading.Event | None = None,
    ) -> Report:
        prompt = self.prompt_builder.build_analysis_prompt(prompt_data)
        last_exc: Exception | None = None

        for attempt in range(1, self.max_attempts + 1):
            self._begin_attempt(session, attempt, cancel_event)
            progress(f"Analysis attempt {attempt}/{self.max_attempts}", 40 + attempt * 10)

            check_cancelled(cancel_event)
            try:
                response = self.client.analyze_transactions_with_file(
                    prompt, transaction_data, cancel_event=cancel_event
                )
            except AnalysisCancelledError:
                raise
            except Exception as exc:
                last_exc = exc
                logger.warning("Analysis request failed (attempt %d): %s", attempt, exc)
                continue

            try:
                return self.validator.validate(response)
            except ValidationError as exc:
                last_exc = exc
                logger.warning("Response validation failed (attempt %d): %s", attempt, exc)

            if attempt == self.max_attempts:
                break

            progress(f"Correcting response (attempt {attempt})", 50 + attempt * 5)
            section, line, column = self.validator.extract_error(response, last_exc)
            try:
                prompt = self.prompt_builder.build_correction_prompt(
                    CorrectionPromptData(
                        original_prompt=prompt,
                        invalid_response=response,
                        error_details=str(last_exc),
                        error_section=section,
                        line_number=line,
                        column_number=column,
                    )
                )
            except Exception as exc:
                last_exc = exc
                logger.warning("Failed to build correction prompt: %s", exc)

        raise StrategyExhaustedError(
            f"analysis failed after {self.max_attempts} attempts: {last_exc}",
            attempts=self.max_attempts,
        ) from last_exc


class SessionCorrectionStrategy(AnalysisStrategy):
    """One generation, then up to four patch-based corrections in the same conversation."""

    name = "session"
    max_attempts = 5

    client: SessionLLMClient

    def run(
        self,
        session: Session,
        prompt_data: PromptData,
        transaction_data: dict[str, Any],
        progress: ProgressReporter,
        cancel_event: threading.Event | None = None,
    ) -> Report:
        prompt = self.prompt_builder.build_analysis_prompt(prompt_data)

        progress("Starting AI analysis", 40)
        check_cancelled(cancel_event)
        try:
            result = self.client.analyze_transactions_with_file_session(
                prompt, transaction_data, session_id="", cancel_event=cancel_event
            )
        except AnalysisCancelledError:
            raise
        except Exception as exc:
            raise AnalysisError(f"initial analysis failed: {exc}") from exc

        current = result.response.encode("utf-8")
        llm_session_id = result.session_id
        logger.info(
            "Initial analysis complete (llm session %s, %d bytes, cost %.4f, turns %d)",
            llm_session_id,
            len(current),
            result.total_cost,
            result.num_turns,
        )

        for attempt in range(1, self.max_attempts + 1):
            self._begin_attempt(session, attempt, cancel_event)
            progress(f"Validating response (attempt {attempt})", 40 + attempt * 7)

            try:
                report = self.validator.validate(current)
            except ValidationError as exc:
                validation_error = exc
            else:
                logger.info(
                    "Analysis validated for llm session %s after %d attempts",
                    llm_session_id,
                    attempt,
                )
                return report

            logger.debug("Validation failed (attempt %d): %s", attempt, validation_error)
            if attempt == self.max_attempts:
                raise StrategyExhaustedError(
                    f"validation failed after {attempt} correction attempts: {validation_error}",
                    attempts=attempt,
                ) from validation_error

            request = build_correction_request(current, validation_error, self.validator)
            if not llm_session_id:
                raise CorrectionProtocolError("session ID required for corrections")

            progress(f"Requesting corrections (attempt {attempt})", 43 + attempt * 7)
            check_cancelled(cancel_event)
            try:
                correction = self.client.request_correction(
                    request, llm_session_id, cancel_event=cancel_event
                )
            except (AnalysisCancelledError, CorrectionProtocolError):
                raise
            except Exception as exc:
                raise CorrectionProtocolError(
                    f"correction request {attempt} failed: {exc}"
                ) from exc

            logger.debug(
                "Received %d patches: %s", len(correction.patches), correction.reason
            )
            try:
                current = apply_patches(current, correction.patches)
            except PatchError as exc:
                raise CorrectionProtocolError(f"failed to apply patches: {exc}") from exc
            for patch in correction.patches:
                logger.debug("Applied patch at %s", patch.path)

        raise StrategyExhaustedError("exhausted correction attempts", attempts=self.max_attempts)


def select_strategy(
    client: LLMClient,
    validator: ReportValidator,
    prompt_builder: PromptBuilder,
    session_store: SessionStore,
) -> AnalysisStrategy:
    """Pick the session strategy when the client can hold a conversation."""
    if isinstance(client, SessionLLMClient):
        strategy_cls: type[AnalysisStrategy] = SessionCorrectionStrategy
    else:
        strategy_cls = RetryStrategy
    logger.info("Using %s strategy for %s", strategy_cls.name, type(client).__name__)
    return strategy_cls(client, validator, prompt_builder, session_store)
