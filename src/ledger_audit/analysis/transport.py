"""Transport-level retries with exponential backoff around single LLM calls."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

import openai

from ledger_audit.analysis.errors import AnalysisCancelledError, TransportError
from ledger_audit.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RETRYABLE_OPENAI_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    retryable_markers: tuple[str, ...] = field(
        default_factory=lambda: tuple(settings.llm_retryable_markers)
    )

    @classmethod
    def from_settings(cls) -> RetryPolicy:
        return cls(
            max_attempts=settings.llm_retry_max_attempts,
            initial_delay=settings.llm_retry_initial_delay_seconds,
            max_delay=settings.llm_retry_max_delay_seconds,
            multiplier=settings.llm_retry_multiplier,
        )

    def backoff(self, attempt: int) -> float:
        """Delay after the given failed attempt (1-indexed)."""
        delay = self.initial_delay * (self.multiplier ** max(attempt - 1, 0))
        return min(delay, self.max_delay)


def is_retryable_error(exc: BaseException, policy: RetryPolicy | None = None) -> bool:
    if isinstance(exc, _RETRYABLE_OPENAI_ERRORS):
        return True
    if isinstance(exc, openai.APIStatusError) and exc.status_code >= 500:
        return True
    markers = policy.retryable_markers if policy else tuple(settings.llm_retryable_markers)
    message = str(exc).lower()
    return any(marker in message for marker in markers)


def call_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    cancel_event: threading.Event | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds, a non-retryable error occurs, or
    ``policy.max_attempts`` is reached.

    Non-retryable errors propagate unchanged. Exhausting the attempts raises
    TransportError chained to the last failure. A set ``cancel_event`` stops
    the loop before the next attempt and cuts any backoff short.
    """
    last_exc: BaseException | None = None
    for attempt in range(1, policy.max_attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise AnalysisCancelledError("analysis cancelled")
        try:
            return operation()
        except Exception as exc:
            if not is_retryable_error(exc, policy):
                raise
            last_exc = exc
            logger.warning(
                "LLM call failed (attempt %d/%d): %s", attempt, policy.max_attempts, exc
            )
            if attempt == policy.max_attempts:
                break
            delay = policy.backoff(attempt)
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise AnalysisCancelledError("analysis cancelled") from exc
            else:
                sleep(delay)

    raise TransportError(
        f"LLM call failed after {policy.max_attempts} attempts: {last_exc}"
    ) from last_exc
