"""OpenAI-backed LLM clients for transaction analysis.

``OpenAIAnalysisClient`` is stateless: every call is a fresh chat
completion. ``OpenAISessionAnalysisClient`` keeps the conversation for each
session id in process memory so corrections can refer back to the
original answer.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any

import pydantic
from openai import OpenAI

from ledger_audit.analysis.errors import AnalysisError, CorrectionProtocolError
from ledger_audit.analysis.interfaces import SessionAnalysisResult
from ledger_audit.analysis.report import CorrectionRequest, CorrectionResponse
from ledger_audit.analysis.transport import RetryPolicy, call_with_retry
from ledger_audit.config import settings
from ledger_audit.services.openai_client import get_openai_client

logger = logging.getLogger(__name__)

MAX_CONVERSATIONS = 100

ANALYSIS_SYSTEM_PROMPT = (
    "You are an assistant specialized in financial transaction analysis. "
    "Examine how transactions have been categorized, find inconsistent or wrong "
    "categorizations and missing pattern rules, suggest improvements and score "
    "overall coherence.\n"
    "Respond with ONLY a valid JSON object that matches the provided schema. "
    "Do not add explanatory text or markdown before or after the JSON."
)

CORRECTION_SYSTEM_PROMPT = (
    "You are a JSON correction specialist. Your previous analysis had validation "
    "errors that need to be fixed.\n"
    "Respond with ONLY a JSON object of this form:\n"
    '{"patches": [{"path": "issues[0].transaction_ids", "value": ["txn-1"]}], '
    '"reason": "Brief explanation of the corrections"}\n'
    "Only patch the errors listed. Do not modify any other part of the JSON."
)


def attach_transaction_data(prompt: str, transaction_data: dict[str, Any]) -> str:
    return (
        "The transaction data for this analysis is attached below as JSON. "
        "Read all of it before answering.\n\n"
        f"{prompt}\n\n"
        "Transaction data:\n"
        f"{json.dumps(transaction_data, default=str)}"
    )


def build_correction_message(request: CorrectionRequest) -> str:
    lines = [
        "The analysis response has validation errors that need to be corrected.",
        "",
        f"Validation error: {request.validation_error}",
        "",
        "Specific issues to fix:",
    ]
    for number, location in enumerate(request.error_locations, start=1):
        lines.extend(
            [
                f"{number}. Path: {location.path}",
                f"   Error: {location.description}",
                f"   Current value: {location.current_value}",
                f"   Expected: {location.expected_format}",
            ]
        )
    lines.extend(["", request.instructions])
    return "\n".join(lines)


@dataclass
class _Conversation:
    messages: list[dict[str, str]] = field(default_factory=list)
    total_cost: float = 0.0
    num_turns: int = 0


class OpenAIAnalysisClient:
    def __init__(
        self,
        client: OpenAI | None = None,
        model: str | None = None,
        temperature: float | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._client = client
        self.model = model or settings.openai_model
        self.temperature = settings.openai_temperature if temperature is None else temperature
        self.retry_policy = retry_policy or RetryPolicy.from_settings()

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = get_openai_client()
        return self._client

    def _complete(
        self, messages: list[dict[str, str]], cancel_event: threading.Event | None
    ) -> tuple[str, float]:
        """Return the completion text and what it cost in USD."""

        def create() -> Any:
            return self.client.chat.completions.create(
                model=self.model,
                response_format={"type": "json_object"},
                temperature=self.temperature,
                messages=messages,
            )

        logger.debug("Sending %d messages to %s", len(messages), self.model)
        response = call_with_retry(create, self.retry_policy, cancel_event=cancel_event)
        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AnalysisError("LLM returned an empty response")
        return content, self._cost(getattr(response, "usage", None))

    @staticmethod
    def _cost(usage: Any) -> float:
        if usage is None:
            return 0.0
        prompt_tokens = getattr(usage, "prompt_tokens", 0) or 0
        completion_tokens = getattr(usage, "completion_tokens", 0) or 0
        return (
            prompt_tokens * settings.openai_input_cost_per_million
            + completion_tokens * settings.openai_output_cost_per_million
        ) / 1_000_000

    def analyze_transactions(
        self, prompt: str, cancel_event: threading.Event | None = None
    ) -> str:
        content, _ = self._complete(
            [
                {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            cancel_event,
        )
        return content

    def analyze_transactions_with_file(
        self,
        prompt: str,
        transaction_data: dict[str, Any],
        cancel_event: threading.Event | None = None,
    ) -> str:
        return self.analyze_transactions(
            attach_transaction_data(prompt, transaction_data), cancel_event=cancel_event
        )


class OpenAISessionAnalysisClient(OpenAIAnalysisClient):
    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._conversations: OrderedDict[str, _Conversation] = OrderedDict()
        self._lock = threading.Lock()

    def analyze_with_session(
        self,
        prompt: str,
        session_id: str = "",
        system_prompt: str = ANALYSIS_SYSTEM_PROMPT,
        cancel_event: threading.Event | None = None,
    ) -> SessionAnalysisResult:
        """Continue ``session_id``'s conversation, or start one when it is empty."""
        with self._lock:
            if session_id:
                conversation = self._conversations.get(session_id)
                if conversation is None:
                    raise CorrectionProtocolError(f"unknown LLM session: {session_id}")
                history = list(conversation.messages)
            else:
                session_id = str(uuid.uuid4())
                conversation = _Conversation()
                history = []

        # History holds only user and assistant turns; the system prompt leads once.
        turns = history + [{"role": "user", "content": prompt}]
        content, cost = self._complete(
            [{"role": "system", "content": system_prompt}] + turns, cancel_event
        )

        with self._lock:
            conversation.messages = turns + [{"role": "assistant", "content": content}]
            conversation.total_cost += cost
            conversation.num_turns += 1
            self._conversations[session_id] = conversation
            self._conversations.move_to_end(session_id)
            while len(self._conversations) > MAX_CONVERSATIONS:
                self._conversations.popitem(last=False)
            result = SessionAnalysisResult(
                response=content,
                session_id=session_id,
                total_cost=conversation.total_cost,
                num_turns=conversation.num_turns,
            )

        logger.debug(
            "LLM session %s: turn %d, total cost %.4f",
            session_id,
            result.num_turns,
            result.total_cost,
        )
        return result

    def analyze_transactions_with_file_session(
        self,
        prompt: str,
        transaction_data: dict[str, Any],
        session_id: str = "",
        cancel_event: threading.Event | None = None,
    ) -> SessionAnalysisResult:
        return self.analyze_with_session(
            attach_transaction_data(prompt, transaction_data),
            session_id=session_id,
            cancel_event=cancel_event,
        )

    def request_correction(
        self,
        request: CorrectionRequest,
        session_id: str,
        cancel_event: threading.Event | None = None,
    ) -> CorrectionResponse:
        if not session_id:
            raise CorrectionProtocolError("session ID required for corrections")

        result = self.analyze_with_session(
            build_correction_message(request),
            session_id=session_id,
            system_prompt=CORRECTION_SYSTEM_PROMPT,
            cancel_event=cancel_event,
        )
        try:
            return CorrectionResponse.model_validate_json(result.response)
        except pydantic.ValidationError as exc:
            logger.error("Failed to parse correction response: %s", result.response)
            raise CorrectionProtocolError(f"invalid correction response format: {exc}") from exc

    def end_session(self, session_id: str) -> None:
        with self._lock:
            self._conversations.pop(session_id, None)
