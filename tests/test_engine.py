"""Tests for the analysis engine and both validation strategies."""

import json
import threading
from datetime import date, datetime, timezone

import pytest

from ledger_audit.analysis.engine import (
    MAX_VENDORS,
    AnalysisEngine,
    build_transaction_data,
    summarize_vendors,
)
from ledger_audit.analysis.errors import (
    AnalysisCancelledError,
    CorrectionProtocolError,
    DataLoadError,
    OptionsError,
    PersistenceError,
    StrategyExhaustedError,
)
from ledger_audit.analysis.interfaces import SessionAnalysisResult
from ledger_audit.analysis.report import CorrectionResponse, JSONPatch
from ledger_audit.analysis.session_store import MemorySessionStore
from ledger_audit.analysis.strategies import (
    CORRECTION_INSTRUCTIONS,
    RetryStrategy,
    SessionCorrectionStrategy,
    select_strategy,
)
from ledger_audit.analysis.prompts import TemplatePromptBuilder
from ledger_audit.analysis.validator import ReportValidator
from ledger_audit.models import (
    AnalysisOptions,
    Category,
    Classification,
    Session,
    SessionStatus,
    Transaction,
)

VALID = '{"coherence_score": 0.9, "issues": [], "insights": ["Looks consistent"]}'
SESSION_ID = "session-1"

MISSING_IDS = json.dumps(
    {
        "coherence_score": 0.8,
        "issues": [
            {
                "id": "issue-1",
                "type": "miscategorized",
                "severity": "high",
                "description": "Coffee filed under Rent",
                "affected_count": 1,
                "confidence": 0.9,
            }
        ],
    }
)

ACTIONABLE = json.dumps(
    {
        "coherence_score": 0.7,
        "issues": [
            {
                "id": "issue-1",
                "type": "miscategorized",
                "severity": "high",
                "description": "Coffee filed under Rent",
                "transaction_ids": ["txn-1"],
                "affected_count": 1,
                "confidence": 0.9,
                "current_category": "Rent",
                "suggested_category": "Dining",
                "fix": {
                    "id": "fix-1",
                    "issue_id": "issue-1",
                    "type": "update_category",
                    "description": "Move to Dining",
                    "data": {"category": "Dining", "transaction_ids": ["txn-1"]},
                },
            }
        ],
        "suggested_patterns": [
            {
                "id": "pattern-1",
                "name": "Coffee shops",
                "description": "Starbucks purchases are dining",
                "impact": "Fixes 4 transactions",
                "pattern": {"merchant_pattern": "starbucks", "default_category": "Dining"},
                "match_count": 4,
                "confidence": 0.85,
            }
        ],
    }
)


def _issue(issue_id, severity):
    return {
        "id": issue_id,
        "type": "inconsistent",
        "severity": severity,
        "description": f"{severity} issue",
    }


def _transaction(txn_id, merchant="", category=None, day=5):
    return Transaction(
        id=txn_id,
        date=date(2024, 1, day),
        name=merchant or "Unknown",
        amount=12.5,
        merchant_name=merchant,
        type="debit",
        category=category,
    )


def _classification(txn, category):
    return Classification(transaction=txn, category=category, status="classified_by_ai", confidence=0.8)


class FakeStorage:
    def __init__(self, classifications=(), fail=False):
        self.classifications = list(classifications)
        self.fail = fail
        self.ranges = []

    def get_classifications_by_date_range(self, start, end):
        self.ranges.append((start, end))
        if self.fail:
            raise RuntimeError("database unavailable")
        return list(self.classifications)

    def get_categories(self):
        return [Category(id=1, name="Dining"), Category(id=2, name="Rent")]

    def get_active_pattern_rules(self):
        return []

    def get_active_check_patterns(self):
        return []


class PlainClient:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []
        self.transaction_data = None

    def analyze_transactions_with_file(self, prompt, transaction_data, cancel_event=None):
        self.prompts.append(prompt)
        self.transaction_data = transaction_data
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class SessionClient:
    def __init__(self, initial, corrections=(), llm_session_id="llm-1"):
        self.initial = initial
        self.corrections = list(corrections)
        self.llm_session_id = llm_session_id
        self.initial_calls = 0
        self.requests = []

    def analyze_transactions_with_file(self, prompt, transaction_data, cancel_event=None):
        raise AssertionError("session clients are driven through the session API")

    def analyze_transactions_with_file_session(
        self, prompt, transaction_data, session_id="", cancel_event=None
    ):
        self.initial_calls += 1
        return SessionAnalysisResult(
            response=self.initial,
            session_id=self.llm_session_id,
            total_cost=0.01,
            num_turns=1,
        )

    def request_correction(self, request, session_id, cancel_event=None):
        self.requests.append((request, session_id))
        correction = self.corrections.pop(0)
        if isinstance(correction, Exception):
            raise correction
        return correction


class RecordingFixApplier:
    def __init__(self, fail_patterns=False):
        self.fail_patterns = fail_patterns
        self.calls = []

    def apply_pattern_fixes(self, patterns):
        self.calls.append(("patterns", patterns))
        if self.fail_patterns:
            raise RuntimeError("category Dining does not exist")

    def apply_category_fixes(self, fixes):
        self.calls.append(("categories", fixes))

    def apply_recategorizations(self, issues):
        self.calls.append(("recategorizations", issues))


class FailingReportStore:
    def save_report(self, report):
        raise RuntimeError("disk full")

    def get_report(self, report_id):
        raise RuntimeError("disk full")


class FailingUpdateStore(MemorySessionStore):
    def update(self, session):
        raise RuntimeError("write conflict")


def _options(**overrides):
    values = {
        "start_date": date(2024, 1, 1),
        "end_date": date(2024, 1, 31),
        "session_id": SESSION_ID,
    }
    values.update(overrides)
    return AnalysisOptions(**values)


def _store_with_session(session_id=SESSION_ID, status=SessionStatus.PENDING, attempts=0):
    store = MemorySessionStore()
    now = datetime.now(timezone.utc)
    store.create(
        Session(id=session_id, status=status, started_at=now, last_attempt=now, attempts=attempts)
    )
    return store


def _engine(client, store=None, storage=None, report_store=None, fix_applier=None):
    store = store or _store_with_session()
    return AnalysisEngine(
        storage=storage or FakeStorage(),
        llm_client=client,
        session_store=store,
        report_store=report_store or store,
        fix_applier=fix_applier or RecordingFixApplier(),
    )


class TestRetryStrategy:
    def test_first_valid_response_completes_session(self):
        store = _store_with_session()
        client = PlainClient('{"coherence_score":1.0,"issues":[]}')

        report = _engine(client, store).analyze(_options())

        session = store.get(SESSION_ID)
        assert report.coherence_score == 1.0
        assert session.status == SessionStatus.COMPLETED
        assert session.attempts == 1
        assert session.report_id == report.id
        assert session.completed_at is not None
        assert store.get_report(report.id).session_id == SESSION_ID
        assert client.transaction_data == {"transactions": []}

    def test_type_error_is_corrected_on_second_attempt(self):
        store = _store_with_session()
        client = PlainClient('{"coherence_score":"bad"}', VALID)

        report = _engine(client, store).analyze(_options())

        assert report.coherence_score == 0.9
        assert report.insights == ["Looks consistent"]
        assert store.get(SESSION_ID).attempts == 2
        assert len(client.prompts) == 2
        correction_prompt = client.prompts[1]
        assert client.prompts[0] in correction_prompt
        assert '{"coherence_score":"bad"}' in correction_prompt
        assert "field 'coherence_score' (expected number)" in correction_prompt

    def test_three_invalid_responses_exhaust_the_strategy(self):
        store = _store_with_session()
        client = PlainClient("nope", '{"coherence_score": 2}', "{}")

        with pytest.raises(StrategyExhaustedError, match="analysis failed after 3 attempts") as excinfo:
            _engine(client, store).analyze(_options())

        session = store.get(SESSION_ID)
        assert len(client.prompts) == 3
        assert excinfo.value.attempts == 3
        assert excinfo.value.__cause__ is not None
        assert session.status == SessionStatus.FAILED
        assert session.attempts == 3
        assert "analysis failed after 3 attempts" in session.error
        assert session.report_id is None

    def test_deeply_nested_response_is_retried(self):
        store = _store_with_session()
        client = PlainClient("[" * 100000, VALID)

        report = _engine(client, store).analyze(_options())

        assert report.coherence_score == 0.9
        assert store.get(SESSION_ID).attempts == 2
        assert "nesting too deep" in client.prompts[1]

    def test_llm_failure_counts_as_an_attempt(self):
        store = _store_with_session()
        client = PlainClient(RuntimeError("upstream exploded"), VALID)

        _engine(client, store).analyze(_options())

        assert store.get(SESSION_ID).attempts == 2


class TestSessionCorrectionStrategy:
    def test_patch_fixes_missing_transaction_ids(self):
        store = _store_with_session()
        client = SessionClient(
            MISSING_IDS,
            [
                CorrectionResponse(
                    patches=[JSONPatch(path="issues[0].transaction_ids", value=["txn-1"])],
                    reason="added ids",
                )
            ],
        )

        report = _engine(client, store).analyze(_options())

        assert report.issues[0].transaction_ids == ["txn-1"]
        assert client.initial_calls == 1
        request, llm_session_id = client.requests[0]
        assert llm_session_id == "llm-1"
        assert request.instructions == CORRECTION_INSTRUCTIONS
        assert request.error_locations[0].path == "issues[0].transaction_ids"
        assert request.error_locations[0].expected_format == "array of transaction ID strings"
        session = store.get(SESSION_ID)
        assert session.attempts == 2
        assert session.status == SessionStatus.COMPLETED

    def test_gives_up_after_five_validations(self):
        store = _store_with_session()
        useless = CorrectionResponse(patches=[JSONPatch(path="insights", value=[])])
        client = SessionClient(MISSING_IDS, [useless] * 10)

        with pytest.raises(StrategyExhaustedError, match="validation failed after 5"):
            _engine(client, store).analyze(_options())

        assert len(client.requests) == 4
        session = store.get(SESSION_ID)
        assert session.attempts == 5
        assert session.status == SessionStatus.FAILED

    def test_syntax_error_requests_line_and_column(self):
        store = _store_with_session()
        client = SessionClient(
            "not json{", [CorrectionResponse(patches=[JSONPatch(path="coherence_score", value=1)])]
        )

        with pytest.raises(CorrectionProtocolError, match="failed to apply patches"):
            _engine(client, store).analyze(_options())

        request, _ = client.requests[0]
        assert request.error_locations[0].path == "line 1, column 1"
        assert request.error_locations[0].description == "JSON syntax error"
        assert store.get(SESSION_ID).status == SessionStatus.FAILED

    def test_other_errors_use_unknown_path(self):
        client = SessionClient(
            '{"coherence_score": 3.0}',
            [CorrectionResponse(patches=[JSONPatch(path="coherence_score", value=0.5)])],
        )

        report = _engine(client).analyze(_options())

        request, _ = client.requests[0]
        assert request.error_locations[0].path == "unknown"
        assert "coherence score" in request.error_locations[0].description
        assert report.coherence_score == 0.5

    def test_empty_llm_session_id_aborts(self):
        store = _store_with_session()
        client = SessionClient(MISSING_IDS, llm_session_id="")

        with pytest.raises(CorrectionProtocolError, match="session ID required"):
            _engine(client, store).analyze(_options())

        assert client.requests == []
        assert store.get(SESSION_ID).status == SessionStatus.FAILED

    def test_malformed_correction_aborts_without_fallback(self):
        store = _store_with_session()
        client = SessionClient(
            MISSING_IDS, [CorrectionProtocolError("invalid correction response format")]
        )

        with pytest.raises(CorrectionProtocolError):
            _engine(client, store).analyze(_options())

        assert client.initial_calls == 1
        assert len(client.requests) == 1
        assert store.get(SESSION_ID).attempts == 1

    def test_patch_outside_document_aborts(self):
        client = SessionClient(
            MISSING_IDS,
            [CorrectionResponse(patches=[JSONPatch(path="issues[4].transaction_ids", value=[])])],
        )

        with pytest.raises(CorrectionProtocolError, match="failed to apply patches"):
            _engine(client).analyze(_options())


class TestStrategySelection:
    def test_selects_by_client_capability(self):
        validator = ReportValidator()
        builder = TemplatePromptBuilder()
        store = MemorySessionStore()

        plain = select_strategy(PlainClient(), validator, builder, store)
        session = select_strategy(SessionClient(VALID), validator, builder, store)

        assert isinstance(plain, RetryStrategy)
        assert isinstance(session, SessionCorrectionStrategy)


class TestSessionLifecycle:
    def test_creates_session_when_none_given(self):
        store = MemorySessionStore()

        report = _engine(PlainClient(VALID), store).analyze(_options(session_id=""))

        session = store.get(report.session_id)
        assert session.status == SessionStatus.COMPLETED
        assert session.attempts == 1

    def test_unknown_session_id_starts_a_new_session(self):
        store = MemorySessionStore()

        report = _engine(PlainClient(VALID), store).analyze(_options(session_id="missing"))

        assert report.session_id != "missing"

    def test_terminal_session_is_not_resurrected(self):
        store = _store_with_session(status=SessionStatus.COMPLETED, attempts=1)

        report = _engine(PlainClient(VALID), store).analyze(_options())

        assert report.session_id != SESSION_ID
        assert store.get(SESSION_ID).attempts == 1

    def test_continued_session_counts_only_this_runs_attempts(self):
        store = _store_with_session(status=SessionStatus.IN_PROGRESS, attempts=2)

        report = _engine(PlainClient(VALID), store).analyze(_options())

        assert report.session_id == SESSION_ID
        assert store.get(SESSION_ID).attempts == 1

    def test_continued_session_with_corrections(self):
        store = _store_with_session(status=SessionStatus.IN_PROGRESS, attempts=4)
        client = SessionClient(
            MISSING_IDS,
            [CorrectionResponse(patches=[JSONPatch(path="issues[0].transaction_ids", value=["txn-1"])])],
        )

        _engine(client, store).analyze(_options())

        assert store.get(SESSION_ID).attempts == 2

    def test_invalid_options_fail_before_any_work(self):
        store = MemorySessionStore()
        client = PlainClient(VALID)

        with pytest.raises(OptionsError, match="end date must be after start date"):
            _engine(client, store).analyze(
                _options(start_date=date(2024, 2, 1), end_date=date(2024, 1, 1))
            )

        assert client.prompts == []
        assert store.active_sessions() == []

    def test_cancelled_before_start(self):
        store = MemorySessionStore()
        client = PlainClient(VALID)
        cancel_event = threading.Event()
        cancel_event.set()

        with pytest.raises(AnalysisCancelledError):
            _engine(client, store).analyze(_options(session_id=""), cancel_event=cancel_event)

        assert client.prompts == []
        assert store.active_sessions() == []

    def test_cancelled_between_attempts(self):
        store = _store_with_session()
        cancel_event = threading.Event()

        class CancellingClient(PlainClient):
            def analyze_transactions_with_file(self, prompt, transaction_data, cancel_event=None):
                response = super().analyze_transactions_with_file(
                    prompt, transaction_data, cancel_event=cancel_event
                )
                cancel_event.set()
                return response

        client = CancellingClient('{"coherence_score":"bad"}', VALID)

        with pytest.raises(AnalysisCancelledError):
            _engine(client, store).analyze(_options(), cancel_event=cancel_event)

        assert len(client.prompts) == 1
        assert client.responses == [VALID]
        session = store.get(SESSION_ID)
        assert session.attempts == 1
        assert session.status == SessionStatus.VALIDATING
        assert session.report_id is None
        assert session.error is None

    def test_cancelled_before_correction_request(self):
        store = _store_with_session()
        cancel_event = threading.Event()

        def cancel_on_correction(stage, percent):
            if stage.startswith("Requesting corrections"):
                cancel_event.set()

        client = SessionClient(
            MISSING_IDS,
            [CorrectionResponse(patches=[JSONPatch(path="issues[0].transaction_ids", value=["txn-1"])])],
        )

        with pytest.raises(AnalysisCancelledError):
            _engine(client, store).analyze(
                _options(progress=cancel_on_correction), cancel_event=cancel_event
            )

        assert client.requests == []
        session = store.get(SESSION_ID)
        assert session.attempts == 1
        assert session.status == SessionStatus.VALIDATING

    def test_data_load_failure_fails_session(self):
        store = _store_with_session()
        client = PlainClient(VALID)

        with pytest.raises(DataLoadError, match="failed to load transactions"):
            _engine(client, store, storage=FakeStorage(fail=True)).analyze(_options())

        session = store.get(SESSION_ID)
        assert session.status == SessionStatus.FAILED
        assert "database unavailable" in session.error
        assert client.prompts == []

    def test_initial_session_update_failure_is_fatal(self):
        store = FailingUpdateStore()
        client = PlainClient(VALID)

        with pytest.raises(PersistenceError, match="failed to update session"):
            _engine(client, store).analyze(_options(session_id=""))

        assert client.prompts == []

    def test_report_save_failure_fails_session(self):
        store = _store_with_session()

        with pytest.raises(PersistenceError, match="failed to save report"):
            _engine(PlainClient(VALID), store, report_store=FailingReportStore()).analyze(_options())

        session = store.get(SESSION_ID)
        assert session.status == SessionStatus.FAILED
        assert session.report_id is None

    def test_progress_is_advisory(self):
        stages = []

        def progress(stage, percent):
            stages.append(percent)
            raise RuntimeError("terminal went away")

        report = _engine(PlainClient(VALID)).analyze(_options(progress=progress))

        assert report.coherence_score == 0.9
        assert stages[-1] == 100
        assert all(0 <= percent <= 100 for percent in stages)

    def test_progress_never_goes_backwards_through_corrections(self):
        stages = []
        useless = CorrectionResponse(patches=[JSONPatch(path="insights", value=[])])
        fixed = CorrectionResponse(
            patches=[JSONPatch(path="issues[0].transaction_ids", value=["txn-1"])]
        )
        client = SessionClient(MISSING_IDS, [useless, useless, useless, fixed])

        _engine(client).analyze(_options(progress=lambda stage, percent: stages.append(percent)))

        assert len(client.requests) == 4
        assert stages == sorted(stages)
        assert stages[-1] == 100

    def test_missing_dependency(self):
        with pytest.raises(ValueError, match="storage"):
            AnalysisEngine(
                storage=None,
                llm_client=PlainClient(),
                session_store=MemorySessionStore(),
                report_store=MemorySessionStore(),
                fix_applier=RecordingFixApplier(),
            )


class TestReportShaping:
    def test_report_is_stamped(self):
        report = _engine(PlainClient(VALID)).analyze(_options())

        assert report.id
        assert report.session_id == SESSION_ID
        assert report.generated_at is not None
        assert report.period_start == date(2024, 1, 1)
        assert report.period_end == date(2024, 1, 31)

    def test_max_issues_keeps_most_severe(self):
        payload = json.dumps(
            {
                "coherence_score": 0.5,
                "issues": [
                    _issue("a", "low"),
                    _issue("b", "critical"),
                    _issue("c", "medium"),
                    _issue("d", "critical"),
                ],
            }
        )

        report = _engine(PlainClient(payload)).analyze(_options(max_issues=3))

        assert [issue.id for issue in report.issues] == ["b", "d", "c"]

    def test_classifications_are_deduplicated(self):
        txn = _transaction("txn-1", "Starbucks", category="Food")
        storage = FakeStorage([_classification(txn, "Dining"), _classification(txn, "Dining")])
        client = PlainClient(VALID)

        _engine(client, storage=storage).analyze(_options())

        assert client.transaction_data == {
            "transactions": [
                {
                    "ID": "txn-1",
                    "Date": "2024-01-05",
                    "Name": "Starbucks",
                    "Amount": 12.5,
                    "Type": "debit",
                    "Category": "Dining",
                }
            ]
        }
        assert storage.ranges == [(date(2024, 1, 1), date(2024, 1, 31))]


class TestFixDispatch:
    def test_auto_apply_dispatches_all_groups(self):
        fixer = RecordingFixApplier()

        _engine(PlainClient(ACTIONABLE), fix_applier=fixer).analyze(_options(auto_apply=True))

        groups = [name for name, _ in fixer.calls]
        assert groups == ["patterns", "categories", "recategorizations"]
        assert fixer.calls[1][1][0].data["category"] == "Dining"
        assert fixer.calls[2][1][0].suggested_category == "Dining"

    def test_fix_failures_are_not_fatal(self):
        store = _store_with_session()
        fixer = RecordingFixApplier(fail_patterns=True)

        report = _engine(PlainClient(ACTIONABLE), store, fix_applier=fixer).analyze(
            _options(auto_apply=True)
        )

        assert report.has_actionable_issues()
        assert len(fixer.calls) == 3
        assert store.get(SESSION_ID).status == SessionStatus.COMPLETED

    def test_dry_run_applies_nothing(self):
        fixer = RecordingFixApplier()

        _engine(PlainClient(ACTIONABLE), fix_applier=fixer).analyze(
            _options(auto_apply=True, dry_run=True)
        )

        assert fixer.calls == []


class TestVendorSummary:
    def test_majority_category_per_merchant(self):
        transactions = [
            _transaction("1", "Starbucks", "Dining"),
            _transaction("2", "Starbucks", "Dining"),
            _transaction("3", "Starbucks", "Groceries"),
            _transaction("4", "Landlord", "Rent"),
            _transaction("5", "", "Rent"),
            _transaction("6", "Mystery"),
        ]

        vendors = summarize_vendors(transactions)

        assert [(v.name, v.category, v.occurrences) for v in vendors] == [
            ("Starbucks", "Dining", 2),
            ("Landlord", "Rent", 1),
        ]

    def test_capped_in_first_seen_order(self):
        transactions = [_transaction(str(i), f"Merchant {i}", "Dining") for i in range(30)]

        vendors = summarize_vendors(transactions)

        assert len(vendors) == MAX_VENDORS
        assert vendors[0].name == "Merchant 0"
        assert vendors[-1].name == "Merchant 19"

    def test_transaction_data_shape(self):
        data = build_transaction_data([_transaction("txn-9", "Shell", None, day=9)])

        assert data["transactions"][0]["Date"] == "2024-01-09"
        assert data["transactions"][0]["Category"] == ""
