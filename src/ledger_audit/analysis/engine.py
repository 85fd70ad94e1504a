"""Analysis engine: session lifecycle, data loading and strategy dispatch."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Callable

from ledger_audit.analysis.errors import (
    AnalysisCancelledError,
    DataLoadError,
    PersistenceError,
)
from ledger_audit.analysis.interfaces import (
    FixApplier,
    LLMClient,
    PromptBuilder,
    ReportStore,
    SessionStore,
    Storage,
)
from ledger_audit.analysis.prompts import PromptData, TemplatePromptBuilder
from ledger_audit.analysis.report import (
    FIX_TYPE_UPDATE_CATEGORY,
    ISSUE_TYPE_MISCATEGORIZED,
    Report,
)
from ledger_audit.analysis.strategies import (
    AnalysisStrategy,
    ProgressReporter,
    check_cancelled,
    select_strategy,
)
from ledger_audit.analysis.validator import ReportValidator
from ledger_audit.models import (
    AnalysisOptions,
    Session,
    SessionStatus,
    Transaction,
    VendorSummary,
)

logger = logging.getLogger(__name__)

MAX_VENDORS = 20


def summarize_vendors(transactions: list[Transaction]) -> list[VendorSummary]:
    """
    Majority category per merchant, capped at MAX_VENDORS entries.

    Merchants keep first-seen order and the cap is applied without ranking
    by frequency.
    """
    counts: dict[str, Counter[str]] = {}
    for txn in transactions:
        if not txn.merchant_name or not txn.category:
            continue
        counts.setdefault(txn.merchant_name, Counter())[txn.category] += 1

    vendors = []
    for merchant, categories in counts.items():
        category, occurrences = categories.most_common(1)[0]
        vendors.append(VendorSummary(name=merchant, category=category, occurrences=occurrences))
    return vendors[:MAX_VENDORS]


def build_transaction_data(transactions: list[Transaction]) -> dict[str, Any]:
    return {
        "transactions": [
            {
                "ID": txn.id,
                "Date": txn.date.isoformat(),
                "Name": txn.name,
                "Amount": txn.amount,
                "Type": txn.type,
                "Category": txn.category or "",
            }
            for txn in transactions
        ]
    }


def _limit_issues(report: Report, max_issues: int) -> None:
    if max_issues <= 0 or len(report.issues) <= max_issues:
        return
    ranked = sorted(report.issues, key=lambda issue: issue.severity.order)
    report.issues = ranked[:max_issues]


class AnalysisEngine:
    def __init__(
        self,
        storage: Storage,
        llm_client: LLMClient,
        session_store: SessionStore,
        report_store: ReportStore,
        fix_applier: FixApplier,
        prompt_builder: PromptBuilder | None = None,
        validator: ReportValidator | None = None,
    ) -> None:
        required = {
            "storage": storage,
            "LLM client": llm_client,
            "session store": session_store,
            "report store": report_store,
            "fix applier": fix_applier,
        }
        for name, dependency in required.items():
            if dependency is None:
                raise ValueError(f"{name} dependency is required")

        self.storage = storage
        self.llm_client = llm_client
        self.session_store = session_store
        self.report_store = report_store
        self.fix_applier = fix_applier
        self.prompt_builder = prompt_builder or TemplatePromptBuilder()
        self.validator = validator or ReportValidator()

    def analyze(
        self, options: AnalysisOptions, cancel_event: threading.Event | None = None
    ) -> Report:
        """
        Run one analysis and return the persisted Report.

        The Session is always left in a terminal state unless the call is
        cancelled or the very first session write fails. Fix application
        (``auto_apply`` without ``dry_run``) never fails the call.
        """
        options.validate()
        progress = ProgressReporter(options.progress)
        strategy = self._select_strategy()

        progress("Initializing session", 5)
        session = self._create_or_continue_session(options.session_id, cancel_event)

        session.status = SessionStatus.IN_PROGRESS
        session.last_attempt = datetime.now(timezone.utc)
        check_cancelled(cancel_event)
        try:
            self.session_store.update(session)
        except Exception as exc:
            raise PersistenceError(f"failed to update session: {exc}") from exc

        prompt_data, transactions = self._load_inputs(session, options, progress, cancel_event)

        progress("Running AI analysis", 40)
        try:
            report = strategy.run(
                session,
                prompt_data,
                build_transaction_data(transactions),
                progress,
                cancel_event=cancel_event,
            )
        except AnalysisCancelledError:
            raise
        except Exception as exc:
            self._fail_session(session, exc)
            raise

        progress("Saving report", 80)
        report.id = str(uuid.uuid4())
        report.session_id = session.id
        report.generated_at = datetime.now(timezone.utc)
        report.period_start = options.start_date
        report.period_end = options.end_date
        _limit_issues(report, options.max_issues)

        check_cancelled(cancel_event)
        try:
            self.report_store.save_report(report)
        except Exception as exc:
            failure = PersistenceError(f"failed to save report: {exc}")
            self._fail_session(session, failure)
            raise failure from exc

        now = datetime.now(timezone.utc)
        session.status = SessionStatus.COMPLETED
        session.completed_at = now
        session.last_attempt = now
        session.report_id = report.id
        session.error = None
        try:
            self.session_store.update(session)
        except Exception as exc:
            logger.warning("Failed to mark session %s completed: %s", session.id, exc)

        if options.auto_apply and not options.dry_run:
            progress("Applying recommended fixes", 90)
            self._apply_fixes(report)

        progress("Analysis complete", 100)
        logger.info(
            "Analysis %s complete: report %s, %d issues, coherence %.2f",
            session.id,
            report.id,
            len(report.issues),
            report.coherence_score,
        )
        return report

    def _select_strategy(self) -> AnalysisStrategy:
        return select_strategy(
            self.llm_client, self.validator, self.prompt_builder, self.session_store
        )

    def _create_or_continue_session(
        self, session_id: str, cancel_event: threading.Event | None
    ) -> Session:
        if session_id:
            check_cancelled(cancel_event)
            try:
                existing = self.session_store.get(session_id)
            except Exception as exc:
                logger.info("Cannot continue session %s: %s", session_id, exc)
            else:
                if not existing.status.is_terminal:
                    logger.info("Continuing existing session %s", session_id)
                    return existing
                logger.info(
                    "Session %s is %s; starting a new one", session_id, existing.status.value
                )

        now = datetime.now(timezone.utc)
        session = Session(
            id=str(uuid.uuid4()),
            status=SessionStatus.PENDING,
            started_at=now,
            last_attempt=now,
            attempts=0,
        )
        check_cancelled(cancel_event)
        try:
            self.session_store.create(session)
        except Exception as exc:
            raise PersistenceError(f"failed to create session: {exc}") from exc
        logger.info("Created new analysis session %s", session.id)
        return session

    def _fail_session(self, session: Session, exc: Exception) -> None:
        session.status = SessionStatus.FAILED
        session.error = str(exc)
        session.last_attempt = datetime.now(timezone.utc)
        try:
            self.session_store.update(session)
        except Exception as update_exc:
            logger.warning("Failed to mark session %s failed: %s", session.id, update_exc)

    def _load(
        self,
        session: Session,
        what: str,
        loader: Callable[[], list[Any]],
        cancel_event: threading.Event | None,
    ) -> list[Any]:
        check_cancelled(cancel_event)
        try:
            return loader()
        except Exception as exc:
            failure = DataLoadError(f"failed to load {what}: {exc}")
            self._fail_session(session, failure)
            raise failure from exc

    def _load_inputs(
        self,
        session: Session,
        options: AnalysisOptions,
        progress: ProgressReporter,
        cancel_event: threading.Event | None,
    ) -> tuple[PromptData, list[Transaction]]:
        progress("Loading transactions", 10)
        classifications = self._load(
            session,
            "transactions",
            lambda: self.storage.get_classifications_by_date_range(
                options.start_date, options.end_date
            ),
            cancel_event,
        )
        # One entry per transaction; the classification's category wins.
        by_id: dict[str, Transaction] = {}
        for classification in classifications:
            txn = classification.transaction
            if classification.category:
                txn = Transaction(
                    id=txn.id,
                    date=txn.date,
                    name=txn.name,
                    amount=txn.amount,
                    merchant_name=txn.merchant_name,
                    account_id=txn.account_id,
                    type=txn.type,
                    category=classification.category,
                )
            by_id[txn.id] = txn
        transactions = list(by_id.values())

        progress("Loading categories", 15)
        categories = self._load(session, "categories", self.storage.get_categories, cancel_event)

        progress("Loading patterns", 20)
        patterns = self._load(
            session, "patterns", self.storage.get_active_pattern_rules, cancel_event
        )
        check_patterns = self._load(
            session, "check patterns", self.storage.get_active_check_patterns, cancel_event
        )

        progress("Analyzing vendor patterns", 25)
        vendors = summarize_vendors(transactions)

        progress("Preparing analysis", 30)
        logger.info("Analyzing %d transactions for session %s", len(transactions), session.id)
        prompt_data = PromptData(
            start_date=options.start_date,
            end_date=options.end_date,
            total_count=len(transactions),
            categories=list(categories),
            patterns=list(patterns),
            check_patterns=list(check_patterns),
            vendors=vendors,
            focus=options.focus,
            max_issues=options.max_issues,
        )
        return prompt_data, transactions

    def _apply_fixes(self, report: Report) -> None:
        errors: list[str] = []

        if report.suggested_patterns:
            try:
                self.fix_applier.apply_pattern_fixes(report.suggested_patterns)
            except Exception as exc:
                logger.exception("Pattern fixes failed for report %s", report.id)
                errors.append(f"pattern fixes: {exc}")

        category_fixes = [
            issue.fix
            for issue in report.issues
            if issue.fix is not None and issue.fix.type == FIX_TYPE_UPDATE_CATEGORY
        ]
        if category_fixes:
            try:
                self.fix_applier.apply_category_fixes(category_fixes)
            except Exception as exc:
                logger.exception("Category fixes failed for report %s", report.id)
                errors.append(f"category fixes: {exc}")

        recategorizations = [
            issue
            for issue in report.issues
            if issue.type == ISSUE_TYPE_MISCATEGORIZED and issue.fix is not None
        ]
        if recategorizations:
            try:
                self.fix_applier.apply_recategorizations(recategorizations)
            except Exception as exc:
                logger.exception("Recategorizations failed for report %s", report.id)
                errors.append(f"recategorizations: {exc}")

        if errors:
            logger.warning("Failed to apply %d fix groups: %s", len(errors), "; ".join(errors))
