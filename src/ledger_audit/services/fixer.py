"""Apply the fixes recommended by an analysis report to the ledger."""

import logging
from datetime import datetime, timezone

from ledger_audit.analysis.errors import PersistenceError
from ledger_audit.analysis.report import (
    ISSUE_TYPE_MISCATEGORIZED,
    Fix,
    Issue,
    PatternRule,
    SuggestedPattern,
)
from ledger_audit.models import Category, Classification
from ledger_audit.repositories.ledger import SupabaseLedgerStorage

logger = logging.getLogger(__name__)

STATUS_USER_MODIFIED = "user_modified"


def validate_pattern_rule(rule: PatternRule) -> None:
    if not rule.name:
        raise PersistenceError("pattern name is required")
    if not rule.merchant_pattern:
        raise PersistenceError("merchant pattern is required")
    if not rule.default_category:
        raise PersistenceError("default category is required")
    if rule.confidence < 0 or rule.confidence > 1:
        raise PersistenceError("confidence must be between 0 and 1")
    if rule.priority < 0:
        raise PersistenceError("priority must be non-negative")


class SupabaseFixApplier:
    def __init__(self, ledger: SupabaseLedgerStorage) -> None:
        self.ledger = ledger

    def _active_categories(self) -> dict[str, Category]:
        return {
            category.name: category
            for category in self.ledger.get_categories()
            if category.is_active
        }

    def apply_pattern_fixes(self, patterns: list[SuggestedPattern]) -> None:
        if not patterns:
            return
        categories = self._active_categories()
        for suggestion in patterns:
            rule = suggestion.pattern
            try:
                validate_pattern_rule(rule)
            except PersistenceError as exc:
                raise PersistenceError(f"invalid pattern {suggestion.name!r}: {exc}") from exc
            if rule.default_category not in categories:
                raise PersistenceError(
                    f"category {rule.default_category!r} does not exist or is inactive"
                )
            self.ledger.create_pattern_rule(rule)
            logger.info(
                "Created pattern rule %s -> %s (confidence %.2f)",
                suggestion.name,
                rule.default_category,
                suggestion.confidence,
            )

    def apply_category_fixes(self, fixes: list[Fix]) -> None:
        if not fixes:
            return
        categories = self._active_categories()
        for fix in fixes:
            new_category = fix.data.get("category")
            if not isinstance(new_category, str):
                raise PersistenceError(f"fix {fix.id} missing category data")
            if new_category not in categories:
                raise PersistenceError(
                    f"category {new_category!r} does not exist or is inactive"
                )
            transaction_ids = fix.data.get("transaction_ids")
            if not isinstance(transaction_ids, list):
                raise PersistenceError(f"fix {fix.id} missing transaction_ids data")
            if not all(isinstance(txn_id, str) for txn_id in transaction_ids):
                raise PersistenceError(f"invalid transaction ID type in fix {fix.id}")

            for txn_id in transaction_ids:
                self.ledger.save_classification(
                    Classification(
                        transaction=self.ledger.get_transaction_by_id(txn_id),
                        category=new_category,
                        status=STATUS_USER_MODIFIED,
                        confidence=1.0,
                        classified_at=datetime.now(timezone.utc),
                        notes=f"Applied fix {fix.id}",
                    )
                )
            logger.info(
                "Applied category fix %s: %d transactions -> %s",
                fix.id,
                len(transaction_ids),
                new_category,
            )

    def apply_recategorizations(self, issues: list[Issue]) -> None:
        if not issues:
            return
        categories = self._active_categories()
        updated = 0
        for issue in issues:
            if issue.type != ISSUE_TYPE_MISCATEGORIZED or not issue.suggested_category:
                continue
            if issue.suggested_category not in categories:
                logger.warning(
                    "Skipping recategorization of issue %s to invalid category %s",
                    issue.id,
                    issue.suggested_category,
                )
                continue
            for txn_id in issue.transaction_ids:
                self.ledger.save_classification(
                    Classification(
                        transaction=self.ledger.get_transaction_by_id(txn_id),
                        category=issue.suggested_category,
                        status=STATUS_USER_MODIFIED,
                        confidence=issue.confidence,
                        classified_at=datetime.now(timezone.utc),
                        notes=(
                            f"Recategorized from {issue.current_category or 'unclassified'}"
                            f" (issue: {issue.id})"
                        ),
                    )
                )
                updated += 1
        logger.info(
            "Completed recategorizations: %d issues processed, %d transactions updated",
            len(issues),
            updated,
        )
