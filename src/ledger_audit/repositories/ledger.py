"""Repository for the classified ledger: transactions, categories and rules."""

from datetime import date, datetime, timezone
from typing import Any

from ledger_audit.analysis.errors import PersistenceError
from ledger_audit.analysis.report import PatternRule
from ledger_audit.models import Category, CheckPattern, Classification, Transaction
from ledger_audit.services.supabase_client import get_supabase

TRANSACTIONS_TABLE = "transactions"
CLASSIFICATIONS_TABLE = "classifications"
CLASSIFICATION_HISTORY_TABLE = "classification_history"
CATEGORIES_TABLE = "categories"
PATTERN_RULES_TABLE = "pattern_rules"
CHECK_PATTERNS_TABLE = "check_patterns"

STATUS_UNCLASSIFIED = "unclassified"

TRANSACTION_COLUMNS = (
    "id, date, name, merchant_name, amount, account_id, transaction_type, categories"
)


def _parse_date(value: str) -> date:
    return date.fromisoformat(value[:10])


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _build_transaction(row: dict[str, Any]) -> Transaction:
    categories = row.get("categories") or []
    if isinstance(categories, str):
        categories = [categories]
    return Transaction(
        id=str(row["id"]),
        date=_parse_date(row["date"]),
        name=row.get("name") or "",
        amount=float(row.get("amount") or 0),
        merchant_name=row.get("merchant_name") or "",
        account_id=row.get("account_id") or "",
        type=row.get("transaction_type") or "",
        category=categories[0] if categories else None,
    )


def _build_classification(row: dict[str, Any]) -> Classification:
    return Classification(
        transaction=_build_transaction(row["transactions"]),
        category=row.get("category") or "",
        status=row.get("status") or STATUS_UNCLASSIFIED,
        confidence=float(row.get("confidence") or 0),
        classified_at=_parse_datetime(row.get("classified_at")),
        notes=row.get("notes") or "",
    )


def _build_category(row: dict[str, Any]) -> Category:
    return Category(
        id=int(row["id"]),
        name=row["name"],
        description=row.get("description") or "",
        is_active=bool(row.get("is_active", True)),
    )


def _build_pattern_rule(row: dict[str, Any]) -> PatternRule:
    return PatternRule(
        id=int(row["id"]),
        name=row.get("name") or "",
        description=row.get("description") or "",
        merchant_pattern=row.get("merchant_pattern") or "",
        is_regex=bool(row.get("is_regex")),
        amount_condition=row.get("amount_condition") or "",
        amount_value=row.get("amount_value"),
        amount_min=row.get("amount_min"),
        amount_max=row.get("amount_max"),
        direction=row.get("direction"),
        default_category=row.get("default_category") or "",
        priority=int(row.get("priority") or 0),
        confidence=float(row.get("confidence") or 0),
        use_count=int(row.get("use_count") or 0),
        is_active=bool(row.get("is_active", True)),
    )


def _build_check_pattern(row: dict[str, Any]) -> CheckPattern:
    return CheckPattern(
        id=int(row["id"]),
        pattern_name=row["pattern_name"],
        category=row["category"],
        amount_min=row.get("amount_min"),
        amount_max=row.get("amount_max"),
        amounts=[float(amount) for amount in row.get("amounts") or []],
        day_of_month_min=row.get("day_of_month_min"),
        day_of_month_max=row.get("day_of_month_max"),
        notes=row.get("notes") or "",
        use_count=int(row.get("use_count") or 0),
    )


class SupabaseLedgerStorage:
    """Read side used by the analysis engine, write side used by the fix applier."""

    def __init__(self, client=None) -> None:
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = get_supabase()
        return self._client

    def get_classifications_by_date_range(
        self, start: date, end: date
    ) -> list[Classification]:
        if end < start:
            raise ValueError(f"end date {end} is before start date {start}")
        response = (
            self.client.table(CLASSIFICATIONS_TABLE)
            .select(
                "category, status, confidence, classified_at, notes, "
                f"transactions!inner({TRANSACTION_COLUMNS})"
            )
            .gte("transactions.date", start.isoformat())
            .lte("transactions.date", end.isoformat())
            .execute()
        )
        classifications = [_build_classification(row) for row in response.data or []]
        classifications.sort(key=lambda item: item.transaction.date)
        return classifications

    def get_categories(self) -> list[Category]:
        response = (
            self.client.table(CATEGORIES_TABLE)
            .select("id, name, description, is_active")
            .order("name")
            .execute()
        )
        return [_build_category(row) for row in response.data or []]

    def get_category_by_name(self, name: str) -> Category | None:
        response = (
            self.client.table(CATEGORIES_TABLE)
            .select("id, name, description, is_active")
            .eq("name", name)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return _build_category(rows[0]) if rows else None

    def get_active_pattern_rules(self) -> list[PatternRule]:
        response = (
            self.client.table(PATTERN_RULES_TABLE)
            .select("*")
            .eq("is_active", True)
            .order("priority", desc=True)
            .execute()
        )
        return [_build_pattern_rule(row) for row in response.data or []]

    def get_active_check_patterns(self) -> list[CheckPattern]:
        response = (
            self.client.table(CHECK_PATTERNS_TABLE)
            .select("*")
            .eq("active", True)
            .order("pattern_name")
            .execute()
        )
        return [_build_check_pattern(row) for row in response.data or []]

    def get_transaction_by_id(self, transaction_id: str) -> Transaction:
        response = (
            self.client.table(TRANSACTIONS_TABLE)
            .select(TRANSACTION_COLUMNS)
            .eq("id", transaction_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        if not rows:
            raise PersistenceError(f"transaction not found: {transaction_id}")
        return _build_transaction(rows[0])

    def create_pattern_rule(self, rule: PatternRule) -> None:
        now = datetime.now(timezone.utc).isoformat()
        self.client.table(PATTERN_RULES_TABLE).insert(
            {
                "name": rule.name,
                "description": rule.description,
                "merchant_pattern": rule.merchant_pattern,
                "is_regex": rule.is_regex,
                "amount_condition": rule.amount_condition or "any",
                "amount_value": rule.amount_value,
                "amount_min": rule.amount_min,
                "amount_max": rule.amount_max,
                "direction": rule.direction,
                "default_category": rule.default_category,
                "priority": rule.priority,
                "confidence": rule.confidence,
                "is_active": True,
                "created_at": now,
                "updated_at": now,
            }
        ).execute()

    def save_classification(self, classification: Classification) -> None:
        """Upsert a classification and append it to the audit history."""
        if classification.status != STATUS_UNCLASSIFIED and classification.category:
            category = self.get_category_by_name(classification.category)
            if category is None or not category.is_active:
                raise PersistenceError(
                    f"category '{classification.category}' does not exist"
                )

        classified_at = classification.classified_at or datetime.now(timezone.utc)
        self.client.table(CLASSIFICATIONS_TABLE).upsert(
            {
                "transaction_id": classification.transaction.id,
                "category": classification.category,
                "status": classification.status,
                "confidence": classification.confidence,
                "classified_at": classified_at.isoformat(),
                "notes": classification.notes,
            },
            on_conflict="transaction_id",
        ).execute()
        self.client.table(CLASSIFICATION_HISTORY_TABLE).insert(
            {
                "transaction_id": classification.transaction.id,
                "category": classification.category,
                "status": classification.status,
                "confidence": classification.confidence,
            }
        ).execute()
