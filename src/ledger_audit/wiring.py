import logging
from functools import lru_cache

from ledger_audit.analysis.engine import AnalysisEngine
from ledger_audit.config import settings
from ledger_audit.repositories.analysis import SupabaseReportStore, SupabaseSessionStore
from ledger_audit.repositories.ledger import SupabaseLedgerStorage
from ledger_audit.services.fixer import SupabaseFixApplier
from ledger_audit.services.llm_adapter import (
    OpenAIAnalysisClient,
    OpenAISessionAnalysisClient,
)

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def build_engine() -> AnalysisEngine:
    """Compose the production engine from settings."""
    ledger = SupabaseLedgerStorage()
    if settings.llm_session_support:
        llm_client = OpenAISessionAnalysisClient()
    else:
        llm_client = OpenAIAnalysisClient()
    logger.info(
        "Building analysis engine with %s (model %s)",
        type(llm_client).__name__,
        llm_client.model,
    )
    return AnalysisEngine(
        storage=ledger,
        llm_client=llm_client,
        session_store=SupabaseSessionStore(),
        report_store=SupabaseReportStore(),
        fix_applier=SupabaseFixApplier(ledger),
    )
