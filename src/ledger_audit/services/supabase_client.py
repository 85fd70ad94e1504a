import logging
from functools import lru_cache

from supabase import Client, ClientOptions, create_client

from ledger_audit.config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """Service-role client bound to the schema holding the ledger and analysis tables."""
    if not settings.supabase_url or not settings.supabase_service_role_key:
        raise RuntimeError("Supabase credentials are not configured.")
    logger.info("Connecting to Supabase schema %s", settings.supabase_schema)
    return create_client(
        settings.supabase_url,
        settings.supabase_service_role_key,
        options=ClientOptions(
            schema=settings.supabase_schema,
            postgrest_client_timeout=settings.supabase_timeout_seconds,
        ),
    )
