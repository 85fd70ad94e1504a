import logging
from functools import lru_cache

from openai import OpenAI

from ledger_audit.config import settings
from ledger_audit.services.secret_manager import get_secret

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_openai_api_key() -> str | None:
    if settings.openai_api_key:
        return settings.openai_api_key
    if settings.openai_api_key_secret_name:
        secret = get_secret(settings.openai_api_key_secret_name)
        if secret:
            return secret
    logger.warning("OpenAI API key not configured.")
    return None


@lru_cache(maxsize=1)
def get_openai_client() -> OpenAI:
    api_key = get_openai_api_key()
    if not api_key:
        raise RuntimeError("OpenAI API key not configured.")
    # Retries are handled by the analysis transport layer.
    return OpenAI(api_key=api_key, max_retries=0)
