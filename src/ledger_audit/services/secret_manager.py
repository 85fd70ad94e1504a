import logging
import os
from functools import lru_cache

from google.cloud import secretmanager

from ledger_audit.config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _get_client() -> secretmanager.SecretManagerServiceClient:
    return secretmanager.SecretManagerServiceClient()


def get_secret(secret_id: str, version_id: str = "latest") -> str | None:
    """Read a secret payload, or None when the project or secret is unavailable."""
    project_id = settings.gcp_project_id or os.environ.get("GCP_PROJECT_ID", "")
    if not project_id:
        logger.warning("GCP project ID not configured; cannot read secret %s.", secret_id)
        return None

    name = f"projects/{project_id}/secrets/{secret_id}/versions/{version_id}"
    try:
        response = _get_client().access_secret_version(request={"name": name})
    except Exception as exc:
        logger.exception("Failed to fetch secret %s: %s", secret_id, exc)
        return None
    return response.payload.data.decode("UTF-8")
