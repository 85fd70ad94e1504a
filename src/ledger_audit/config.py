from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ledger_audit_env: str = "development"

    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_schema: str = "public"
    supabase_timeout_seconds: int = 30

    job_trigger_token: str = ""

    gcp_project_id: str = ""
    openai_api_key: str = ""
    openai_api_key_secret_name: str = "OPENAI_API_KEY"
    openai_model: str = "gpt-4o"
    openai_temperature: float = 0.2
    # USD per million tokens, used for session cost accounting only.
    openai_input_cost_per_million: float = 2.5
    openai_output_cost_per_million: float = 10.0

    llm_session_support: bool = True
    llm_retry_max_attempts: int = 3
    llm_retry_initial_delay_seconds: float = 1.0
    llm_retry_max_delay_seconds: float = 30.0
    llm_retry_multiplier: float = 2.0
    llm_retryable_markers: list[str] = [
        "timeout",
        "connection",
        "temporary",
        "rate limit",
        "429",
        "503",
        "504",
    ]

    analysis_max_issues: int = 50
    session_retention_hours: int = 24
    session_cleanup_interval_seconds: int = 3600

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @field_validator("llm_retryable_markers", mode="before")
    @classmethod
    def _split_markers(cls, value: object) -> list[str]:
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        if value is None:
            return []
        return list(value)


settings = Settings()
