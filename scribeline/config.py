from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # System API keys (only the default provider may fall back to its system key)
    gemini_api_key: str | None = None
    groq_api_key: str | None = None
    openai_api_key: str | None = None
    xai_api_key: str | None = None
    default_provider: str = "gemini"

    # Base URL for the xAI OpenAI-compatible endpoint
    xai_base_url: str = "https://api.x.ai/v1"

    # Fernet key used to encrypt per-user API keys at rest
    encryption_key: str | None = None

    # Data
    data_dir: str = "/data"
    database_url: str | None = None  # Defaults to sqlite+aiosqlite under data_dir

    # Plan gating
    plan_gate_seconds: int = 1200  # 20 minutes without a personal key

    # Rate limits (fallbacks when a record has no cap for a provider)
    default_rpm: int = 10
    default_rpd: int = 100
    rate_limit_timezone: str = "UTC"  # Timezone whose midnight resets daily counts

    # Gemini file polling
    gemini_poll_interval_seconds: float = 2.0
    gemini_poll_max_attempts: int = 150

    # Transcript limits sent to providers
    max_analysis_chars: int = 50_000
    max_transcript_chars: int = 100_000

    # Job dispatch
    recover_orphaned_jobs: bool = False
    shutdown_drain_seconds: float = 30.0

    # Logging
    log_level: str = "INFO"

    # API auth (identity comes from the upstream gateway)
    auth_enabled: bool = False
    auth_user_header: str = "X-User-Id"
    local_user_id: str = "local"

    model_config = {"env_file": ".env", "extra": "ignore"}

    @property
    def resolved_database_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.data_dir}/scribeline.db"

    def system_key_for(self, provider: str) -> str | None:
        return getattr(self, f"{provider}_api_key", None)


settings = Settings()
