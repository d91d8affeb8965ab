"""
Juchang AI Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from environment variables (prefix ``JUCHANG_``).
"""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def get_xdg_state_dir() -> str:
    """
    Get XDG-compliant state directory for Juchang AI logs.

    Follows XDG Base Directory Specification:
    - Uses $XDG_STATE_HOME/juchang-ai if XDG_STATE_HOME is set
    - Falls back to $HOME/.local/state/juchang-ai if not set
    - Returns relative path ./logs if HOME not available (dev/testing)

    Returns:
        str: Path to state/logs directory
    """
    xdg_state_home = os.getenv("XDG_STATE_HOME")
    if xdg_state_home:
        return str(Path(xdg_state_home) / "juchang-ai" / "logs")

    home = os.getenv("HOME")
    if home:
        return str(Path(home) / ".local" / "state" / "juchang-ai" / "logs")

    return "./logs"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="JUCHANG_",
        case_sensitive=False,
        extra="ignore",
    )

    # Database
    postgres_db: str = "juchang"
    postgres_user: str = "juchang"
    postgres_password: str = "juchang_dev_password"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    database_url_override: str = ""  # e.g. sqlite:///./juchang.db for local runs

    db_pool_size: int = 5
    db_pool_max_overflow: int = 5
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    @property
    def database_url(self) -> str:
        """Construct database URL from components."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # LLM
    llm_provider: str = "openai"  # openai or anthropic
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    chat_model: str = ""  # empty = provider default
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536  # must match the embedding model
    llm_max_tokens: int = 1500
    llm_temperature: float = 0.7

    # Activity service (drafts, search, joins live in the platform API)
    activity_api_url: str = ""  # empty = activity tools unavailable
    activity_api_key: str = ""
    activity_api_timeout: float = 10.0
    activity_api_max_retries: int = 3

    # Conversation
    session_window_hours: int = 24
    history_limit: int = 10
    context_fetch_timeout_ms: int = 800  # profile and history reads, each degrades to empty
    context_char_limit: int = 24_000  # Rough token budget expressed in characters
    embedding_max_chars: int = 8000
    recall_limit: int = 3
    recall_threshold: float = 0.5  # minimum cosine similarity

    # Enrichment
    preference_lookup_timeout_ms: int = 500

    # Quota
    daily_ai_quota: int = 50

    # Rate limiting
    rate_limit_max_requests: int = 30
    rate_limit_window_seconds: int = 60

    # Guardrails
    max_input_length: int = 2000
    sensitive_words: list[str] = []

    # Broker
    broker_state_ttl_minutes: int = 30
    broker_max_reasks: int = 2  # unanswered replies before recording with defaults
    match_score_threshold: int = 80
    match_radius_km: float = 3.0
    partner_intent_ttl_hours: int = 24
    match_confirm_window_hours: int = 6

    # Background worker
    worker_enabled: bool = True
    worker_poll_interval: float = 2.0
    worker_max_attempts: int = 3
    worker_backoff_base_seconds: float = 5.0

    # Observability
    trace_buffer_size: int = 200
    metrics_buffer_size: int = 1000

    # API
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Application
    environment: str = "development"

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # XDG-compliant log directory (defaults to XDG state dir if empty)
    log_console_enabled: bool = True
    log_file_enabled: bool = True
    log_max_bytes: int = 10_485_760  # 10MB per log file
    log_backup_count: int = 5

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.log_dir:
            return Path(self.log_dir).expanduser()
        return Path(get_xdg_state_dir())


# Global settings instance
settings = Settings()
