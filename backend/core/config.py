"""
Configuration Management

Centralized configuration using Pydantic Settings.
All settings loaded from environment variables with sensible defaults.
"""
from typing import Optional, List
from pydantic_settings import BaseSettings
from pydantic import Field, ConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ignore extra environment variables that aren't defined in the model
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ============================================================
    # Database Configuration
    # ============================================================
    database_url: str = Field("sqlite:///./mailflow.db", description="SQLAlchemy database URL")
    database_pool_size: int = Field(5, description="Database connection pool size")
    database_max_overflow: int = Field(10, description="Max overflow connections")

    # ============================================================
    # Security
    # ============================================================
    app_env: str = Field("development", description="development | staging | production")
    token_encryption_key: Optional[str] = Field(
        None,
        description="Secret used to encrypt provider tokens at rest (Fernet key or passphrase)"
    )
    token_encryption_key_old: str = Field(
        "",
        description="Comma-separated previous secrets, still accepted for decryption"
    )

    # ============================================================
    # OAuth - Gmail
    # ============================================================
    gmail_client_id: Optional[str] = Field(None, description="Google OAuth client ID")
    gmail_client_secret: Optional[str] = Field(None, description="Google OAuth client secret")
    gmail_redirect_uri: str = Field("urn:ietf:wg:oauth:2.0:oob", description="Google OAuth redirect URI")

    # ============================================================
    # OAuth - Microsoft Graph
    # ============================================================
    ms_graph_client_id: Optional[str] = Field(None, description="Azure AD application (client) ID")
    ms_graph_client_secret: Optional[str] = Field(None, description="Azure AD client secret (optional)")
    ms_graph_tenant_id: str = Field("common", description="Azure AD tenant or 'common'")

    # ============================================================
    # LLM Configuration
    # ============================================================
    llm_api_key: Optional[str] = Field(None, description="API key for the classification model")
    llm_base_url: Optional[str] = Field(None, description="Custom OpenAI-compatible endpoint (LM Studio, Ollama, ...)")
    llm_model: str = Field("gpt-4o-mini", description="Model used for classification and drafts")
    llm_max_retries: int = Field(3, description="Retries for LLM calls")
    llm_max_content_chars: int = Field(2500, description="Cleaned body characters sent to the model")

    # ============================================================
    # Processing
    # ============================================================
    email_batch_size: int = Field(20, description="Provider list page size")
    default_max_emails_per_run: int = Field(50, description="Per-account cap when the account has none")
    max_candidates: int = Field(500, description="Upper bound of candidates listed per sync run")
    token_refresh_buffer_seconds: int = Field(300, description="Refresh tokens expiring within this window")
    http_timeout_seconds: float = Field(30.0, description="Timeout for provider HTTP calls")

    # ============================================================
    # Scheduler
    # ============================================================
    sync_interval_seconds: int = Field(60, description="Global sync tick interval")
    default_sync_interval_minutes: int = Field(5, description="Per-user sync cadence when unset")
    cleanup_interval_hours: int = Field(24, description="Retention job interval")
    log_retention_days: int = Field(30, description="Processing logs older than this are deleted")
    deleted_email_retention_days: int = Field(7, description="Deleted-action emails older than this are removed")

    # ============================================================
    # Storage
    # ============================================================
    attachments_dir: str = Field("./data/rule-attachments", description="Root directory for rule attachments")

    # ============================================================
    # Logging
    # ============================================================
    log_level: str = Field("INFO", description="Logging level")
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format string"
    )

    @property
    def is_production(self) -> bool:
        return self.app_env in ('production', 'prod', 'staging')

    @property
    def old_encryption_keys(self) -> List[str]:
        """Parse previous encryption secrets into list."""
        return [k.strip() for k in self.token_encryption_key_old.split(",") if k.strip()]

    def validate_runtime(self) -> List[str]:
        """
        Check for configuration problems that would break syncing.

        Returns:
            List of human-readable problems (empty when the configuration is usable)
        """
        problems = []
        if self.is_production and not self.token_encryption_key:
            problems.append("TOKEN_ENCRYPTION_KEY must be set in production")
        if self.gmail_client_id and not self.gmail_client_secret:
            problems.append("GMAIL_CLIENT_SECRET is required when GMAIL_CLIENT_ID is set")
        if self.ms_graph_client_secret and not self.ms_graph_client_id:
            problems.append("MS_GRAPH_CLIENT_ID is required when MS_GRAPH_CLIENT_SECRET is set")
        return problems


# Global settings instance (entry point only; components receive Settings explicitly)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get application settings (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings():
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
