"""
Application settings loaded from environment variables.

Uses pydantic-settings for validation and type safety.
Provider API keys set here are the process-level defaults used when a
request does not carry its own key.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    """
    Application settings.

    All values loaded from .env file or environment variables.
    Validation happens automatically on startup.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),  # Check current dir, then parent
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"  # Ignore extra env vars
    )

    # ===================
    # PROVIDER CREDENTIALS
    # ===================
    gemini_api_key: Optional[str] = Field(
        None,
        description="Default Google Gemini API key"
    )
    openai_api_key: Optional[str] = Field(
        None,
        description="Default OpenAI API key"
    )
    anthropic_api_key: Optional[str] = Field(
        None,
        description="Default Anthropic API key"
    )

    # ===================
    # PROVIDER ROUTING
    # ===================
    default_provider: str = Field(
        default="gemini",
        pattern="^(gemini|openai|anthropic)$",
        description="Provider used when a request does not select one"
    )
    vision_provider: Optional[str] = Field(
        None,
        pattern="^(gemini|openai|anthropic)$",
        description="Pin OCR extraction to one provider regardless of the mapping provider"
    )

    # ===================
    # MODELS
    # ===================
    gemini_model: str = Field(default="gemini-2.5-flash")
    gemini_embedding_model: str = Field(default="gemini-embedding-001")
    openai_model: str = Field(default="gpt-4o")
    openai_embedding_model: str = Field(default="text-embedding-3-small")
    anthropic_model: str = Field(default="claude-sonnet-4-20250514")
    anthropic_max_tokens: int = Field(
        default=4096,
        ge=256,
        le=64000,
        description="Maximum tokens for Anthropic responses"
    )

    # ===================
    # RETRY POLICY
    # ===================
    retry_max_attempts: int = Field(
        default=5,
        ge=1,
        le=10,
        description="Attempts per remote call before giving up"
    )
    retry_initial_delay_ms: int = Field(
        default=1000,
        ge=0,
        le=60000,
        description="First backoff delay, doubled after each retryable failure"
    )
    retry_max_delay_ms: int = Field(
        default=30000,
        ge=0,
        le=600000,
        description="Ceiling for a single backoff delay"
    )

    # ===================
    # PIPELINE
    # ===================
    retrieval_top_k: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Catalog candidates retrieved per invoice line"
    )
    vocabulary_hint_limit: int = Field(
        default=200,
        ge=0,
        le=1000,
        description="Catalog entries listed in the OCR vocabulary hint"
    )
    invoice_batch_size: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Invoices processed concurrently per batch"
    )

    # ===================
    # APP SETTINGS
    # ===================
    environment: str = Field(
        default="development",
        pattern="^(development|staging|production)$",
        description="Application environment"
    )
    debug: bool = Field(
        default=True,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API host"
    )
    api_port: int = Field(
        default=8000,
        ge=1000,
        le=65535,
        description="API port"
    )

    # ===================
    # COMPUTED PROPERTIES
    # ===================
    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    def default_api_keys(self) -> dict[str, Optional[str]]:
        """Process-level default key per provider name."""
        return {
            "gemini": self.gemini_api_key,
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
        }


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload.

    Returns:
        Settings: Application settings

    Raises:
        ValidationError: If env vars are invalid
    """
    return Settings()


# For convenient imports: from config.settings import settings
settings = get_settings()
