"""Application settings using pydantic-settings.

Loads configuration from environment variables with .env file support.
"""

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,  # Allow both field name and alias
    )

    # Environment
    environment: Literal["development", "staging", "production", "testing"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Log level for application loggers",
    )

    # Chat backend
    chat_api_url: str = Field(
        default="http://localhost:5000",
        description="Base URL of the chat backend (query submission + conversation fetch)",
        validation_alias=AliasChoices("chat_api_url", "chatsync_api_url"),
    )
    chat_api_token: SecretStr = Field(
        default=SecretStr(""),
        description="Bearer token for the chat backend (empty = no Authorization header)",
        validation_alias=AliasChoices("chat_api_token", "chatsync_api_token"),
    )
    use_rag_path: bool = Field(
        default=True,
        description="Submit queries to the RAG endpoint instead of plain chat completions",
    )

    # HTTP timeouts
    request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for non-streaming requests (conversation fetch)",
    )
    connect_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Connect timeout for opening the response stream",
    )
    stream_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Read timeout between fragments of the response stream",
    )

    # Terminal reconciliation
    # Bounded backoff between authoritative fetches while waiting for the
    # backing store to reflect the streamed message.
    reconcile_poll_delays_seconds: list[float] = Field(
        default_factory=lambda: [0.25, 0.5, 1.0],
        description="Backoff schedule for the terminal conversation fetch",
    )
    reconcile_fetch_retry_delay_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Delay before the single retry of a failed conversation fetch",
    )

    @field_validator("reconcile_poll_delays_seconds")
    @classmethod
    def _validate_poll_delays(cls, value: list[float]) -> list[float]:
        if not value:
            raise ValueError("reconcile_poll_delays_seconds must not be empty")
        if any(delay < 0 for delay in value):
            raise ValueError("reconcile_poll_delays_seconds must be non-negative")
        return value


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure settings are loaded once and reused.
    """
    return Settings()
