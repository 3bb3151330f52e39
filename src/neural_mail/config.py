"""Configuration management for Neural Mail.

This module handles service configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service settings with environment variable support.

    All settings can be overridden via environment variables with
    the NEURAL_MAIL_ prefix (e.g., NEURAL_MAIL_OLLAMA_HOST).
    """

    model_config = SettingsConfigDict(
        env_prefix="NEURAL_MAIL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Ollama Configuration
    ollama_host: str = Field(
        default="http://localhost:11434",
        description="Ollama API host URL",
    )
    ollama_model: str = Field(
        default="llama3.1:latest",
        description="Ollama model used for summaries and inbox questions",
    )
    ollama_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Upper bound in seconds for a single inference call",
    )
    ollama_connect_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Timeout in seconds for reaching the local Ollama process",
    )
    ollama_chat_num_ctx: int = Field(
        default=32768,
        description="Context window requested when asking questions about the inbox",
    )

    # Summarization
    summary_max_input_chars: int = Field(
        default=8000,
        gt=0,
        description="Hard cap on message body characters placed into a summary prompt",
    )
    summary_workers: int = Field(
        default=1,
        ge=1,
        description="Number of concurrent inference calls the local model can sustain",
    )
    summary_queue_depth: int = Field(
        default=8,
        ge=1,
        description="Pending summary requests accepted before rejecting with Busy",
    )

    # IMAP Configuration
    imap_connect_timeout: float = Field(
        default=15.0,
        gt=0,
        description="Timeout in seconds for establishing an IMAP connection",
    )
    imap_command_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Timeout in seconds for a single IMAP protocol exchange",
    )
    imap_pool_size: int = Field(
        default=1,
        ge=1,
        description="Maximum live IMAP connections per account",
    )
    imap_idle_timeout: float = Field(
        default=300.0,
        gt=0,
        description="Seconds after which an unused IMAP connection is closed",
    )
    imap_fetch_batch_size: int = Field(
        default=500,
        ge=1,
        description="Number of UIDs requested per FETCH command",
    )
    default_mailbox: str = Field(
        default="INBOX",
        description="Mailbox used when a caller does not name one",
    )

    # Reconnect policy
    reconnect_initial_delay: float = Field(
        default=1.0,
        ge=0,
        description="First backoff delay in seconds after a network failure",
    )
    reconnect_max_delay: float = Field(
        default=30.0,
        ge=0,
        description="Upper bound for a single backoff delay in seconds",
    )
    reconnect_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Connection attempts before an account is reported unavailable",
    )

    # Header cache configuration
    cache_db_path: Path = Field(
        default=Path("neural_mail.sqlite3"),
        description="Path to local SQLite database storing headers, sync state and bodies",
    )
    body_cache_max_bytes: int = Field(
        default=32 * 1024 * 1024,
        ge=0,
        description="Byte budget for cached message bodies",
    )

    # Sync scheduling
    sync_interval: float = Field(
        default=300.0,
        gt=0,
        description="Seconds between background sync passes",
    )
    sync_mailboxes: list[str] = Field(
        default_factory=lambda: ["INBOX"],
        description="Mailboxes kept in sync by the background scheduler",
    )

    # Accounts and credentials
    accounts_path: Path = Field(
        default=Path("accounts.json"),
        description="JSON file listing configured accounts (written by the setup UI)",
    )
    credential_env_prefix: str = Field(
        default="NEURAL_MAIL_PASSWORD_",
        description="Environment variable prefix used to resolve credential references",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached service settings.

    Returns:
        Settings: Service settings instance.
    """
    return Settings()
