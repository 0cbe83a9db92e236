"""Configuration management for Email Search Agent.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the EMAIL_SEARCH_ prefix (e.g., EMAIL_SEARCH_OLLAMA_HOST).
    """

    model_config = SettingsConfigDict(
        env_prefix="EMAIL_SEARCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    db_path: Path = Field(
        default=Path("email_search.sqlite3"),
        description="SQLite database holding indexed emails, sync cursors and filter rules",
    )
    vector_backend: Literal["sqlite", "qdrant"] = Field(
        default="sqlite",
        description="Where embedding vectors are stored and searched",
    )
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant URL (used when vector_backend=qdrant)",
    )
    qdrant_collection: str = Field(
        default="email_vectors",
        description="Qdrant collection name",
    )

    # Embeddings
    embedding_provider: Literal["ollama", "openai", "deterministic"] = Field(
        default="ollama",
        description="Embedding backend",
    )
    ollama_host: str = Field(
        default="http://localhost:11434",
        description="Ollama API host URL",
    )
    ollama_embedding_model: str = Field(
        default="nomic-embed-text",
        description="Ollama model used for embeddings",
    )
    openai_api_key: str | None = Field(
        default=None,
        description="OpenAI API key (used when embedding_provider=openai)",
    )
    openai_embedding_model: str = Field(
        default="text-embedding-3-small",
        description="OpenAI embedding model",
    )
    embedding_dimension: int = Field(
        default=768,
        ge=1,
        description="Expected embedding dimensionality (1536 for text-embedding-3-small)",
    )
    embedding_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Timeout for a single embedding request",
    )

    # Gmail
    gmail_credentials_path: Path = Field(
        default=Path("credentials.json"),
        description="Path to Gmail API OAuth client secrets",
    )
    gmail_token_path: Path = Field(
        default=Path("token.json"),
        description="Path to the authorized-user token file",
    )
    gmail_scope: str = Field(
        default="https://www.googleapis.com/auth/gmail.readonly",
        description="OAuth scope used for Gmail access",
    )
    gmail_page_size: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Page size for users.messages.list",
    )
    sync_folders: list[str] = Field(
        default_factory=lambda: ["INBOX", "SENT"],
        description="Gmail labels treated as folders to sync",
    )
    max_attachment_bytes: int = Field(
        default=1_048_576,
        description="Largest attachment whose text is extracted",
    )

    # Sync pipeline
    initial_lookback_days: int = Field(
        default=30,
        ge=1,
        description="How far back the first sync of a user reaches",
    )
    sync_batch_size: int = Field(
        default=50,
        ge=1,
        description="Messages processed per batch before the cursor is committed",
    )
    embedding_batch_size: int = Field(
        default=16,
        ge=1,
        description="Chunk texts sent per embedding request",
    )
    worker_count: int = Field(
        default=4,
        ge=1,
        description="Threads used to classify and chunk messages in parallel",
    )
    call_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for each external call made by the orchestrator",
    )
    max_retries: int = Field(
        default=3,
        ge=0,
        description="Retries per external call after a transient error",
    )
    retry_base_delay: float = Field(
        default=1.0,
        ge=0,
        description="Initial backoff delay in seconds (doubles per attempt)",
    )
    pending_backlog_limit: int = Field(
        default=100,
        ge=0,
        description="Previously failed items retried at the end of each run",
    )

    # Rate limits (fixed windows)
    gmail_rate_window_ms: int = Field(default=1_000, ge=1)
    gmail_rate_max_calls: int = Field(default=40, ge=1)
    embedding_rate_window_ms: int = Field(default=60_000, ge=1)
    embedding_rate_max_calls: int = Field(default=500, ge=1)

    # Text processing
    max_chunk_size: int = Field(
        default=8_000,
        ge=1,
        description="Maximum characters per chunk",
    )
    max_tokens: int = Field(
        default=10_000,
        ge=1,
        description="Estimated token ceiling for one message's combined text",
    )

    # Filtering
    enable_domain_filtering: bool = True
    enable_content_filtering: bool = True
    enable_size_filtering: bool = True
    filter_strict_mode: bool = False
    max_email_size: int = Field(
        default=10 * 1024 * 1024,
        description="Raw body size in bytes above which a message is not indexed",
    )
    blacklisted_domains: list[str] = Field(default_factory=list)
    whitelisted_domains: list[str] = Field(default_factory=list)

    # Search
    search_limit: int = Field(default=10, ge=1)
    search_threshold: float = Field(default=0.7, ge=-1.0, le=1.0)

    # Application
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_json: bool = Field(
        default=False,
        description="Render logs as JSON lines instead of console output",
    )

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper()


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
