"""
MemCore — Configuration Management
====================================
Centralized, validated configuration with environment-based overrides.
All settings are loaded from environment variables with sensible defaults.

Usage:
    from memcore.core.config import get_settings
    settings = get_settings()
"""

from __future__ import annotations

from enum import StrEnum
from functools import lru_cache

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """
    Root configuration object.

    All values can be overridden via environment variables prefixed with ``MEMCORE_``.
    Example: ``MEMCORE_DATABASE_URL=postgresql+asyncpg://...``
    """

    model_config = SettingsConfigDict(
        env_prefix="MEMCORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── General ──────────────────────────────────────────────────────────
    app_name: str = "memcore"
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False

    # ── Relational Store ─────────────────────────────────────────────────
    database_url: SecretStr = SecretStr("sqlite+aiosqlite:///./memcore.db")
    db_pool_size: int = Field(default=10, ge=1, le=100)
    db_pool_overflow: int = Field(default=5, ge=0, le=50)
    db_echo_sql: bool = False

    # ── Vector Store (ChromaDB) ──────────────────────────────────────────
    chroma_persist_directory: str | None = Field(
        default=None,
        description="None uses an ephemeral in-process client.",
    )
    chroma_collection_prefix: str = "memcore"

    # ── Logging & Observability ──────────────────────────────────────────
    log_level: str = Field(
        default="INFO", pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_format: str = "json"  # "json" or "console"

    # ── Azure OpenAI ─────────────────────────────────────────────────────
    azure_openai_api_key: SecretStr | None = None
    azure_openai_endpoint: str | None = None
    azure_openai_api_version: str = "2024-02-01"
    azure_openai_deployment_name: str | None = None
    azure_openai_embedding_deployment: str | None = None

    embedding_dimension: int = Field(default=1536, ge=1)

    # ── Timeouts (seconds) ───────────────────────────────────────────────
    extractor_timeout_seconds: float = Field(default=60.0, gt=0)
    llm_timeout_seconds: float = Field(default=30.0, gt=0)
    retrieval_timeout_seconds: float = Field(default=10.0, gt=0)

    # ── Retrieval ────────────────────────────────────────────────────────
    rrf_k: int = Field(default=60, ge=1)
    keyword_candidate_floor: int = Field(
        default=200,
        ge=1,
        description="Minimum rows scanned by keyword search (max(limit * 10, floor)).",
    )
    agentic_max_sub_queries: int = Field(default=3, ge=1, le=10)
    agentic_per_query_limit: int = Field(default=15, ge=1)
    agentic_multi_round: bool = Field(
        default=True,
        description="Run the LLM sufficiency check before expanding agentic queries.",
    )
    agentic_round_limit: int = Field(default=20, ge=1)
    agentic_check_top: int = Field(default=5, ge=1)
    agentic_combined_limit: int = Field(default=40, ge=1)

    # ── Dedup ────────────────────────────────────────────────────────────
    dedup_enabled: bool = True
    dedup_memory_types: list[str] = Field(
        default_factory=lambda: ["episodic_memory", "foresight", "profile"],
    )
    dedup_text_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    dedup_vector_threshold: float = Field(
        default=0.9,
        ge=0.0,
        le=1.0,
        description="Cosine similarity at or above which a record is a duplicate candidate.",
    )
    dedup_candidate_window: int = Field(default=100, ge=1)
    dedup_llm_confirm: bool = True

    # ── Extraction ───────────────────────────────────────────────────────
    unified_extraction: bool = Field(
        default=True,
        description="Extract every memory type with one LLM call per unit.",
    )
    foresight_max_items: int = Field(default=10, ge=1)
    event_log_max_facts: int = Field(default=10, ge=1)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return the singleton Settings instance.

    Cached so environment is read exactly once per process lifetime.
    Call ``get_settings.cache_clear()`` in tests to reset.
    """
    return Settings()
