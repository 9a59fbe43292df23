"""
Configuration settings for the studyloop orchestration engine.

Uses Pydantic Settings for environment variable management with .env file support.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="STUDYLOOP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Storage
    # ========================================
    database_url: str | None = Field(
        default="sqlite:///~/.studyloop/state.db",
        description="SQLAlchemy URL for the proficiency store (empty = in-memory)",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level for the loguru sink",
    )

    # ========================================
    # Capabilities
    # ========================================
    capability_base_url: str = Field(
        default="http://127.0.0.1:8700",
        description="Base URL of the capability host (generation, OCR, search, rendering)",
    )
    capability_timeout_seconds: float = Field(
        default=30.0,
        description="Deadline applied to a single capability invocation",
    )
    explanation_max_tokens: int = Field(
        default=800,
        description="Token budget for generated explanations",
    )

    # ─── Retry policy ─────────────────────────────────────────────────────────
    retry_attempts: int = Field(default=3, ge=1)
    retry_base_delay_seconds: float = Field(
        default=1.0,
        description="First backoff delay; doubles per attempt (1s, 2s, 4s)",
    )
    retry_jitter: float = Field(
        default=0.1,
        ge=0.0,
        le=1.0,
        description="Jitter as a fraction of each backoff delay",
    )

    # ─── Circuit breaker ──────────────────────────────────────────────────────
    breaker_window_seconds: float = Field(
        default=60.0,
        description="Trailing window over which the failure ratio is measured",
    )
    breaker_failure_ratio: float = Field(
        default=0.5,
        description="Breaker opens when the failure ratio exceeds this value",
    )
    breaker_open_seconds: float = Field(
        default=30.0,
        description="How long an open breaker rejects calls before a trial",
    )
    breaker_minimum_calls: int = Field(
        default=5,
        ge=1,
        description="Calls required in the window before the ratio is evaluated",
    )

    # ========================================
    # Proficiency
    # ========================================
    default_proficiency: float = Field(default=0.5, ge=0.0, le=1.0)
    history_limit: int = Field(
        default=10,
        description="Outcomes retained per (student, topic)",
    )
    retention_days: int = Field(
        default=730,
        description="Records without access for this long are swept",
    )

    # ========================================
    # Workflows
    # ========================================
    render_timeout_seconds: float = Field(
        default=600.0,
        description="Deadline for an asynchronous render job to signal completion",
    )
    finished_run_ttl_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="How long a finished run stays queryable and subscribable",
    )
    finished_run_limit: int = Field(
        default=1000,
        ge=1,
        description="Finished runs kept in memory; the oldest are forgotten first",
    )
    challenge_item_count: int = Field(default=10, ge=1)
    weak_topic_threshold: float = Field(default=0.5)
    weak_topic_share: float = Field(
        default=0.3,
        description="Minimum share of challenge items covering weak topics",
    )
    challenge_correct_delta: float = Field(default=0.05)
    challenge_incorrect_delta: float = Field(default=-0.05)
    ocr_min_confidence: float = Field(
        default=0.6,
        description="Average OCR confidence below which a retype is requested",
    )

    def get_retry_config(self) -> dict[str, Any]:
        """Get retry settings shared by the gateway and workflow steps."""
        return {
            "attempts": self.retry_attempts,
            "base_delay": self.retry_base_delay_seconds,
            "jitter": self.retry_jitter,
        }

    def get_breaker_config(self) -> dict[str, Any]:
        """Get circuit breaker settings."""
        return {
            "window_seconds": self.breaker_window_seconds,
            "failure_ratio": self.breaker_failure_ratio,
            "open_seconds": self.breaker_open_seconds,
            "minimum_calls": self.breaker_minimum_calls,
        }

    def has_database(self) -> bool:
        """Check whether a durable database is configured."""
        return bool(self.database_url)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
