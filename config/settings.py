"""Application settings loaded from environment variables.

Uses pydantic-settings for validation and type coercion. All keys use the
``SCHEMEWATCH_`` prefix, except infrastructure settings that keep their
canonical environment variable names via ``validation_alias``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Central configuration for the ingestion service and the sync client.

    Environment variables are loaded from a ``.env`` file when present.
    """

    model_config = SettingsConfigDict(
        env_prefix="SCHEMEWATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # ── App ────────────────────────────────────────────────────────────
    env: Literal["development", "production"] = "development"

    # ── Redis ──────────────────────────────────────────────────────────
    # Empty string disables Redis; the cache then runs in-memory only.
    redis_url: str = Field(default="", validation_alias="REDIS_URL")

    # ── API ────────────────────────────────────────────────────────────
    api_host: str = Field(default="0.0.0.0", validation_alias="API_HOST")
    api_port: int = Field(default=8000, validation_alias="API_PORT")

    # ── Admin API Key ──────────────────────────────────────────────────
    admin_api_key: str = Field(default="", validation_alias="ADMIN_API_KEY")

    # ── Logging ────────────────────────────────────────────────────────
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(default="json", validation_alias="LOG_FORMAT")

    # ── Fetcher ────────────────────────────────────────────────────────
    fetch_timeout_seconds: float = Field(default=20.0, gt=0)
    fetch_max_attempts: int = Field(default=4, ge=1)
    fetch_backoff_min_seconds: float = 0.5
    fetch_backoff_max_seconds: float = 8.0
    fetch_max_concurrency: int = Field(default=4, ge=1)

    # ── Ingestion Pipeline ─────────────────────────────────────────────
    ingestion_interval_hours: float = 6
    ingestion_max_concurrency: int = Field(default=4, ge=1)
    enable_auto_ingestion: bool = True
    store_path: str | None = "data/schemes.json"  # JSON snapshot; empty keeps the store in memory
    sources_path: str | None = None  # JSON file overriding bundled sources

    # ── Notifications ──────────────────────────────────────────────────
    notification_topic: str = "new_schemes"
    push_transport: Literal["memory", "redis"] = "memory"
    notify_max_attempts: int = Field(default=3, ge=1)

    # ── Sync Client ────────────────────────────────────────────────────
    api_base_url: str = "http://localhost:8000"
    sync_interval_hours: float = 6
    sync_batch_limit: int = Field(default=100, ge=1, le=500)
    sync_max_attempts: int = Field(default=3, ge=1)
    local_state_path: str = "schemewatch_local_state.json"

    # ── Derived Properties ─────────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.env == Environment.PRODUCTION


# Module-level default, read by the entry points only.  Services receive
# their settings through constructor arguments.
settings = Settings()
