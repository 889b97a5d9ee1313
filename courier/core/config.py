"""Application settings and configuration.

Every tunable of the delivery pipeline lives here. Settings are loaded from
``COURIER_*`` environment variables (or a ``.env`` file) with defaults that
match the documented behaviour. Components take plain config dataclasses;
``DeliveryManager.from_settings`` builds them from these settings so tests can
construct components directly.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Courier settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="COURIER_",
        env_file=".env",
        extra="ignore",
    )

    # Application metadata
    APP_NAME: str = "Courier Delivery Service"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"

    # Remote endpoint
    ENDPOINT_URL: str = "http://localhost:8080/ajax"
    REQUEST_TIMEOUT_MS: float = Field(default=10_000, gt=0)
    AUTH_TOKEN: str = ""

    # Queue
    MAX_CONCURRENT: int = Field(default=5, ge=1)
    MAX_QUEUE_SIZE: int = Field(default=100, ge=1)
    DEFAULT_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    HISTORY_LIMIT: int = Field(default=50, ge=0)

    # Deduplication
    DEDUP_WINDOW_MS: float = Field(default=5_000, ge=0)
    DEDUP_MERGE_PARTIAL_OVERLAPS: bool = False

    # Retry policy
    RETRY_BASE_DELAY_MS: float = Field(default=1_000, gt=0)
    RETRY_MAX_DELAY_MS: float = Field(default=30_000, gt=0)
    RETRY_JITTER_FRACTION: float = Field(default=0.1, ge=0, lt=1)
    RETRY_MAX_AUTH_REFRESHES: int = Field(default=1, ge=0)

    # Circuit breaker
    CIRCUIT_WINDOW_SIZE: int = Field(default=20, ge=1)
    CIRCUIT_WINDOW_MS: float = Field(default=60_000, gt=0)
    CIRCUIT_FAILURE_RATIO: float = Field(default=0.5, gt=0, le=1)
    CIRCUIT_MIN_SAMPLES: int = Field(default=5, ge=1)
    CIRCUIT_COOLDOWN_MS: float = Field(default=10_000, ge=0)

    # Snapshot persistence
    SNAPSHOT_ENABLED: bool = True
    SNAPSHOT_KEY: str = "courier_request_queue"
    SNAPSHOT_MAX_AGE_MS: float = Field(default=3_600_000, gt=0)
    STORAGE_BACKEND: Literal["memory", "file", "redis"] = "memory"
    STORAGE_DIR: Path = Path("data/courier")
    REDIS_URL: str = "redis://localhost:6379/0"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool | None = None
    LOG_DIR: str | None = None

    # HTTP surface
    HOST: str = "127.0.0.1"
    PORT: int = 8000


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings()
