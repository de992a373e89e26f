"""Centralized settings management for the event harvester."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy import make_url

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class Settings(BaseSettings):
    """
    Application settings powered by pydantic-settings.

    Values come from environment variables prefixed with ``HARVEST_`` and from
    a ``.env`` file in the working directory.
    """

    # -------------------------------------------------------------------------
    # ENVIRONMENT
    # -------------------------------------------------------------------------
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    JSON_LOGS: bool = False

    # -------------------------------------------------------------------------
    # DATABASE
    # -------------------------------------------------------------------------
    DATABASE_URL: str = Field(default="sqlite:///harvest.db", min_length=1)

    # -------------------------------------------------------------------------
    # FETCHING
    # -------------------------------------------------------------------------
    FETCH_TIMEOUT_S: float = Field(default=15.0, gt=0)
    FETCH_MAX_RETRIES: int = Field(default=3, ge=0, le=10)
    FETCH_BASE_DELAY_S: float = Field(default=1.0, ge=0)
    USER_AGENT: str = DEFAULT_USER_AGENT

    # Remote rendering service (browserless-style /content endpoint)
    RENDER_ENDPOINT: str | None = None
    RENDER_TOKEN: SecretStr | None = None
    RENDER_TIMEOUT_S: float = Field(default=45.0, gt=0)

    # -------------------------------------------------------------------------
    # ENRICHMENT SERVICES
    # -------------------------------------------------------------------------
    GEOCODER_URL: str | None = "https://nominatim.openstreetmap.org/search"
    GEOCODER_USER_AGENT: str = "event-harvester/0.1 (geocoding)"
    GEOCODER_RPS: float = Field(default=1.0, gt=0)
    OPENAI_API_KEY: SecretStr | None = None
    EMBEDDING_MODEL: str = "text-embedding-3-small"

    # -------------------------------------------------------------------------
    # PIPELINE
    # -------------------------------------------------------------------------
    MAX_RECORD_RETRIES: int = Field(default=3, ge=1)
    STALL_THRESHOLD_S: float = Field(default=600.0, gt=0)

    DISCOVERY_BATCH_SIZE: int = Field(default=25, ge=1)
    FETCH_BATCH_SIZE: int = Field(default=30, ge=1)
    # The geocoder is the slowest dependency: 5 lookups per batch at 1 rps,
    # with the inter-batch delay keeping usage at ~80% of the limit.
    ENRICH_BATCH_SIZE: int = Field(default=5, ge=1)
    ENRICH_DELAY_S: float = Field(default=6.25, ge=0)
    INDEX_BATCH_SIZE: int = Field(default=20, ge=1)

    WORKER_PARALLELISM: int = Field(default=4, ge=1)
    MAX_CYCLES: int = Field(default=10, ge=1)
    DISCOVERY_BACKLOG_THRESHOLD: int = Field(default=50, ge=0)

    # -------------------------------------------------------------------------
    # SOURCE HEALTH
    # -------------------------------------------------------------------------
    FAILURE_THRESHOLD: int = Field(default=3, ge=1)
    BASE_INTERVAL_S: float = Field(default=6 * 3600.0, gt=0)
    FAILURE_BACKOFF_S: float = Field(default=3600.0, gt=0)
    MAX_BACKOFF_S: float = Field(default=7 * 24 * 3600.0, gt=0)

    # -------------------------------------------------------------------------
    # EXTRACTION
    # -------------------------------------------------------------------------
    HYDRATION_MAX_DEPTH: int = Field(default=8, ge=1, le=32)
    # Naive listing times are read in this zone before conversion to UTC.
    DEFAULT_TIMEZONE: str = "Europe/Amsterdam"

    model_config = SettingsConfigDict(
        env_prefix="HARVEST_",
        env_file=str(Path.cwd() / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def database_backend(self) -> str:
        """Backend name of DATABASE_URL, e.g. ``sqlite`` or ``postgresql``."""
        return make_url(self.DATABASE_URL).get_backend_name()

    @property
    def render_token(self) -> str | None:
        return self.RENDER_TOKEN.get_secret_value() if self.RENDER_TOKEN else None

    @property
    def openai_api_key(self) -> str | None:
        return self.OPENAI_API_KEY.get_secret_value() if self.OPENAI_API_KEY else None


@lru_cache
def get_settings() -> Settings:
    """
    Get cached application settings.

    Returns
    -------
    Settings
        The singleton settings instance.
    """
    return Settings()
