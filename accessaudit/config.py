# accessaudit/config.py
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Service configuration using pydantic-settings.
    Loads from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── APP IDENTITY ─────────────────────────────────────────────────────────
    APP_NAME: str = "AccessAudit"

    # ── DATABASE ─────────────────────────────────────────────────────────────
    DATABASE_URL: str = Field(default="sqlite:///./accessaudit.db")
    DB_ECHO: bool = False

    # ── LOGGING ──────────────────────────────────────────────────────────────
    LOG_LEVEL: str = "INFO"
    AUDIT_DEBUG: bool = False

    # ── ITERATIVE AUDIT LOOP ─────────────────────────────────────────────────
    AUDIT_BATCH_SIZE: int = Field(default=5, ge=1, description="Pages audited in parallel per iteration")
    AUDIT_MAX_ITERATIONS: int = Field(default=50, ge=1, description="Hard ceiling on loop iterations")
    AUDIT_PAGE_TIMEOUT: float = Field(default=60.0, gt=0, description="Seconds allowed per page audit")
    AUDIT_CANDIDATE_MARGIN: float = Field(default=1.5, ge=1.0, description="Crawl over-fetch factor")

    # ── DISCOVERY ────────────────────────────────────────────────────────────
    DISCOVERY_TIMEOUT: float = 30.0
    SITEMAP_MAX_NESTING: int = 3
    USER_AGENT: str = "AccessAudit-Bot/1.0 (+https://accessaudit.dev/bot)"

    # ── AGGREGATION ──────────────────────────────────────────────────────────
    AFFECTED_PAGES_CAP: int = 50
    UNIQUE_ELEMENTS_CAP: int = 20

    # ── JOBS ─────────────────────────────────────────────────────────────────
    AUDIT_RETRY_ATTEMPTS: int = Field(default=3, ge=1)
    SCHEDULER_ENABLED: bool = False
    SCHEDULE_CHECK_MINUTES: int = 60

    @field_validator("DATABASE_URL", mode="before")
    @classmethod
    def normalize_postgres_url(cls, v: str) -> str:
        """
        Converts old-style postgres URLs from 'postgres://' to 'postgresql://'.
        """
        v = str(v).strip().strip('"').strip("'")
        if v.startswith("postgres://"):
            return v.replace("postgres://", "postgresql://", 1)
        return v


# Cached singleton to avoid repeated instantiation
@lru_cache()
def get_settings() -> Settings:
    return Settings()
