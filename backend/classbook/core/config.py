# backend/classbook/core/config.py
import logging
import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_BACKEND_ROOT = Path(__file__).resolve().parents[2]


def is_running_tests() -> bool:
    """
    Detect if code is running under pytest.

    PYTEST_CURRENT_TEST is set automatically by pytest during test runs, and is
    not expected to be present in production environments.
    """
    return os.getenv("PYTEST_CURRENT_TEST") is not None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_BACKEND_ROOT / ".env"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    environment: str = Field(default="development", description="Deployment environment")

    # Database
    database_url: str = Field(
        default="sqlite+pysqlite:///./classbook.db",
        description="SQLAlchemy URL for the booking database",
    )
    database_echo: bool = False

    # Redis (optional distributed instance lock + Celery broker)
    redis_url: Optional[str] = None
    celery_broker_url: Optional[str] = None

    # Per-instance serialization
    instance_lock_backend: Literal["local", "redis"] = "local"
    instance_lock_ttl_seconds: int = Field(default=30, ge=1)
    instance_lock_wait_seconds: float = Field(default=10.0, gt=0)

    # Waitlist promotion confirmation window
    promotion_window_hours: int = Field(default=24, ge=1)

    # Caller-side retry on ConcurrentCapacityExceeded
    reserve_max_attempts: int = Field(default=3, ge=1)
    reserve_retry_backoff_seconds: float = Field(default=0.05, ge=0)

    # Reminders and credit packages
    reminder_lead_minutes: int = Field(default=60, ge=1)
    default_package_validity_days: int = Field(default=90, ge=1)

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return (value or "development").strip().lower()

    @property
    def is_production(self) -> bool:
        return self.environment in {"prod", "production"}

    @property
    def broker_url(self) -> str:
        return self.celery_broker_url or self.redis_url or "redis://localhost:6379/0"


settings = Settings()
