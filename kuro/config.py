"""Application settings loaded from environment variables."""

import os
import sys
import zoneinfo
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file() -> str | None:
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


def default_data_dir() -> Path:
    """Return the per-platform directory holding the database."""
    home = Path.home()
    if sys.platform == "win32":
        appdata = os.getenv("APPDATA")
        return Path(appdata) / "Kuro" if appdata else home / "AppData" / "Roaming" / "Kuro"
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / "Kuro"
    return home / ".kuro"


class Settings(BaseSettings):
    """Kuro configuration. All values come from ``KURO_*`` environment variables."""

    # Database
    database_path: Path = Field(default_factory=lambda: default_data_dir() / "kuro.db")

    # Scheduler
    scheduler_timezone: str = Field(default="UTC")
    reconcile_interval_seconds: int = Field(default=10, ge=1)

    # Task defaults (used when a task is created without explicit values)
    default_timeout_ms: int = Field(default=30000, ge=1)
    default_retry_count: int = Field(default=3, ge=0)

    # Execution logs
    log_retention_days: int = Field(default=30, ge=1)
    log_cleanup_interval_hours: int = Field(default=24, ge=1)

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="KURO_", env_file=_env_file(), env_file_encoding="utf-8"
    )

    @field_validator("scheduler_timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject names that are not IANA timezones."""
        try:
            zoneinfo.ZoneInfo(v)
        except (zoneinfo.ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone: {v!r}") from exc
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        if os.getenv("PYTEST_CURRENT_TEST"):
            return (init_settings,)
        return (init_settings, env_settings, dotenv_settings, file_secret_settings)


settings = Settings()
