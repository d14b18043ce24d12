"""Engine configuration using Pydantic Settings."""

import logging
from datetime import tzinfo
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo

import tzlocal
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class EngineSettings(BaseSettings):
    """Process-level settings loaded from environment variables.

    Runtime policies (retention, bandwidth, sync, notifications) are not
    configured here; they live in the job store settings table.
    """

    model_config = SettingsConfigDict(
        env_prefix="BACKUP_SCHEDULER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = Field(default="sqlite+aiosqlite:///backup_scheduler.db")
    backup_root: str = Field(default="backups", description="Root of the local FULL/DIFF/LOG tree")
    timezone: Optional[str] = Field(default=None, description="IANA zone for cron and peak hours, host zone if unset")
    log_level: str = Field(default="INFO")

    @property
    def tz(self) -> tzinfo:
        if self.timezone:
            return ZoneInfo(self.timezone)
        return tzlocal.get_localzone()


@lru_cache
def get_settings() -> EngineSettings:
    """Get cached settings instance."""
    return EngineSettings()


def configure_logging(settings: Optional[EngineSettings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)
