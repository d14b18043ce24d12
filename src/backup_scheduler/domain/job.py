import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
import logging
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator


class JobKind(str, Enum):
    BACKUP = "backup"
    MAINTENANCE = "maintenance"
    SYNC = "sync"
    CLEANUP = "cleanup"
    SUMMARY = "summary"


class BackupType(str, Enum):
    FULL = "FULL"
    DIFF = "DIFF"
    LOG = "LOG"


class MaintenanceType(str, Enum):
    INDEX = "INDEX"
    INTEGRITY = "INTEGRITY"
    STATS = "STATS"


# Kinds that act on a single database and therefore need a resource key.
RESOURCE_KINDS = frozenset({JobKind.BACKUP, JobKind.MAINTENANCE})


class ScheduledJob(BaseModel):
    """
    A cron-driven unit of work: a backup or maintenance job against one
    database, or one of the global jobs (sync, cleanup, summary).
    """
    id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex[:8]}", description="Unique job identifier")
    name: str = Field("", description="Human readable job name")
    kind: JobKind = Field(..., description="Which executor runs this job")
    cron_expression: str = Field(..., description="5-field cron expression")
    resource_key: Optional[str] = Field(None, description="Database id for per-database jobs, None for global jobs")
    enabled: bool = Field(default=True, description="Disabled jobs are never armed")
    options: Dict[str, Any] = Field(default_factory=dict, description="Kind-specific parameters such as backup_type")
    next_fire_at: Optional[datetime] = Field(None, description="Next armed fire time, None when not scheduled")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(ZoneInfo("UTC")),
        description="Job creation timestamp with UTC timezone"
    )

    @field_validator('created_at')
    def check_timezone(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            logging.warning("Datetime does not include a timezone. Defaulting to UTC+0 for consistent representation.")
            return v.replace(tzinfo=ZoneInfo("UTC"))
        return v

    @property
    def is_global(self) -> bool:
        return self.resource_key is None

    @property
    def backup_type(self) -> BackupType:
        return BackupType(self.options.get("backup_type", BackupType.FULL.value))

    @property
    def maintenance_type(self) -> MaintenanceType:
        return MaintenanceType(self.options.get("maintenance_type", MaintenanceType.INDEX.value))

    def disable(self) -> None:
        self.enabled = False
        self.next_fire_at = None

    def enable(self) -> None:
        self.enabled = True

    @property
    def readable_string(self) -> str:
        label = self.name or self.id
        target = f" on '{self.resource_key}'" if self.resource_key else ""
        state = "enabled" if self.enabled else "disabled"
        return f"{self.kind.value} job '{label}'{target} ({self.cron_expression}, {state})"
