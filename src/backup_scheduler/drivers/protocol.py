import logging
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, Field

from backup_scheduler.domain.job import BackupType, MaintenanceType, ScheduledJob
from backup_scheduler.domain.policy import DailySummary
from backup_scheduler.domain.run import JobRun

logger = logging.getLogger(__name__)


class BackupResult(BaseModel):
    size_bytes: int = 0
    duration_seconds: float = 0.0
    file_path: Optional[str] = None


class MaintenanceResult(BaseModel):
    duration_seconds: float = 0.0
    message: str = ""


class SyncResult(BaseModel):
    bytes_original: int = 0
    bytes_deduplicated: int = 0
    duration_seconds: float = 0.0
    files: int = 0
    details: Dict[str, Any] = Field(default_factory=dict)


class DatabaseDriver(Protocol):
    async def run_backup(self, database_id: str, backup_type: BackupType) -> BackupResult:
        """Take a backup of a database. Raise on failure."""
        ...

    async def run_maintenance(self, database_id: str, maintenance_type: MaintenanceType,
                              options: Dict[str, Any]) -> MaintenanceResult:
        """Run a maintenance task against a database. Raise on failure."""
        ...


class SyncDriver(Protocol):
    async def sync(self, bandwidth_limit_kbs: Optional[int]) -> SyncResult:
        """Push local backups to remote storage. None means no rate limit."""
        ...


class Notifier(Protocol):
    async def notify_failure(self, run: JobRun, job: ScheduledJob) -> None:
        """Alert about a failed run."""
        ...

    async def notify_daily_summary(self, summary: DailySummary) -> None:
        """Deliver the daily run summary."""
        ...


class LoggingNotifier(Notifier):
    """
    Notifier that only writes to the log. Used when no delivery channel is configured.
    """

    async def notify_failure(self, run: JobRun, job: ScheduledJob) -> None:
        logger.error(f"ALERT: {job.readable_string} failed in run {run.id}: {run.error_message}")

    async def notify_daily_summary(self, summary: DailySummary) -> None:
        logger.info(
            f"Daily summary for {summary.date}: {summary.total_runs} runs, "
            f"{summary.success_count} succeeded, {summary.failed_count} failed, {summary.partial_count} partial")
