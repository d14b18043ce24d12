import logging
from typing import Any, Awaitable, Callable, Optional

from backup_scheduler.domain.job import JobKind, ScheduledJob
from backup_scheduler.domain.run import RunMetrics
from backup_scheduler.drivers.protocol import DatabaseDriver
from backup_scheduler.errors import ExecutionError
from backup_scheduler.executors.options import BackupOptions
from backup_scheduler.executors.protocol import JobExecutor

logger = logging.getLogger(__name__)

CompletionListener = Callable[[], Awaitable[Any]]


async def notify_completed(listener: Optional[CompletionListener], job: ScheduledJob) -> None:
    """
    Tell the sync trigger a database job finished. Errors are logged, not raised:
    the job itself already succeeded.
    """
    if listener is None:
        return
    try:
        await listener()
    except Exception:
        logger.error(f"Could not notify sync trigger after job {job.id}", exc_info=True)


def require_database(job: ScheduledJob) -> str:
    if not job.resource_key:
        raise ExecutionError(f"{job.kind.value.capitalize()} job {job.id} has no database")
    return job.resource_key


class BackupJobExecutor(JobExecutor):
    """
    Job executor that takes a database backup through the database driver.
    """

    def __init__(self, driver: DatabaseDriver, on_completed: Optional[CompletionListener] = None):
        self.driver = driver
        self.on_completed = on_completed

    @staticmethod
    def supported_kind() -> JobKind:
        return JobKind.BACKUP

    async def run(self, job: ScheduledJob) -> RunMetrics:
        database_id = require_database(job)
        options = BackupOptions.model_validate(job.options)

        try:
            result = await self.driver.run_backup(database_id, options.backup_type)
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"{options.backup_type.value} backup of '{database_id}' failed: {e}") from e

        logger.info(f"{options.backup_type.value} backup of '{database_id}' written to {result.file_path} ({result.size_bytes} bytes)")
        await notify_completed(self.on_completed, job)
        return RunMetrics(
            duration_seconds=result.duration_seconds,
            size_bytes=result.size_bytes,
            files_affected=1,
            details={"backup_type": options.backup_type.value, "file_path": result.file_path},
        )
