from typing import Optional

from backup_scheduler.domain.job import JobKind, ScheduledJob
from backup_scheduler.domain.run import RunMetrics
from backup_scheduler.drivers.protocol import DatabaseDriver
from backup_scheduler.errors import ExecutionError
from backup_scheduler.executors.backup import CompletionListener, notify_completed, require_database
from backup_scheduler.executors.options import MaintenanceOptions
from backup_scheduler.executors.protocol import JobExecutor


class MaintenanceJobExecutor(JobExecutor):
    """
    Job executor for index, integrity and statistics maintenance.
    """

    def __init__(self, driver: DatabaseDriver, on_completed: Optional[CompletionListener] = None):
        self.driver = driver
        self.on_completed = on_completed

    @staticmethod
    def supported_kind() -> JobKind:
        return JobKind.MAINTENANCE

    async def run(self, job: ScheduledJob) -> RunMetrics:
        database_id = require_database(job)
        options = MaintenanceOptions.model_validate(job.options)
        extra = dict(options.model_extra or {})

        try:
            result = await self.driver.run_maintenance(database_id, options.maintenance_type, extra)
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"{options.maintenance_type.value} maintenance of '{database_id}' failed: {e}") from e

        await notify_completed(self.on_completed, job)
        return RunMetrics(
            duration_seconds=result.duration_seconds,
            details={"maintenance_type": options.maintenance_type.value, "message": result.message},
        )
