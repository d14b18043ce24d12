import logging
import time
from datetime import datetime, timezone
from typing import List

from backup_scheduler import retention
from backup_scheduler.domain.job import JobKind, ScheduledJob
from backup_scheduler.domain.policy import RetentionPolicy
from backup_scheduler.domain.run import RunMetrics, RunStatus
from backup_scheduler.errors import ExecutionError, PartialFailure
from backup_scheduler.executors.protocol import JobExecutor
from backup_scheduler.storages.filesystem import BackupDirectory
from backup_scheduler.storages.protocol import JobStore

logger = logging.getLogger(__name__)


class CleanupJobExecutor(JobExecutor):
    """
    Job executor that applies the retention policy to local backup files.

    The plan is computed from the current file listing, then each file in
    the delete list is removed. A file that cannot be removed is recorded
    and the rest of the batch still runs.
    """

    def __init__(self, store: JobStore, directory: BackupDirectory):
        self.store = store
        self.directory = directory

    @staticmethod
    def supported_kind() -> JobKind:
        return JobKind.CLEANUP

    async def run(self, job: ScheduledJob) -> RunMetrics:
        started_at = datetime.now(timezone.utc)
        started = time.monotonic()
        try:
            policy = RetentionPolicy.from_settings(await self.store.get_settings(RetentionPolicy.KEYS))
            files = await self.store.list_backup_files()
            plan = retention.plan(files, policy)
        except Exception as e:
            await self._record_outcome(started_at, RunStatus.FAILED, f"Cleanup could not start: {e}")
            raise ExecutionError(f"Could not plan cleanup: {e}") from e

        logger.info(f"Cleanup plan: keep {len(plan.keep)} files, delete {len(plan.delete)} files ({plan.delete_size_mb:.2f} MB)")

        errors: List[str] = []
        deleted_bytes = 0
        deleted_count = 0
        missing = 0
        for f in plan.delete:
            try:
                await self.directory.remove(f.path)
            except FileNotFoundError:
                missing += 1
                logger.info(f"Backup file {f.path} was already gone, skipping")
                continue
            except (OSError, ValueError) as e:
                errors.append(f"Failed to delete {f.path}: {e}")
                logger.warning(errors[-1])
                continue
            deleted_count += 1
            deleted_bytes += f.size_bytes

        pruned = await self.directory.prune_empty_dirs()

        metrics = RunMetrics(
            duration_seconds=time.monotonic() - started,
            size_bytes=deleted_bytes,
            files_affected=deleted_count,
            errors=errors,
            details={"kept_files": len(plan.keep), "pruned_directories": pruned, "already_missing": missing},
        )
        message = f"Deleted {deleted_count} files ({deleted_bytes / (1024 * 1024):.2f} MB)"
        if errors:
            message += f". {len(errors)} errors."
            await self._record_outcome(started_at, RunStatus.PARTIAL, message)
            raise PartialFailure(message, metrics)

        await self._record_outcome(started_at, RunStatus.SUCCESS, message)
        logger.info(f"Cleanup finished: {message}")
        return metrics

    async def _record_outcome(self, started_at: datetime, status: RunStatus, message: str) -> None:
        try:
            await self.store.set_settings({
                "cleanup_last_run_at": started_at.isoformat(),
                "cleanup_last_run_status": status.value,
                "cleanup_last_run_message": message,
            })
        except Exception:
            logger.error("Could not record cleanup outcome", exc_info=True)
