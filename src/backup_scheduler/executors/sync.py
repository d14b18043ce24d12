import logging
from datetime import datetime, timezone, tzinfo
from typing import Awaitable, Callable

from backup_scheduler import bandwidth
from backup_scheduler.domain.job import JobKind, ScheduledJob
from backup_scheduler.domain.policy import BandwidthPolicy
from backup_scheduler.domain.run import RunMetrics
from backup_scheduler.drivers.protocol import SyncDriver
from backup_scheduler.errors import ExecutionError
from backup_scheduler.executors.protocol import JobExecutor

logger = logging.getLogger(__name__)


class SyncJobExecutor(JobExecutor):
    """
    Job executor that pushes local backups to remote storage, throttled by
    the bandwidth policy in effect when the run starts.
    """

    def __init__(
        self,
        driver: SyncDriver,
        load_policy: Callable[[], Awaitable[BandwidthPolicy]],
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.driver = driver
        self.load_policy = load_policy
        self.tz = tz
        self.clock = clock

    @staticmethod
    def supported_kind() -> JobKind:
        return JobKind.SYNC

    async def run(self, job: ScheduledJob) -> RunMetrics:
        try:
            policy = await self.load_policy()
        except Exception as e:
            raise ExecutionError(f"Could not load bandwidth policy: {e}") from e

        limit = bandwidth.effective_limit(self.clock().astimezone(self.tz), policy)
        if limit == 0:
            logger.warning("Remote sync is paused by the bandwidth policy, nothing transferred")
            return RunMetrics(bytes_moved=0, files_affected=0, details={"bandwidth_limit_kbs": 0, "paused": True})

        logger.info(f"Starting remote sync, bandwidth limit {bandwidth.describe_limit(limit)}")
        try:
            result = await self.driver.sync(limit)
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"Remote sync failed: {e}") from e

        return RunMetrics(
            duration_seconds=result.duration_seconds,
            size_bytes=result.bytes_original,
            bytes_moved=result.bytes_original,
            bytes_deduplicated=result.bytes_deduplicated,
            files_affected=result.files,
            details={"bandwidth_limit_kbs": limit, **result.details},
        )
