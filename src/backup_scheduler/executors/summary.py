import logging
from collections import Counter
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Callable, Iterable, Optional

from backup_scheduler.domain.job import JobKind, ScheduledJob
from backup_scheduler.domain.policy import DailySummary
from backup_scheduler.domain.run import JobRun, RunMetrics, RunStatus
from backup_scheduler.drivers.protocol import Notifier
from backup_scheduler.errors import ExecutionError
from backup_scheduler.executors.protocol import JobExecutor
from backup_scheduler.storages.protocol import JobStore

logger = logging.getLogger(__name__)


def summarize(day: date, runs: Iterable[JobRun]) -> DailySummary:
    runs = list(runs)
    statuses = Counter(r.status for r in runs)
    finished = [r for r in runs if r.is_finished]
    return DailySummary(
        date=day.isoformat(),
        total_runs=len(runs),
        success_count=statuses[RunStatus.SUCCESS],
        failed_count=statuses[RunStatus.FAILED],
        partial_count=statuses[RunStatus.PARTIAL],
        running_count=statuses[RunStatus.RUNNING],
        runs_by_kind=dict(Counter(r.kind.value for r in runs)),
        failed_runs=[r.id for r in runs if r.status == RunStatus.FAILED],
        total_backup_bytes=sum(
            r.metrics.size_bytes or 0 for r in runs
            if r.kind == JobKind.BACKUP and r.status == RunStatus.SUCCESS
        ),
        average_duration_seconds=(
            sum(r.metrics.duration_seconds for r in finished) / len(finished) if finished else 0.0
        ),
    )


class SummaryJobExecutor(JobExecutor):
    """
    Job executor that sends yesterday's run summary through the notifier.
    """

    def __init__(
        self,
        store: JobStore,
        notifier: Notifier,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.notifier = notifier
        self.tz = tz
        self.clock = clock

    @staticmethod
    def supported_kind() -> JobKind:
        return JobKind.SUMMARY

    async def build_summary(self, day: Optional[date] = None) -> DailySummary:
        """
        Aggregate the runs started on ``day`` (local time, default yesterday).
        """
        day = day or (self.clock().astimezone(self.tz).date() - timedelta(days=1))
        start = datetime.combine(day, time.min, tzinfo=self.tz)
        end = start + timedelta(days=1)
        runs = await self.store.list_runs_between(start, end)
        return summarize(day, runs)

    async def run(self, job: ScheduledJob) -> RunMetrics:
        try:
            summary = await self.build_summary()
        except Exception as e:
            raise ExecutionError(f"Could not build daily summary: {e}") from e

        if summary.total_runs == 0:
            logger.info(f"No runs on {summary.date}, daily summary not sent")
            return RunMetrics(details={"date": summary.date, "sent": False})

        try:
            await self.notifier.notify_daily_summary(summary)
        except Exception as e:
            raise ExecutionError(f"Could not send daily summary: {e}") from e

        return RunMetrics(details={"date": summary.date, "sent": True, "total_runs": summary.total_runs})
