import logging
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, Field

from backup_scheduler import bandwidth, cron, retention, stagger
from backup_scheduler.config import EngineSettings
from backup_scheduler.coordinator import ExecutionCoordinator
from backup_scheduler.domain.job import RESOURCE_KINDS, JobKind, ScheduledJob
from backup_scheduler.domain.policy import (
    BandwidthPolicy,
    DailySummary,
    NotificationSettings,
    RetentionPolicy,
    SyncMode,
    SyncSettings,
    daily_cron,
)
from backup_scheduler.domain.run import JobRun, SkippedRun
from backup_scheduler.drivers.protocol import DatabaseDriver, LoggingNotifier, Notifier, SyncDriver
from backup_scheduler.errors import JobValidationError
from backup_scheduler.executor_factory import JobExecutorFactory
from backup_scheduler.executors.backup import BackupJobExecutor
from backup_scheduler.executors.cleanup import CleanupJobExecutor
from backup_scheduler.executors.maintenance import MaintenanceJobExecutor
from backup_scheduler.executors.summary import SummaryJobExecutor
from backup_scheduler.executors.sync import SyncJobExecutor
from backup_scheduler.registry import ScheduleRegistry, ScheduleStatus
from backup_scheduler.storages.filesystem import BackupDirectory
from backup_scheduler.storages.protocol import JobStore
from backup_scheduler.storages.sqlalchemy import SqlAlchemyJobStore

logger = logging.getLogger(__name__)

SYSTEM_CLEANUP_ID = "system:cleanup"
SYSTEM_SYNC_ID = "system:sync"
SYSTEM_SUMMARY_ID = "system:summary"
SYSTEM_JOB_IDS = frozenset({SYSTEM_CLEANUP_ID, SYSTEM_SYNC_ID, SYSTEM_SUMMARY_ID})

_PAGE_SIZE = 500


class StaggeredJobsResult(BaseModel):
    created: List[ScheduledJob] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list, description="Databases that already had a matching job")
    errors: List[str] = Field(default_factory=list)


class Scheduler:
    """
    Entry point of the engine.

    Owns the schedule registry, the execution coordinator and the sync
    trigger, and keeps them consistent with the job store: every job
    mutation re-registers or unregisters the job immediately, and the
    cleanup, sync and summary jobs are rebuilt from the stored settings
    whenever those settings change.

    Usage:
        scheduler = Scheduler(store, database_driver, sync_driver, backup_directory=directory)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        store: JobStore,
        database_driver: DatabaseDriver,
        sync_driver: SyncDriver,
        notifier: Optional[Notifier] = None,
        backup_directory: Optional[BackupDirectory] = None,
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store: JobStore = store
        self.notifier: Notifier = notifier or LoggingNotifier()
        self.backup_directory = backup_directory
        self.tz = tz
        self.clock = clock
        self.is_running: bool = False

        self.sync_trigger = bandwidth.SyncTrigger(self.get_sync_settings, self._fire_sync, clock=clock)
        self.summary_executor = SummaryJobExecutor(store, self.notifier, tz=tz, clock=clock)

        self.executor_factory = JobExecutorFactory()
        self.executor_factory.register(BackupJobExecutor(database_driver, self.sync_trigger.on_backup_completed))
        self.executor_factory.register(MaintenanceJobExecutor(database_driver, self.sync_trigger.on_backup_completed))
        self.executor_factory.register(SyncJobExecutor(sync_driver, self.get_bandwidth_policy, tz=tz, clock=clock))
        self.executor_factory.register(self.summary_executor)
        if backup_directory is not None:
            self.executor_factory.register(CleanupJobExecutor(store, backup_directory))

        self.coordinator = ExecutionCoordinator(store, self.executor_factory, on_failure=self._on_failure)
        self.registry = ScheduleRegistry(self._run_scheduled, tz=tz, clock=clock)

    @classmethod
    def from_settings(
        cls,
        settings: EngineSettings,
        database_driver: DatabaseDriver,
        sync_driver: SyncDriver,
        notifier: Optional[Notifier] = None,
    ) -> "Scheduler":
        """
        Build a scheduler backed by the database and backup directory named in ``settings``.
        """
        tz = settings.tz
        directory = BackupDirectory(settings.backup_root, tz=tz)
        store = SqlAlchemyJobStore(settings.database_url, backup_directory=directory)
        return cls(store, database_driver, sync_driver, notifier=notifier, backup_directory=directory, tz=tz)

    async def start(self):
        """
        Start the scheduler: create tables, rebuild the system jobs and arm every enabled job.
        """
        if isinstance(self.store, SqlAlchemyJobStore):
            await self.store.create_tables()
        if self.is_running:
            return
        self.is_running = True
        await self._materialize_system_jobs()
        count = await self.reload()
        logger.info(f"Scheduler started with {count} scheduled jobs")

    async def stop(self):
        """
        Cancel all timers and wait for in-flight runs to finish.
        """
        if not self.is_running:
            return
        self.is_running = False
        self.registry.shutdown()
        self.sync_trigger.cancel()
        await self.registry.drain()
        await self.sync_trigger.drain()
        await self.coordinator.drain()
        logger.info("Scheduler stopped")

    async def reload(self) -> int:
        """
        Re-register every enabled job from the store.

        Jobs whose cron expression no longer evaluates are left unarmed and
        reported through ``schedule_status``.

        Returns:
            int: The number of jobs armed.
        """
        self.registry.shutdown()
        count = 0
        for job in await self.store.list_enabled_jobs():
            if await self._schedule(job):
                count += 1
        return count

    async def _schedule(self, job: ScheduledJob) -> bool:
        armed = False
        if self.is_running:
            try:
                armed = self.registry.register(job) is not None
            except JobValidationError as e:
                self.registry.mark_unschedulable(job.id, str(e))
                job.next_fire_at = None
        else:
            job.next_fire_at = None
        await self.store.update_job(job)
        return armed

    def _validate(self, job: ScheduledJob) -> None:
        job.cron_expression = cron.validate(job.cron_expression)
        if job.kind in RESOURCE_KINDS and not job.resource_key:
            raise JobValidationError(f"{job.kind.value} jobs need a database (resource_key)")
        self.executor_factory.validate_options(job.kind, job.options)

    # Jobs

    async def add_job(self, job: ScheduledJob) -> ScheduledJob:
        """
        Validate, store and arm a new job.

        Raises:
            JobValidationError: If the cron expression, the database or the
                options are invalid, or a job with the same id exists.
        """
        self._validate(job)
        if job.id in SYSTEM_JOB_IDS or await self.store.get_job(job.id) is not None:
            raise JobValidationError(f"Job {job.id} already exists")
        await self.store.create_job(job)
        await self._schedule(job)
        logger.info(f"Added {job.readable_string}")
        return job

    async def update_job(self, job: ScheduledJob) -> bool:
        if job.id in SYSTEM_JOB_IDS:
            raise JobValidationError(f"{job.id} is managed through its settings")
        self._validate(job)
        if await self.store.get_job(job.id) is None:
            return False
        await self._schedule(job)
        return True

    async def remove_job(self, job_id: str) -> bool:
        if job_id in SYSTEM_JOB_IDS:
            raise JobValidationError(f"{job_id} cannot be removed")
        self.registry.unregister(job_id)
        return await self.store.delete_job(job_id)

    async def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        return await self.store.get_job(job_id)

    async def list_jobs(self) -> List[ScheduledJob]:
        jobs: List[ScheduledJob] = []
        offset = 0
        while True:
            page = await self.store.list_jobs(limit=_PAGE_SIZE, offset=offset)
            jobs.extend(page)
            if len(page) < _PAGE_SIZE:
                return jobs
            offset += _PAGE_SIZE

    async def enable_job(self, job_id: str) -> bool:
        job = await self.get_job(job_id)
        if job is None or job.id in SYSTEM_JOB_IDS:
            return False
        job.enable()
        await self._schedule(job)
        return True

    async def disable_job(self, job_id: str) -> bool:
        job = await self.get_job(job_id)
        if job is None or job.id in SYSTEM_JOB_IDS:
            return False
        job.disable()
        await self._schedule(job)
        return True

    async def _run_scheduled(self, job_id: str) -> Union[JobRun, SkippedRun]:
        # The registry has already armed the next occurrence.
        try:
            job = await self.store.get_job(job_id)
            if job is not None:
                job.next_fire_at = self.registry.next_fire_at(job_id)
                await self.store.update_job(job)
        except Exception:
            logger.error(f"Could not record next fire time of job {job_id}", exc_info=True)
        return await self.coordinator.execute(job_id)

    async def run_now(self, job_id: str) -> Union[JobRun, SkippedRun]:
        """
        Run a job immediately, outside its schedule.
        """
        return await self.coordinator.execute(job_id)

    async def list_runs(self, job_id: str, limit: int = 10) -> List[JobRun]:
        return await self.store.list_runs(job_id, limit)

    def list_scheduled(self) -> List[str]:
        return self.registry.list_scheduled()

    def schedule_status(self, job_id: str) -> ScheduleStatus:
        return self.registry.status(job_id)

    # Staggered creation

    def preview_stagger(
        self,
        count: int,
        schedule_type: stagger.StaggerType,
        start_hour: int,
        window_hours: int,
        week_day: Optional[int] = None,
        month_day: Optional[int] = None,
    ) -> List[stagger.StaggerSlot]:
        return stagger.preview(count, schedule_type, start_hour, window_hours, week_day, month_day)

    async def add_staggered_jobs(
        self,
        kind: JobKind,
        database_ids: Sequence[str],
        schedule_type: stagger.StaggerType,
        start_hour: int,
        window_hours: int,
        week_day: Optional[int] = None,
        month_day: Optional[int] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> StaggeredJobsResult:
        """
        Create one job per database, spread evenly across the window.

        Databases that already have a job of the same kind and type are
        skipped but keep their slot, so the remaining jobs land where the
        preview said they would.
        """
        if kind not in RESOURCE_KINDS:
            raise JobValidationError(f"Staggered jobs must be backup or maintenance jobs, got {kind.value}")
        if not database_ids:
            raise JobValidationError("No databases selected")
        options = dict(options or {})
        self.executor_factory.validate_options(kind, options)
        stagger.preview(len(database_ids), schedule_type, start_hour, window_hours, week_day, month_day)

        template = ScheduledJob(kind=kind, cron_expression="* * * * *", options=options)
        existing = {
            job.resource_key for job in await self.list_jobs()
            if job.kind == kind and self._same_type(job, template)
        }

        result = StaggeredJobsResult()
        for index, database_id in enumerate(database_ids):
            if database_id in existing:
                result.skipped.append(database_id)
                continue
            expression = stagger.generate(index, len(database_ids), schedule_type, start_hour, window_hours, week_day, month_day)
            job = ScheduledJob(
                name=f"{database_id} {self._type_label(template)}".strip(),
                kind=kind,
                cron_expression=expression,
                resource_key=database_id,
                options=options,
            )
            try:
                result.created.append(await self.add_job(job))
                existing.add(database_id)
            except Exception as e:
                logger.error(f"Could not create staggered job for {database_id}", exc_info=True)
                result.errors.append(f"{database_id}: {e}")

        logger.info(f"Staggered {kind.value} jobs: {len(result.created)} created, {len(result.skipped)} skipped, {len(result.errors)} errors")
        return result

    @staticmethod
    def _same_type(job: ScheduledJob, template: ScheduledJob) -> bool:
        if job.kind == JobKind.BACKUP:
            return job.backup_type == template.backup_type
        return job.maintenance_type == template.maintenance_type

    @staticmethod
    def _type_label(job: ScheduledJob) -> str:
        if job.kind == JobKind.BACKUP:
            return f"{job.backup_type.value} backup"
        return f"{job.maintenance_type.value} maintenance"

    # Retention

    async def get_retention_policy(self) -> RetentionPolicy:
        return RetentionPolicy.from_settings(await self.store.get_settings(RetentionPolicy.KEYS))

    async def set_retention_policy(self, policy: RetentionPolicy) -> RetentionPolicy:
        policy.schedule = cron.validate(policy.schedule)
        await self.store.set_settings(policy.to_settings())
        await self._materialize_cleanup_job(policy)
        return policy

    async def preview_retention(self, database_id: Optional[str] = None) -> retention.RetentionPlan:
        """
        Dry run of the cleanup job: what would be kept and deleted right now.
        Nothing is removed from disk.
        """
        policy = await self.get_retention_policy()
        files = await self.store.list_backup_files(database_id)
        return retention.plan(files, policy)

    # Bandwidth and sync

    async def get_bandwidth_policy(self) -> BandwidthPolicy:
        return BandwidthPolicy.from_settings(await self.store.get_settings(BandwidthPolicy.KEYS))

    async def set_bandwidth_policy(self, policy: BandwidthPolicy) -> BandwidthPolicy:
        await self.store.set_settings(policy.to_settings())
        return policy

    async def current_bandwidth_limit(self) -> Optional[int]:
        """
        The sync rate cap in KB/s right now, None for unlimited.
        """
        policy = await self.get_bandwidth_policy()
        return bandwidth.effective_limit(self.clock().astimezone(self.tz), policy)

    async def get_sync_settings(self) -> SyncSettings:
        return SyncSettings.from_settings(await self.store.get_settings(SyncSettings.KEYS))

    async def set_sync_settings(self, settings: SyncSettings) -> SyncSettings:
        await self.store.set_settings(settings.to_settings())
        if not settings.enabled or settings.mode != SyncMode.AFTER_BACKUPS:
            self.sync_trigger.cancel()
        await self._materialize_sync_job(settings)
        return settings

    async def _fire_sync(self) -> None:
        result = await self.coordinator.execute(SYSTEM_SYNC_ID)
        if isinstance(result, SkippedRun):
            logger.warning(f"Debounced sync skipped: {result.reason}")

    # Notifications

    async def get_notification_settings(self) -> NotificationSettings:
        return NotificationSettings.from_settings(await self.store.get_settings(NotificationSettings.KEYS))

    async def set_notification_settings(self, settings: NotificationSettings) -> NotificationSettings:
        await self.store.set_settings(settings.to_settings())
        await self._materialize_summary_job(settings)
        return settings

    async def get_daily_summary(self, day: Optional[date] = None) -> DailySummary:
        return await self.summary_executor.build_summary(day)

    async def _on_failure(self, run: JobRun, job: ScheduledJob) -> None:
        settings = await self.get_notification_settings()
        if settings.failure_alerts_enabled:
            await self.notifier.notify_failure(run, job)

    # System jobs

    async def _materialize_system_jobs(self) -> None:
        await self._materialize_cleanup_job(await self.get_retention_policy())
        await self._materialize_sync_job(await self.get_sync_settings())
        await self._materialize_summary_job(await self.get_notification_settings())

    async def _materialize_cleanup_job(self, policy: RetentionPolicy) -> None:
        await self._upsert_system_job(SYSTEM_CLEANUP_ID, "Backup file cleanup", JobKind.CLEANUP, policy.schedule, policy.enabled)

    async def _materialize_sync_job(self, settings: SyncSettings) -> None:
        enabled = settings.enabled and settings.mode == SyncMode.SCHEDULED
        await self._upsert_system_job(SYSTEM_SYNC_ID, "Remote sync", JobKind.SYNC, daily_cron(settings.sync_time), enabled)

    async def _materialize_summary_job(self, settings: NotificationSettings) -> None:
        await self._upsert_system_job(
            SYSTEM_SUMMARY_ID, "Daily summary", JobKind.SUMMARY, daily_cron(settings.summary_time), settings.daily_summary_enabled)

    async def _upsert_system_job(self, job_id: str, name: str, kind: JobKind, cron_expression: str, enabled: bool) -> None:
        job = await self.store.get_job(job_id)
        if job is None:
            job = ScheduledJob(id=job_id, name=name, kind=kind, cron_expression=cron_expression, enabled=enabled)
            await self.store.create_job(job)
        else:
            job.cron_expression = cron_expression
            job.enabled = enabled
        await self._schedule(job)
