from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from sqlalchemy import Column, String, DateTime, Boolean, JSON, Text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.future import select
from sqlalchemy.pool import StaticPool

from backup_scheduler.domain.files import BackupFile
from backup_scheduler.domain.job import ScheduledJob, JobKind
from backup_scheduler.domain.run import JobRun, RunMetrics, RunStatus
from backup_scheduler.storages.filesystem import BackupDirectory
from backup_scheduler.storages.protocol import JobStore

Base = declarative_base()


def _to_db(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo, so everything is stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _from_db(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ScheduledJobModel(Base):
    __tablename__ = 'scheduled_jobs'

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, default="")
    kind = Column(String, nullable=False)
    cron_expression = Column(String, nullable=False)
    resource_key = Column(String, index=True)
    enabled = Column(Boolean, default=True)
    options = Column(JSON, nullable=False, default=dict)
    next_fire_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), nullable=False)


class JobRunModel(Base):
    __tablename__ = 'job_runs'

    id = Column(String, primary_key=True)
    job_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)
    status = Column(String, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False, index=True)
    completed_at = Column(DateTime(timezone=True))
    error_message = Column(Text)
    metrics = Column(JSON)


class SettingModel(Base):
    __tablename__ = 'settings'

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False, default="")


class SqlAlchemyJobStore(JobStore):
    def __init__(self, db_url: str, backup_directory: Optional[BackupDirectory] = None, **engine_kwargs):
        self.engine = create_async_engine(db_url, **engine_kwargs)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self.backup_directory = backup_directory

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def create_job(self, job: ScheduledJob) -> str:
        async with self.async_session() as session:
            db_job = ScheduledJobModel(
                id=job.id,
                name=job.name,
                kind=job.kind.value,
                cron_expression=job.cron_expression,
                resource_key=job.resource_key,
                enabled=job.enabled,
                options=job.options,
                next_fire_at=_to_db(job.next_fire_at),
                created_at=_to_db(job.created_at),
            )
            session.add(db_job)
            await session.commit()
            return job.id

    async def get_job(self, job_id: str) -> Optional[ScheduledJob]:
        async with self.async_session() as session:
            result = await session.execute(select(ScheduledJobModel).filter_by(id=job_id))
            db_job = result.scalar_one_or_none()
            if db_job:
                return self._db_to_job(db_job)
            return None

    async def update_job(self, job: ScheduledJob) -> bool:
        async with self.async_session() as session:
            result = await session.execute(select(ScheduledJobModel).filter_by(id=job.id))
            db_job = result.scalar_one_or_none()
            if db_job:
                db_job.name = job.name
                db_job.kind = job.kind.value
                db_job.cron_expression = job.cron_expression
                db_job.resource_key = job.resource_key
                db_job.enabled = job.enabled
                db_job.options = job.options
                db_job.next_fire_at = _to_db(job.next_fire_at)
                await session.commit()
                return True
            return False

    async def delete_job(self, job_id: str) -> bool:
        async with self.async_session() as session:
            result = await session.execute(select(ScheduledJobModel).filter_by(id=job_id))
            db_job = result.scalar_one_or_none()
            if db_job:
                await session.delete(db_job)
                await session.commit()
                return True
            return False

    async def list_jobs(self, limit: int = 100, offset: int = 0) -> List[ScheduledJob]:
        async with self.async_session() as session:
            result = await session.execute(
                select(ScheduledJobModel)
                .order_by(ScheduledJobModel.created_at.desc(), ScheduledJobModel.id)
                .offset(offset)
                .limit(limit)
            )
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def list_enabled_jobs(self) -> List[ScheduledJob]:
        async with self.async_session() as session:
            result = await session.execute(
                select(ScheduledJobModel).filter_by(enabled=True).order_by(ScheduledJobModel.created_at)
            )
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def create_run(self, run: JobRun) -> str:
        async with self.async_session() as session:
            db_run = JobRunModel(
                id=run.id,
                job_id=run.job_id,
                kind=run.kind.value,
                status=run.status.value,
                started_at=_to_db(run.started_at),
                completed_at=_to_db(run.completed_at),
                error_message=run.error_message,
                metrics=run.metrics.model_dump(mode="json"),
            )
            session.add(db_run)
            await session.commit()
            return run.id

    async def finalize_run(self, run: JobRun) -> bool:
        async with self.async_session() as session:
            result = await session.execute(select(JobRunModel).filter_by(id=run.id))
            db_run = result.scalar_one_or_none()
            if db_run:
                db_run.status = run.status.value
                db_run.completed_at = _to_db(run.completed_at)
                db_run.error_message = run.error_message
                db_run.metrics = run.metrics.model_dump(mode="json")
                await session.commit()
                return True
            return False

    async def get_run(self, run_id: str) -> Optional[JobRun]:
        async with self.async_session() as session:
            result = await session.execute(select(JobRunModel).filter_by(id=run_id))
            db_run = result.scalar_one_or_none()
            if db_run:
                return self._db_to_run(db_run)
            return None

    async def list_runs(self, job_id: str, limit: int = 10) -> List[JobRun]:
        async with self.async_session() as session:
            result = await session.execute(
                select(JobRunModel)
                .filter_by(job_id=job_id)
                .order_by(JobRunModel.started_at.desc())
                .limit(limit)
            )
            return [self._db_to_run(db_run) for db_run in result.scalars()]

    async def list_runs_between(self, start: datetime, end: datetime) -> List[JobRun]:
        async with self.async_session() as session:
            result = await session.execute(
                select(JobRunModel)
                .where(JobRunModel.started_at >= _to_db(start), JobRunModel.started_at < _to_db(end))
                .order_by(JobRunModel.started_at)
            )
            return [self._db_to_run(db_run) for db_run in result.scalars()]

    async def get_settings(self, keys: Iterable[str]) -> Dict[str, str]:
        keys = list(keys)
        async with self.async_session() as session:
            result = await session.execute(select(SettingModel).where(SettingModel.key.in_(keys)))
            return {row.key: row.value for row in result.scalars()}

    async def set_settings(self, values: Dict[str, str]) -> None:
        async with self.async_session() as session:
            for key, value in values.items():
                db_setting = await session.get(SettingModel, key)
                if db_setting:
                    db_setting.value = value
                else:
                    session.add(SettingModel(key=key, value=value))
            await session.commit()

    async def list_backup_files(self, database_id: Optional[str] = None) -> List[BackupFile]:
        if self.backup_directory is None:
            return []
        return await self.backup_directory.scan(database_id)

    def _db_to_job(self, db_job: ScheduledJobModel) -> ScheduledJob:
        return ScheduledJob(
            id=db_job.id,
            name=db_job.name or "",
            kind=JobKind(db_job.kind),
            cron_expression=db_job.cron_expression,
            resource_key=db_job.resource_key,
            enabled=db_job.enabled,
            options=db_job.options or {},
            next_fire_at=_from_db(db_job.next_fire_at),
            created_at=_from_db(db_job.created_at),
        )

    def _db_to_run(self, db_run: JobRunModel) -> JobRun:
        return JobRun(
            id=db_run.id,
            job_id=db_run.job_id,
            kind=JobKind(db_run.kind),
            status=RunStatus(db_run.status),
            started_at=_from_db(db_run.started_at),
            completed_at=_from_db(db_run.completed_at),
            error_message=db_run.error_message,
            metrics=RunMetrics.model_validate(db_run.metrics or {}),
        )


class InMemoryJobStore(SqlAlchemyJobStore):
    def __init__(self, backup_directory: Optional[BackupDirectory] = None):
        super().__init__(
            "sqlite+aiosqlite:///:memory:",
            backup_directory=backup_directory,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
