import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from backup_scheduler.domain.job import BackupType, MaintenanceType, ScheduledJob
from backup_scheduler.domain.policy import DailySummary
from backup_scheduler.domain.run import JobRun
from backup_scheduler.drivers.protocol import (
    BackupResult,
    DatabaseDriver,
    MaintenanceResult,
    Notifier,
    SyncDriver,
    SyncResult,
)
from backup_scheduler.storages.sqlalchemy import InMemoryJobStore


class FakeDatabaseDriver(DatabaseDriver):
    def __init__(self):
        self.backups: List[Tuple[str, BackupType]] = []
        self.maintenance: List[Tuple[str, MaintenanceType, Dict[str, Any]]] = []
        self.fail_with: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def run_backup(self, database_id: str, backup_type: BackupType) -> BackupResult:
        self.backups.append((database_id, backup_type))
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        return BackupResult(size_bytes=1024, duration_seconds=1.5, file_path=f"/backups/{database_id}.bak")

    async def run_maintenance(self, database_id: str, maintenance_type: MaintenanceType,
                              options: Dict[str, Any]) -> MaintenanceResult:
        self.maintenance.append((database_id, maintenance_type, options))
        if self.fail_with is not None:
            raise self.fail_with
        return MaintenanceResult(duration_seconds=2.0, message="done")


class FakeSyncDriver(SyncDriver):
    def __init__(self):
        self.limits: List[Optional[int]] = []
        self.fail_with: Optional[Exception] = None

    async def sync(self, bandwidth_limit_kbs: Optional[int]) -> SyncResult:
        self.limits.append(bandwidth_limit_kbs)
        if self.fail_with is not None:
            raise self.fail_with
        return SyncResult(bytes_original=4096, bytes_deduplicated=1024, duration_seconds=3.0, files=4)


class RecordingNotifier(Notifier):
    def __init__(self):
        self.failures: List[Tuple[JobRun, ScheduledJob]] = []
        self.summaries: List[DailySummary] = []

    async def notify_failure(self, run: JobRun, job: ScheduledJob) -> None:
        self.failures.append((run, job))

    async def notify_daily_summary(self, summary: DailySummary) -> None:
        self.summaries.append(summary)


@pytest.fixture
def database_driver() -> FakeDatabaseDriver:
    return FakeDatabaseDriver()


@pytest.fixture
def sync_driver() -> FakeSyncDriver:
    return FakeSyncDriver()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest_asyncio.fixture
async def store():
    store = InMemoryJobStore()
    await store.create_tables()
    yield store
    await store.dispose()
