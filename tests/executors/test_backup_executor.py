import pytest

from backup_scheduler.domain.job import BackupType, JobKind, MaintenanceType, ScheduledJob
from backup_scheduler.errors import ExecutionError
from backup_scheduler.executors.backup import BackupJobExecutor
from backup_scheduler.executors.maintenance import MaintenanceJobExecutor


@pytest.fixture
def completions():
    return []


@pytest.fixture
def on_completed(completions):
    async def listener():
        completions.append(True)
    return listener


def backup_job(**options) -> ScheduledJob:
    return ScheduledJob(kind=JobKind.BACKUP, cron_expression="0 2 * * *", resource_key="sales", options=options)


@pytest.mark.asyncio
async def test_backup_runs_driver_and_notifies(database_driver, on_completed, completions):
    executor = BackupJobExecutor(database_driver, on_completed)
    metrics = await executor.run(backup_job(backup_type="DIFF"))

    assert database_driver.backups == [("sales", BackupType.DIFF)]
    assert metrics.size_bytes == 1024
    assert metrics.duration_seconds == 1.5
    assert metrics.details["file_path"] == "/backups/sales.bak"
    assert len(completions) == 1


@pytest.mark.asyncio
async def test_backup_defaults_to_full(database_driver):
    await BackupJobExecutor(database_driver).run(backup_job())
    assert database_driver.backups == [("sales", BackupType.FULL)]


@pytest.mark.asyncio
async def test_backup_failure_becomes_execution_error(database_driver, on_completed, completions):
    database_driver.fail_with = ConnectionError("server unreachable")
    executor = BackupJobExecutor(database_driver, on_completed)

    with pytest.raises(ExecutionError, match="server unreachable"):
        await executor.run(backup_job())
    assert completions == []


@pytest.mark.asyncio
async def test_backup_without_database_fails(database_driver):
    job = ScheduledJob(kind=JobKind.BACKUP, cron_expression="0 2 * * *")
    with pytest.raises(ExecutionError, match="has no database"):
        await BackupJobExecutor(database_driver).run(job)


@pytest.mark.asyncio
async def test_listener_error_does_not_fail_backup(database_driver):
    async def broken():
        raise RuntimeError("settings unavailable")

    metrics = await BackupJobExecutor(database_driver, broken).run(backup_job())
    assert metrics.size_bytes == 1024


@pytest.mark.asyncio
async def test_maintenance_passes_type_and_options(database_driver, on_completed, completions):
    job = ScheduledJob(
        kind=JobKind.MAINTENANCE,
        cron_expression="0 3 * * 0",
        resource_key="sales",
        options={"maintenance_type": "INTEGRITY", "physical_only": True},
    )
    metrics = await MaintenanceJobExecutor(database_driver, on_completed).run(job)

    assert database_driver.maintenance == [("sales", MaintenanceType.INTEGRITY, {"physical_only": True})]
    assert metrics.details == {"maintenance_type": "INTEGRITY", "message": "done"}
    assert len(completions) == 1


@pytest.mark.asyncio
async def test_maintenance_failure_becomes_execution_error(database_driver):
    database_driver.fail_with = TimeoutError("timed out")
    job = ScheduledJob(kind=JobKind.MAINTENANCE, cron_expression="0 3 * * 0", resource_key="sales")
    with pytest.raises(ExecutionError, match="INDEX maintenance of 'sales' failed"):
        await MaintenanceJobExecutor(database_driver).run(job)
