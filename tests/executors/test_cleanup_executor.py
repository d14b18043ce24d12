from pathlib import Path

import pytest
import pytest_asyncio

from backup_scheduler.domain.job import JobKind, ScheduledJob
from backup_scheduler.domain.policy import RetentionPolicy
from backup_scheduler.errors import ExecutionError, PartialFailure
from backup_scheduler.executors.cleanup import CleanupJobExecutor
from backup_scheduler.storages.filesystem import BackupDirectory
from backup_scheduler.storages.sqlalchemy import InMemoryJobStore

CLEANUP_JOB = ScheduledJob(id="system:cleanup", kind=JobKind.CLEANUP, cron_expression="0 6 * * 0")


def write_backup(root: Path, backup_type: str, day: str, name: str, size: int = 10) -> Path:
    folder = root / backup_type / day
    folder.mkdir(parents=True, exist_ok=True)
    path = folder / name
    path.write_bytes(b"x" * size)
    return path


class FlakyDirectory(BackupDirectory):
    def __init__(self, root, locked):
        super().__init__(root)
        self.locked = {str(p) for p in locked}

    async def remove(self, path):
        if str(path) in self.locked:
            raise PermissionError(f"{path} is in use")
        await super().remove(path)


@pytest.fixture
def backup_tree(tmp_path: Path):
    return {
        "F1": write_backup(tmp_path, "FULL", "2024-01-01", "sales_FULL_20240101_010000.bak"),
        "D1": write_backup(tmp_path, "DIFF", "2024-01-02", "sales_DIFF_20240102_010000.bak"),
        "F2": write_backup(tmp_path, "FULL", "2024-01-08", "sales_FULL_20240108_010000.bak"),
        "D2": write_backup(tmp_path, "DIFF", "2024-01-09", "sales_DIFF_20240109_010000.bak"),
        "F3": write_backup(tmp_path, "FULL", "2024-01-15", "sales_FULL_20240115_010000.bak"),
        "L3": write_backup(tmp_path, "LOG", "2024-01-15", "sales_LOG_20240115_013000.bak"),
    }


@pytest_asyncio.fixture
async def directory_store(tmp_path: Path):
    directory = BackupDirectory(tmp_path)
    store = InMemoryJobStore(backup_directory=directory)
    await store.create_tables()
    await store.set_settings(RetentionPolicy(enabled=True, keep_full_count=2, keep_diff_per_full=1).to_settings())
    yield store
    await store.dispose()


@pytest.mark.asyncio
async def test_cleanup_deletes_evicted_chain(tmp_path, backup_tree, directory_store):
    executor = CleanupJobExecutor(directory_store, directory_store.backup_directory)
    metrics = await executor.run(CLEANUP_JOB)

    assert not backup_tree["F1"].exists()
    assert not backup_tree["D1"].exists()
    assert all(backup_tree[k].exists() for k in ("F2", "D2", "F3", "L3"))
    assert metrics.files_affected == 2
    assert metrics.size_bytes == 20
    assert metrics.errors == []
    assert metrics.details["pruned_directories"] == 2
    assert not (tmp_path / "FULL" / "2024-01-01").exists()

    settings = await directory_store.get_settings(RetentionPolicy.KEYS)
    policy = RetentionPolicy.from_settings(settings)
    assert policy.last_run_status == "success"
    assert policy.last_run_message.startswith("Deleted 2 files")
    assert policy.last_run_at is not None


@pytest.mark.asyncio
async def test_cleanup_tolerates_per_file_errors(tmp_path, backup_tree, directory_store):
    executor = CleanupJobExecutor(directory_store, FlakyDirectory(tmp_path, locked=[backup_tree["F1"]]))

    with pytest.raises(PartialFailure) as exc_info:
        await executor.run(CLEANUP_JOB)

    metrics = exc_info.value.metrics
    assert metrics.files_affected == 1
    assert len(metrics.errors) == 1
    assert "is in use" in metrics.errors[0]
    assert backup_tree["F1"].exists()
    assert not backup_tree["D1"].exists()
    settings = await directory_store.get_settings(["cleanup_last_run_status"])
    assert settings["cleanup_last_run_status"] == "partial"


@pytest.mark.asyncio
async def test_cleanup_fails_before_deleting_when_listing_fails(tmp_path, backup_tree, directory_store):
    async def broken_listing(database_id=None):
        raise OSError("share not mounted")

    directory_store.list_backup_files = broken_listing
    executor = CleanupJobExecutor(directory_store, directory_store.backup_directory)

    with pytest.raises(ExecutionError, match="share not mounted"):
        await executor.run(CLEANUP_JOB)
    assert all(path.exists() for path in backup_tree.values())
    settings = await directory_store.get_settings(["cleanup_last_run_status"])
    assert settings["cleanup_last_run_status"] == "failed"


class VanishingDirectory(BackupDirectory):
    """Another process removes each file just before cleanup gets to it."""

    def __init__(self, root, vanishing):
        super().__init__(root)
        self.vanishing = {str(p) for p in vanishing}

    async def remove(self, path):
        if str(path) in self.vanishing:
            Path(path).unlink()
        await super().remove(path)


@pytest.mark.asyncio
async def test_cleanup_skips_files_already_removed(tmp_path, backup_tree, directory_store):
    executor = CleanupJobExecutor(directory_store, VanishingDirectory(tmp_path, vanishing=[backup_tree["F1"]]))

    metrics = await executor.run(CLEANUP_JOB)

    assert metrics.errors == []
    assert metrics.files_affected == 1
    assert metrics.details["already_missing"] == 1
    assert not backup_tree["D1"].exists()
    settings = await directory_store.get_settings(["cleanup_last_run_status"])
    assert settings["cleanup_last_run_status"] == "success"
