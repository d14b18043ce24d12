from datetime import date, datetime, timezone
from pathlib import Path

import pytest

from backup_scheduler.domain.job import BackupType
from backup_scheduler.storages.filesystem import BackupDirectory, parse_file_name


def write_backup(root: Path, relative: str, size: int = 10) -> Path:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return path


def test_parse_current_file_name():
    parsed = parse_file_name("Sales_DB_DIFF_20240312_013045.bak", date(2024, 3, 1))
    assert parsed.database_id == "Sales_DB"
    assert parsed.backup_type == BackupType.DIFF
    assert parsed.created_at == datetime(2024, 3, 12, 1, 30, 45, tzinfo=timezone.utc)


def test_parse_legacy_file_name_uses_folder_date():
    parsed = parse_file_name("hr_full_220000.bak", date(2024, 3, 1))
    assert parsed.database_id == "hr"
    assert parsed.backup_type == BackupType.FULL
    assert parsed.created_at == datetime(2024, 3, 1, 22, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("name", ["notes.txt.bak", "sales_FULL.bak", "sales_FULL_20241399_010000.bak", "sales_INCR_010000.bak"])
def test_unparseable_names_are_ignored(name):
    assert parse_file_name(name, date(2024, 3, 1)) is None


@pytest.mark.asyncio
async def test_scan_lists_backups_newest_first(tmp_path: Path):
    write_backup(tmp_path, "FULL/2024-03-01/sales_FULL_20240301_010000.bak", size=100)
    write_backup(tmp_path, "DIFF/2024-03-02/sales_DIFF_20240302_010000.bak")
    write_backup(tmp_path, "LOG/2024-03-02/hr_LOG_013000.bak")
    write_backup(tmp_path, "FULL/not-a-date/sales_FULL_20240301_020000.bak")
    write_backup(tmp_path, "FULL/2024-03-01/readme.txt")

    files = await BackupDirectory(tmp_path).scan()

    assert [f.file_name for f in files] == [
        "hr_LOG_013000.bak",
        "sales_DIFF_20240302_010000.bak",
        "sales_FULL_20240301_010000.bak",
    ]
    assert files[-1].size_bytes == 100
    assert files[-1].path == str(tmp_path / "FULL" / "2024-03-01" / "sales_FULL_20240301_010000.bak")


@pytest.mark.asyncio
async def test_scan_filters_by_database(tmp_path: Path):
    write_backup(tmp_path, "FULL/2024-03-01/sales_FULL_20240301_010000.bak")
    write_backup(tmp_path, "FULL/2024-03-01/hr_FULL_20240301_010000.bak")

    files = await BackupDirectory(tmp_path).scan("hr")
    assert [f.database_id for f in files] == ["hr"]


@pytest.mark.asyncio
async def test_scan_missing_root(tmp_path: Path):
    assert await BackupDirectory(tmp_path / "missing").scan() == []


@pytest.mark.asyncio
async def test_remove_and_prune(tmp_path: Path):
    path = write_backup(tmp_path, "FULL/2024-03-01/sales_FULL_20240301_010000.bak")
    write_backup(tmp_path, "FULL/2024-03-02/sales_FULL_20240302_010000.bak")
    directory = BackupDirectory(tmp_path)

    await directory.remove(path)
    assert not path.exists()
    assert await directory.prune_empty_dirs() == 1
    assert not (tmp_path / "FULL" / "2024-03-01").exists()
    assert (tmp_path / "FULL" / "2024-03-02").exists()


@pytest.mark.asyncio
async def test_remove_refuses_paths_outside_root(tmp_path: Path):
    outside = write_backup(tmp_path, "elsewhere/sales_FULL_20240301_010000.bak")
    directory = BackupDirectory(tmp_path / "backups")

    with pytest.raises(ValueError, match="outside backup directory"):
        await directory.remove(outside)
    assert outside.exists()
