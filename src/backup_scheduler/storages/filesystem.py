"""
Local backup directory layout.

Backups live under ``<root>/<FULL|DIFF|LOG>/<YYYY-MM-DD>/`` and are named
``<database>_<TYPE>_<YYYYMMDD>_<HHMMSS>.bak``. Older files are named
``<database>_<TYPE>_<HHMMSS>.bak`` and take their date from the folder.
"""
import asyncio
import logging
import re
from datetime import date, datetime, timezone, tzinfo
from pathlib import Path
from typing import List, Optional, Union

from backup_scheduler.domain.files import BackupFile
from backup_scheduler.domain.job import BackupType

logger = logging.getLogger(__name__)

FILE_NAME = re.compile(r"^(?P<database>.+)_(?P<type>FULL|DIFF|LOG)_(?P<date>\d{8})_(?P<time>\d{6})\.bak$", re.IGNORECASE)
LEGACY_FILE_NAME = re.compile(r"^(?P<database>.+)_(?P<type>FULL|DIFF|LOG)_(?P<time>\d{6})\.bak$", re.IGNORECASE)


def parse_file_name(name: str, folder_date: date, tz: tzinfo = timezone.utc) -> Optional[BackupFile]:
    """
    Parse a backup file name into a BackupFile with an empty path and size.

    Returns None for names that do not follow either naming scheme or carry
    an impossible date or time.
    """
    match = FILE_NAME.match(name) or LEGACY_FILE_NAME.match(name)
    if not match:
        return None
    groups = match.groupdict()
    raw_date = groups.get("date") or folder_date.strftime("%Y%m%d")
    try:
        created_at = datetime.strptime(raw_date + groups["time"], "%Y%m%d%H%M%S").replace(tzinfo=tz)
    except ValueError:
        logger.debug(f"Ignoring backup file with invalid timestamp: {name}")
        return None
    return BackupFile(
        path=name,
        database_id=groups["database"],
        backup_type=BackupType(groups["type"].upper()),
        created_at=created_at,
    )


class BackupDirectory:
    """
    Scans, deletes and tidies backup files under one root directory.
    Blocking filesystem work runs in a worker thread.
    """

    def __init__(self, root: Union[str, Path], tz: tzinfo = timezone.utc):
        self.root = Path(root)
        self.tz = tz

    def _date_folders(self):
        for backup_type in BackupType:
            type_path = self.root / backup_type.value
            if not type_path.is_dir():
                continue
            for folder in sorted(type_path.iterdir()):
                if not folder.is_dir():
                    continue
                try:
                    folder_date = date.fromisoformat(folder.name)
                except ValueError:
                    continue
                yield folder, folder_date

    def scan_sync(self, database_id: Optional[str] = None) -> List[BackupFile]:
        files: List[BackupFile] = []
        if not self.root.is_dir():
            logger.warning(f"Backup directory {self.root} does not exist")
            return files

        for folder, folder_date in self._date_folders():
            for entry in sorted(folder.iterdir()):
                if not entry.is_file() or entry.suffix.lower() != ".bak":
                    continue
                parsed = parse_file_name(entry.name, folder_date, self.tz)
                if parsed is None:
                    continue
                if database_id is not None and parsed.database_id != database_id:
                    continue
                files.append(parsed.model_copy(update={
                    "path": str(entry),
                    "size_bytes": entry.stat().st_size,
                }))

        files.sort(key=lambda f: (f.created_at, f.path), reverse=True)
        return files

    async def scan(self, database_id: Optional[str] = None) -> List[BackupFile]:
        """
        List backup files, newest first.
        """
        return await asyncio.to_thread(self.scan_sync, database_id)

    def _resolve_inside_root(self, path: Union[str, Path]) -> Path:
        resolved = Path(path).resolve()
        if not resolved.is_relative_to(self.root.resolve()):
            raise ValueError(f"Refusing to touch {path}: outside backup directory {self.root}")
        return resolved

    async def remove(self, path: Union[str, Path]) -> None:
        """
        Delete one backup file. Raises OSError if it cannot be removed.
        """
        target = self._resolve_inside_root(path)
        await asyncio.to_thread(target.unlink)
        logger.info(f"Deleted backup file {target}")

    def prune_empty_dirs_sync(self) -> int:
        removed = 0
        if not self.root.is_dir():
            return removed
        for folder, _ in list(self._date_folders()):
            if any(folder.iterdir()):
                continue
            try:
                folder.rmdir()
                removed += 1
                logger.info(f"Removed empty directory {folder}")
            except OSError:
                logger.warning(f"Could not remove empty directory {folder}", exc_info=True)
        return removed

    async def prune_empty_dirs(self) -> int:
        """
        Remove date folders left empty after a cleanup. Returns how many were removed.
        """
        return await asyncio.to_thread(self.prune_empty_dirs_sync)
