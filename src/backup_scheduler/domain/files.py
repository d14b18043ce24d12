from datetime import datetime

from pydantic import BaseModel, Field

from .job import BackupType

BYTES_PER_MB = 1024 * 1024


class BackupFile(BaseModel):
    """
    A backup file found on local disk.
    """
    path: str = Field(..., description="Absolute path of the backup file")
    database_id: str = Field(..., description="Database the backup belongs to")
    backup_type: BackupType
    created_at: datetime = Field(..., description="When the backup was taken")
    size_bytes: int = Field(0, ge=0)

    @property
    def size_mb(self) -> float:
        return self.size_bytes / BYTES_PER_MB

    @property
    def file_name(self) -> str:
        return self.path.replace("\\", "/").rsplit("/", 1)[-1]
