from typing import Dict, Type

from pydantic import BaseModel, ConfigDict, Field

from backup_scheduler.domain.job import BackupType, JobKind, MaintenanceType


class BackupOptions(BaseModel):
    backup_type: BackupType = Field(BackupType.FULL, description="FULL, DIFF or LOG")


class MaintenanceOptions(BaseModel):
    model_config = ConfigDict(extra="allow")

    maintenance_type: MaintenanceType = Field(MaintenanceType.INDEX, description="INDEX, INTEGRITY or STATS")


class NoOptions(BaseModel):
    pass


DEFAULT_OPTION_SCHEMAS: Dict[JobKind, Type[BaseModel]] = {
    JobKind.BACKUP: BackupOptions,
    JobKind.MAINTENANCE: MaintenanceOptions,
    JobKind.SYNC: NoOptions,
    JobKind.CLEANUP: NoOptions,
    JobKind.SUMMARY: NoOptions,
}
