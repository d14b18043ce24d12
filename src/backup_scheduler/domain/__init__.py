from .job import ScheduledJob, JobKind, BackupType, MaintenanceType
from .run import JobRun, RunStatus, RunMetrics, SkippedRun
from .files import BackupFile
from .policy import (
    RetentionPolicy,
    BandwidthPolicy,
    SyncMode,
    SyncSettings,
    NotificationSettings,
    DailySummary,
)

__all__ = [
    "ScheduledJob", "JobKind", "BackupType", "MaintenanceType",
    "JobRun", "RunStatus", "RunMetrics", "SkippedRun",
    "BackupFile",
    "RetentionPolicy", "BandwidthPolicy", "SyncMode", "SyncSettings", "NotificationSettings", "DailySummary",
]
