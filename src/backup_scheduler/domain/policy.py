import logging
from datetime import datetime, time
from enum import Enum
from typing import ClassVar, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

UNLIMITED_SETTING = "unlimited"


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() == "true"


def _parse_int(key: str, value: Optional[str], default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Setting '{key}' has non-integer value {value!r}, using {default}")
        return default


def _parse_float(key: str, value: Optional[str], default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Setting '{key}' has non-numeric value {value!r}, using {default}")
        return default


def _parse_limit(key: str, value: Optional[str], default: Optional[int]) -> Optional[int]:
    """
    A KB/s cap where ``"unlimited"`` (or an empty value with no default)
    means no cap and ``"0"`` means paused.
    """
    if value is None or value == "":
        return default
    if value.strip().lower() == UNLIMITED_SETTING:
        return None
    try:
        return max(0, int(value))
    except ValueError:
        logger.warning(f"Setting '{key}' has invalid limit {value!r}, using {default if default is not None else UNLIMITED_SETTING}")
        return default


def parse_time_of_day(value: str) -> time:
    """
    Parse an ``HH:MM`` (or bare ``HH``) setting into a time of day.
    """
    parts = value.strip().split(":")
    if not parts or len(parts) > 2 or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid time of day: {value!r}")
    hour = int(parts[0])
    minute = int(parts[1]) if len(parts) == 2 else 0
    return time(hour=hour, minute=minute)


def _parse_time(key: str, value: Optional[str], default: time) -> time:
    if value is None or value == "":
        return default
    try:
        return parse_time_of_day(value)
    except ValueError:
        logger.warning(f"Setting '{key}' has invalid time {value!r}, using {default:%H:%M}")
        return default


def daily_cron(at: time) -> str:
    return f"{at.minute} {at.hour} * * *"


class RetentionPolicy(BaseModel):
    """
    How many FULL/DIFF backup files each database keeps on local disk.
    """
    enabled: bool = False
    schedule: str = Field("0 6 * * 0", description="Cron expression for the cleanup job")
    keep_full_count: int = Field(2, ge=0)
    keep_diff_per_full: int = Field(1, ge=0)
    keep_orphan_diff: int = Field(0, ge=0)
    last_run_at: Optional[datetime] = None
    last_run_status: Optional[str] = None
    last_run_message: Optional[str] = None

    KEYS: ClassVar[Tuple[str, ...]] = (
        "cleanup_enabled",
        "cleanup_schedule",
        "cleanup_keep_full_count",
        "cleanup_keep_diff_per_full",
        "cleanup_keep_orphan_diff",
        "cleanup_last_run_at",
        "cleanup_last_run_status",
        "cleanup_last_run_message",
    )

    @classmethod
    def from_settings(cls, settings: Dict[str, str]) -> "RetentionPolicy":
        orphan_raw = settings.get("cleanup_keep_orphan_diff")
        # Older installations stored a boolean here.
        if orphan_raw is not None and orphan_raw.lower() in ("true", "false"):
            keep_orphan = 1_000_000 if orphan_raw.lower() == "true" else 0
        else:
            keep_orphan = _parse_int("cleanup_keep_orphan_diff", orphan_raw, 0)

        last_run_at = None
        if settings.get("cleanup_last_run_at"):
            try:
                last_run_at = datetime.fromisoformat(settings["cleanup_last_run_at"])
            except ValueError:
                logger.warning(f"Ignoring unparseable cleanup_last_run_at {settings['cleanup_last_run_at']!r}")

        return cls(
            enabled=_parse_bool(settings.get("cleanup_enabled"), False),
            schedule=settings.get("cleanup_schedule") or "0 6 * * 0",
            keep_full_count=max(0, _parse_int("cleanup_keep_full_count", settings.get("cleanup_keep_full_count"), 2)),
            keep_diff_per_full=max(0, _parse_int("cleanup_keep_diff_per_full", settings.get("cleanup_keep_diff_per_full"), 1)),
            keep_orphan_diff=max(0, keep_orphan),
            last_run_at=last_run_at,
            last_run_status=settings.get("cleanup_last_run_status") or None,
            last_run_message=settings.get("cleanup_last_run_message") or None,
        )

    def to_settings(self) -> Dict[str, str]:
        """
        Operator-editable keys only; the last-run fields are written by the cleanup job.
        """
        return {
            "cleanup_enabled": str(self.enabled).lower(),
            "cleanup_schedule": self.schedule,
            "cleanup_keep_full_count": str(self.keep_full_count),
            "cleanup_keep_diff_per_full": str(self.keep_diff_per_full),
            "cleanup_keep_orphan_diff": str(self.keep_orphan_diff),
        }


class BandwidthPolicy(BaseModel):
    """
    Time-of-day transfer rate caps for remote sync, in KB/s.
    """
    enabled: bool = True
    peak_limit_kbs: int = Field(5000, ge=0)
    offpeak_limit_kbs: Optional[int] = Field(None, ge=0, description="None leaves off-peak transfers unthrottled")
    peak_start: time = time(8, 0)
    peak_end: time = time(20, 0)
    weekend_unlimited: bool = True

    KEYS: ClassVar[Tuple[str, ...]] = (
        "sync_bandwidth_enabled",
        "sync_bandwidth_peak_limit",
        "sync_bandwidth_offpeak_limit",
        "sync_bandwidth_peak_start",
        "sync_bandwidth_peak_end",
        "sync_bandwidth_weekend_unlimited",
    )

    @classmethod
    def from_settings(cls, settings: Dict[str, str]) -> "BandwidthPolicy":
        return cls(
            enabled=_parse_bool(settings.get("sync_bandwidth_enabled"), True),
            peak_limit_kbs=max(0, _parse_int("sync_bandwidth_peak_limit", settings.get("sync_bandwidth_peak_limit"), 5000)),
            offpeak_limit_kbs=_parse_limit("sync_bandwidth_offpeak_limit", settings.get("sync_bandwidth_offpeak_limit"), None),
            peak_start=_parse_time("sync_bandwidth_peak_start", settings.get("sync_bandwidth_peak_start"), time(8, 0)),
            peak_end=_parse_time("sync_bandwidth_peak_end", settings.get("sync_bandwidth_peak_end"), time(20, 0)),
            weekend_unlimited=_parse_bool(settings.get("sync_bandwidth_weekend_unlimited"), True),
        )

    def to_settings(self) -> Dict[str, str]:
        return {
            "sync_bandwidth_enabled": str(self.enabled).lower(),
            "sync_bandwidth_peak_limit": str(self.peak_limit_kbs),
            "sync_bandwidth_offpeak_limit": UNLIMITED_SETTING if self.offpeak_limit_kbs is None else str(self.offpeak_limit_kbs),
            "sync_bandwidth_peak_start": self.peak_start.strftime("%H:%M"),
            "sync_bandwidth_peak_end": self.peak_end.strftime("%H:%M"),
            "sync_bandwidth_weekend_unlimited": str(self.weekend_unlimited).lower(),
        }


class SyncMode(str, Enum):
    SCHEDULED = "scheduled"
    AFTER_BACKUPS = "after_backups"
    MANUAL = "manual"


class SyncSettings(BaseModel):
    """
    When remote sync runs: at a fixed daily time, a buffer after the last
    backup completes, or only on demand.
    """
    enabled: bool = True
    mode: SyncMode = SyncMode.AFTER_BACKUPS
    sync_time: time = time(6, 0)
    buffer_minutes: float = Field(30, ge=0)

    KEYS: ClassVar[Tuple[str, ...]] = ("sync_enabled", "sync_mode", "sync_time", "sync_buffer_minutes")

    @classmethod
    def from_settings(cls, settings: Dict[str, str]) -> "SyncSettings":
        raw_mode = settings.get("sync_mode") or SyncMode.AFTER_BACKUPS.value
        try:
            mode = SyncMode(raw_mode)
        except ValueError:
            logger.warning(f"Unknown sync mode {raw_mode!r}, using after_backups")
            mode = SyncMode.AFTER_BACKUPS
        return cls(
            enabled=_parse_bool(settings.get("sync_enabled"), True),
            mode=mode,
            sync_time=_parse_time("sync_time", settings.get("sync_time"), time(6, 0)),
            buffer_minutes=max(0.0, _parse_float("sync_buffer_minutes", settings.get("sync_buffer_minutes"), 30)),
        )

    def to_settings(self) -> Dict[str, str]:
        buffer = int(self.buffer_minutes) if float(self.buffer_minutes).is_integer() else self.buffer_minutes
        return {
            "sync_enabled": str(self.enabled).lower(),
            "sync_mode": self.mode.value,
            "sync_time": self.sync_time.strftime("%H:%M"),
            "sync_buffer_minutes": str(buffer),
        }


class NotificationSettings(BaseModel):
    daily_summary_enabled: bool = True
    summary_time: time = time(8, 0)
    failure_alerts_enabled: bool = True

    KEYS: ClassVar[Tuple[str, ...]] = ("daily_summary_enabled", "summary_time", "failure_alerts_enabled")

    @classmethod
    def from_settings(cls, settings: Dict[str, str]) -> "NotificationSettings":
        return cls(
            daily_summary_enabled=_parse_bool(settings.get("daily_summary_enabled"), True),
            summary_time=_parse_time("summary_time", settings.get("summary_time"), time(8, 0)),
            failure_alerts_enabled=_parse_bool(settings.get("failure_alerts_enabled"), True),
        )

    def to_settings(self) -> Dict[str, str]:
        return {
            "daily_summary_enabled": str(self.daily_summary_enabled).lower(),
            "summary_time": self.summary_time.strftime("%H:%M"),
            "failure_alerts_enabled": str(self.failure_alerts_enabled).lower(),
        }


class DailySummary(BaseModel):
    """
    Aggregated run history for one calendar day.
    """
    date: str
    total_runs: int = 0
    success_count: int = 0
    failed_count: int = 0
    partial_count: int = 0
    running_count: int = 0
    runs_by_kind: Dict[str, int] = Field(default_factory=dict)
    failed_runs: List[str] = Field(default_factory=list, description="Ids of failed runs")
    total_backup_bytes: int = 0
    average_duration_seconds: float = 0.0
