"""
Bandwidth throttling for remote sync and the "after backups" sync trigger.
"""
import asyncio
import logging
import threading
from datetime import datetime, time, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Set

from backup_scheduler.domain.policy import BandwidthPolicy, SyncMode, SyncSettings

logger = logging.getLogger(__name__)

# Returned by effective_limit when transfers must not be throttled.
UNLIMITED = None


def in_peak_window(at: time, start: time, end: time) -> bool:
    """
    Whether ``at`` falls in ``[start, end)``. A window whose start is after
    its end wraps past midnight.
    """
    at = at.replace(second=0, microsecond=0, tzinfo=None)
    if start == end:
        return False
    if start < end:
        return start <= at < end
    return at >= start or at < end


def effective_limit(now: datetime, policy: BandwidthPolicy) -> Optional[int]:
    """
    The transfer cap in KB/s that applies at ``now``, or ``UNLIMITED``.

    ``now`` must already be expressed in the local time the peak window is
    defined in. A configured limit of 0 is returned as 0 (paused), which is
    different from ``UNLIMITED``.
    """
    if not policy.enabled:
        return UNLIMITED
    if now.weekday() >= 5 and policy.weekend_unlimited:
        return UNLIMITED
    if in_peak_window(now.time(), policy.peak_start, policy.peak_end):
        return policy.peak_limit_kbs
    return policy.offpeak_limit_kbs


def describe_limit(limit: Optional[int]) -> str:
    if limit is UNLIMITED:
        return "unlimited"
    if limit == 0:
        return "paused (0 KB/s)"
    return f"{limit} KB/s ({limit / 1024:.1f} MB/s)"


class SyncTrigger:
    """
    Debounces backup completions into a single sync fire.

    Each completion re-arms one timer for ``last completion + buffer``,
    replacing whatever was pending, so a burst of completions inside the
    buffer produces exactly one sync.
    """

    def __init__(
        self,
        load_settings: Callable[[], Awaitable[SyncSettings]],
        fire: Callable[[], Awaitable[Any]],
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._load_settings = load_settings
        self._fire = fire
        self._clock = clock
        self._lock = threading.Lock()
        self._handle: Optional[asyncio.TimerHandle] = None
        self._fire_tasks: Set[asyncio.Task] = set()
        self.last_completed_at: Optional[datetime] = None
        self.pending_fire_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self._handle is not None

    async def on_backup_completed(self, timestamp: Optional[datetime] = None) -> Optional[datetime]:
        """
        Record a backup completion and, in ``after_backups`` mode, push the
        pending sync out to ``timestamp + buffer``.

        Returns:
            Optional[datetime]: When the sync is now due, or None if this
            completion does not arm anything.
        """
        timestamp = timestamp or self._clock()
        with self._lock:
            if self.last_completed_at is None or timestamp > self.last_completed_at:
                self.last_completed_at = timestamp
            latest = self.last_completed_at

        settings = await self._load_settings()
        if not settings.enabled or settings.mode != SyncMode.AFTER_BACKUPS:
            return None

        fire_at = latest + timedelta(minutes=settings.buffer_minutes)
        self._arm(fire_at)
        logger.info(f"Backup completed at {timestamp.isoformat()}, sync due at {fire_at.isoformat()}")
        return fire_at

    def _arm(self, fire_at: datetime) -> None:
        loop = asyncio.get_running_loop()
        delay = max(0.0, (fire_at - self._clock()).total_seconds())
        with self._lock:
            if self._handle is not None:
                self._handle.cancel()
            self._handle = loop.call_later(delay, self._on_timer)
            self.pending_fire_at = fire_at

    def _on_timer(self) -> None:
        with self._lock:
            self._handle = None
            self.pending_fire_at = None
        logger.info("Sync buffer elapsed, starting sync")
        task = asyncio.ensure_future(self._fire())
        self._fire_tasks.add(task)
        task.add_done_callback(self._fire_done)

    def _fire_done(self, task: asyncio.Task) -> None:
        self._fire_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Debounced sync failed", exc_info=task.exception())

    def cancel(self) -> None:
        with self._lock:
            if self._handle is not None:
                self._handle.cancel()
                logger.info("Pending debounced sync cancelled")
            self._handle = None
            self.pending_fire_at = None

    async def drain(self) -> None:
        """
        Wait for a sync that the debounce timer already started.
        """
        if self._fire_tasks:
            await asyncio.gather(*list(self._fire_tasks), return_exceptions=True)
