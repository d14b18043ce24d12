import asyncio
import logging
import threading
from datetime import datetime, timezone, tzinfo
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel

from backup_scheduler import cron
from backup_scheduler.domain.job import ScheduledJob
from backup_scheduler.errors import FatalSchedulerError, JobValidationError

logger = logging.getLogger(__name__)


class ScheduleStatus(BaseModel):
    job_id: str
    scheduled: bool
    cron_expression: Optional[str] = None
    resource_key: Optional[str] = None
    next_fire_at: Optional[datetime] = None
    reason: Optional[str] = None


class _Entry:
    __slots__ = ("job_id", "cron_expression", "resource_key", "fire_at", "handle")

    def __init__(self, job_id: str, cron_expression: str, resource_key: Optional[str],
                 fire_at: datetime, handle: asyncio.TimerHandle):
        self.job_id = job_id
        self.cron_expression = cron_expression
        self.resource_key = resource_key
        self.fire_at = fire_at
        self.handle = handle


class ScheduleRegistry:
    """
    Keeps one single-shot timer per scheduled job.

    When a timer fires the next occurrence is armed straight away and the
    job is handed to ``dispatch`` as its own asyncio task, so a slow run
    never delays the computation of its next fire. The registry starts
    empty; the owner is expected to register every enabled job on start
    and call ``shutdown`` on teardown.
    """

    def __init__(
        self,
        dispatch: Callable[[str], Awaitable[Any]],
        tz: tzinfo = timezone.utc,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._dispatch = dispatch
        self._tz = tz
        self._clock = clock
        self._lock = threading.RLock()
        self._entries: Dict[str, _Entry] = {}
        self._unschedulable: Dict[str, str] = {}
        self._inflight: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _now(self) -> datetime:
        return self._clock().astimezone(self._tz)

    def _arm(self, job_id: str, fire_at: datetime) -> asyncio.TimerHandle:
        delay = max(0.0, (fire_at - self._clock()).total_seconds())
        return self._loop.call_later(delay, self._on_fire, job_id, fire_at)

    def register(self, job: ScheduledJob) -> Optional[datetime]:
        """
        Arm (or re-arm) the timer for a job. Disabled jobs are unregistered.

        Returns:
            Optional[datetime]: The next fire time, or None for disabled jobs.

        Raises:
            JobValidationError: If the cron expression is invalid. Nothing is
                armed in that case and any previous timer stays cancelled.
        """
        if not job.enabled:
            self.unregister(job.id)
            job.next_fire_at = None
            return None

        try:
            expression = cron.validate(job.cron_expression)
            fire_at = cron.next_fire_time(expression, self._now())
        except JobValidationError:
            self.unregister(job.id)
            job.next_fire_at = None
            raise

        with self._lock:
            self._loop = asyncio.get_running_loop()
            existing = self._entries.pop(job.id, None)
            if existing is not None:
                existing.handle.cancel()
            handle = self._arm(job.id, fire_at)
            self._entries[job.id] = _Entry(job.id, expression, job.resource_key, fire_at, handle)
            self._unschedulable.pop(job.id, None)

        job.next_fire_at = fire_at
        logger.info(f"Scheduled {job.kind.value} job {job.id} with cron '{expression}', next fire at {fire_at.isoformat()}")
        return fire_at

    def unregister(self, job_id: str) -> bool:
        with self._lock:
            self._unschedulable.pop(job_id, None)
            entry = self._entries.pop(job_id, None)
            if entry is None:
                return False
            entry.handle.cancel()
        logger.info(f"Unscheduled job {job_id}")
        return True

    def mark_unschedulable(self, job_id: str, reason: str) -> None:
        """
        Record that a job cannot be armed, cancelling any timer it had.
        """
        with self._lock:
            entry = self._entries.pop(job_id, None)
            if entry is not None:
                entry.handle.cancel()
            self._unschedulable[job_id] = reason
        logger.error(str(FatalSchedulerError(job_id, reason)))

    def is_scheduled(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._entries

    def list_scheduled(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def next_fire_at(self, job_id: str) -> Optional[datetime]:
        with self._lock:
            entry = self._entries.get(job_id)
            return entry.fire_at if entry else None

    def status(self, job_id: str) -> ScheduleStatus:
        with self._lock:
            entry = self._entries.get(job_id)
            if entry is not None:
                return ScheduleStatus(
                    job_id=job_id,
                    scheduled=True,
                    cron_expression=entry.cron_expression,
                    resource_key=entry.resource_key,
                    next_fire_at=entry.fire_at,
                )
            return ScheduleStatus(job_id=job_id, scheduled=False, reason=self._unschedulable.get(job_id))

    def _on_fire(self, job_id: str, fired_for: datetime) -> None:
        with self._lock:
            entry = self._entries.get(job_id)
            if entry is None or entry.fire_at != fired_for:
                return
            try:
                entry.fire_at = cron.next_fire_time(entry.cron_expression, max(self._now(), fired_for))
                entry.handle = self._arm(job_id, entry.fire_at)
            except JobValidationError as e:
                del self._entries[job_id]
                self._unschedulable[job_id] = str(e)
                logger.error(str(FatalSchedulerError(job_id, str(e))))

        logger.info(f"Firing job {job_id} (scheduled for {fired_for.isoformat()})")
        task = self._loop.create_task(self._dispatch(job_id))
        self._inflight.add(task)
        task.add_done_callback(self._dispatch_done)

    def _dispatch_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Dispatch of a scheduled job failed", exc_info=task.exception())

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def drain(self) -> None:
        """
        Wait for every dispatched run to finish.
        """
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def shutdown(self) -> int:
        """
        Cancel every outstanding timer and forget all entries.
        """
        with self._lock:
            count = len(self._entries)
            for entry in self._entries.values():
                entry.handle.cancel()
            self._entries.clear()
            self._unschedulable.clear()
        logger.info(f"Schedule registry shut down, {count} timers cancelled")
        return count
