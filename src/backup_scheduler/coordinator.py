import asyncio
import logging
import threading
import time
from typing import Awaitable, Callable, Optional, Set, Union

from backup_scheduler.domain.job import ScheduledJob
from backup_scheduler.domain.run import JobRun, RunStatus, SkippedRun
from backup_scheduler.errors import PartialFailure
from backup_scheduler.executor_factory import JobExecutorFactory
from backup_scheduler.storages.protocol import JobStore

logger = logging.getLogger(__name__)

FailureHook = Callable[[JobRun, ScheduledJob], Awaitable[None]]


class ExecutionCoordinator:
    """
    Runs jobs through their executors with at most one run per job id.

    A second request for a job that is still running is skipped, not
    queued. Failures never propagate out of ``execute``; they are recorded
    on the JobRun instead.
    """

    def __init__(
        self,
        store: JobStore,
        executor_factory: JobExecutorFactory,
        on_failure: Optional[FailureHook] = None,
    ):
        self.store: JobStore = store
        self.executor_factory: JobExecutorFactory = executor_factory
        self.on_failure: Optional[FailureHook] = on_failure
        self._lock = threading.Lock()
        self._running: Set[str] = set()
        self._hook_tasks: Set[asyncio.Task] = set()

    def _try_acquire(self, job_id: str) -> bool:
        with self._lock:
            if job_id in self._running:
                return False
            self._running.add(job_id)
            return True

    def _release(self, job_id: str) -> None:
        with self._lock:
            self._running.discard(job_id)

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._running

    @property
    def running_jobs(self) -> Set[str]:
        with self._lock:
            return set(self._running)

    async def execute(self, job_id: str) -> Union[JobRun, SkippedRun]:
        """
        Run a job once.

        Returns:
            Union[JobRun, SkippedRun]: The finalized run, or a SkippedRun when
            the job is already running or no longer exists.
        """
        if not self._try_acquire(job_id):
            logger.warning(f"Job {job_id} is already running, skipping this execution")
            return SkippedRun(job_id=job_id)
        try:
            return await self._execute(job_id)
        finally:
            self._release(job_id)

    async def _execute(self, job_id: str) -> Union[JobRun, SkippedRun]:
        job = await self.store.get_job(job_id)
        if job is None:
            logger.warning(f"Job {job_id} no longer exists, skipping this execution")
            return SkippedRun(job_id=job_id, reason="job not found")

        run = JobRun(job_id=job.id, kind=job.kind)
        try:
            await self.store.create_run(run)
        except Exception as e:
            logger.error(f"Could not record run for job {job.id}", exc_info=True)
            run.finish(RunStatus.FAILED, error_message=f"Could not record run: {e}")
            self._notify_failure(run, job)
            return run

        logger.info(f"Starting {job.readable_string} as run {run.id}")
        started = time.monotonic()
        try:
            executor = self.executor_factory.get_executor(job.kind, job.options)
            metrics = await executor.run(job)
            if not metrics.duration_seconds:
                metrics.duration_seconds = time.monotonic() - started
            run.finish(RunStatus.SUCCESS, metrics=metrics)
        except PartialFailure as e:
            metrics = e.metrics
            if not metrics.duration_seconds:
                metrics.duration_seconds = time.monotonic() - started
            run.finish(RunStatus.PARTIAL, metrics=metrics, error_message=str(e))
        except asyncio.CancelledError:
            run.finish(RunStatus.FAILED, error_message="Run was cancelled")
        except Exception as e:
            run.finish(RunStatus.FAILED, error_message=str(e) or type(e).__name__)

        if run.status == RunStatus.FAILED:
            run.metrics.duration_seconds = time.monotonic() - started
            logger.error(f"Run {run.id} of job {job.id} failed: {run.error_message}")
        else:
            logger.info(f"Run {run.id} of job {job.id} finished as {run.status.value} in {run.metrics.duration_seconds:.1f}s")

        try:
            await self.store.finalize_run(run)
        except Exception:
            logger.error(f"Could not persist the outcome of run {run.id}", exc_info=True)

        if run.status == RunStatus.FAILED:
            self._notify_failure(run, job)
        return run

    def _notify_failure(self, run: JobRun, job: ScheduledJob) -> None:
        if self.on_failure is None:
            return
        task = asyncio.ensure_future(self.on_failure(run, job))
        self._hook_tasks.add(task)
        task.add_done_callback(self._hook_done)

    def _hook_done(self, task: asyncio.Task) -> None:
        self._hook_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Failure notification could not be delivered", exc_info=task.exception())

    async def drain(self) -> None:
        if self._hook_tasks:
            await asyncio.gather(*list(self._hook_tasks), return_exceptions=True)
