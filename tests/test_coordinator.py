import asyncio
from typing import Optional

import pytest
import pytest_asyncio

from backup_scheduler.coordinator import ExecutionCoordinator
from backup_scheduler.domain.job import JobKind, ScheduledJob
from backup_scheduler.domain.run import JobRun, RunMetrics, RunStatus, SkippedRun
from backup_scheduler.errors import ExecutionError, PartialFailure
from backup_scheduler.executor_factory import JobExecutorFactory
from backup_scheduler.executors.protocol import JobExecutor


class ControlledExecutor(JobExecutor):
    def __init__(self):
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[Exception] = None
        self.calls = 0

    @staticmethod
    def supported_kind() -> JobKind:
        return JobKind.BACKUP

    async def run(self, job: ScheduledJob) -> RunMetrics:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return RunMetrics(duration_seconds=1.0, size_bytes=10)


@pytest.fixture
def executor() -> ControlledExecutor:
    return ControlledExecutor()


@pytest.fixture
def failures():
    return []


@pytest_asyncio.fixture
async def coordinator(store, executor, failures):
    factory = JobExecutorFactory()
    factory.register(executor)

    async def on_failure(run: JobRun, job: ScheduledJob):
        failures.append(run)

    return ExecutionCoordinator(store, factory, on_failure=on_failure)


@pytest_asyncio.fixture
async def job(store) -> ScheduledJob:
    job = ScheduledJob(id="job_backup", kind=JobKind.BACKUP, cron_expression="0 2 * * *", resource_key="sales")
    await store.create_job(job)
    return job


@pytest.mark.asyncio
async def test_success_is_recorded(coordinator, store, job):
    run = await coordinator.execute(job.id)

    assert isinstance(run, JobRun)
    assert run.status == RunStatus.SUCCESS
    assert run.metrics.size_bytes == 10
    stored = await store.get_run(run.id)
    assert stored.status == RunStatus.SUCCESS
    assert stored.completed_at is not None
    assert not coordinator.is_running(job.id)


@pytest.mark.asyncio
async def test_second_request_is_skipped_while_running(coordinator, executor, store, job):
    executor.gate = asyncio.Event()
    first = asyncio.create_task(coordinator.execute(job.id))
    await asyncio.sleep(0.05)

    second = await coordinator.execute(job.id)
    assert isinstance(second, SkippedRun)
    assert second.reason == "already running"

    executor.gate.set()
    first_run = await first
    assert first_run.status == RunStatus.SUCCESS
    assert executor.calls == 1
    assert len(await store.list_runs(job.id)) == 1


@pytest.mark.asyncio
async def test_concurrent_requests_run_at_most_once(coordinator, executor, job):
    executor.gate = asyncio.Event()
    tasks = [asyncio.create_task(coordinator.execute(job.id)) for _ in range(10)]
    await asyncio.sleep(0.05)
    executor.gate.set()
    results = await asyncio.gather(*tasks)

    assert sum(isinstance(r, JobRun) for r in results) == 1
    assert sum(isinstance(r, SkippedRun) for r in results) == 9


@pytest.mark.asyncio
async def test_distinct_jobs_on_same_database_run_in_parallel(coordinator, executor, store, job):
    other = ScheduledJob(id="job_backup_diff", kind=JobKind.BACKUP, cron_expression="0 3 * * *",
                         resource_key="sales", options={"backup_type": "DIFF"})
    await store.create_job(other)
    executor.gate = asyncio.Event()

    tasks = [asyncio.create_task(coordinator.execute(job.id)), asyncio.create_task(coordinator.execute(other.id))]
    await asyncio.sleep(0.05)
    assert coordinator.running_jobs == {job.id, other.id}
    executor.gate.set()
    results = await asyncio.gather(*tasks)
    assert all(r.status == RunStatus.SUCCESS for r in results)


@pytest.mark.asyncio
async def test_failure_is_recorded_and_released(coordinator, executor, store, job, failures):
    executor.error = ExecutionError("disk full")
    run = await coordinator.execute(job.id)
    await coordinator.drain()

    assert run.status == RunStatus.FAILED
    assert run.error_message == "disk full"
    assert (await store.get_run(run.id)).status == RunStatus.FAILED
    assert not coordinator.is_running(job.id)
    assert [r.id for r in failures] == [run.id]

    executor.error = None
    assert (await coordinator.execute(job.id)).status == RunStatus.SUCCESS


@pytest.mark.asyncio
async def test_unexpected_exception_never_escapes(coordinator, executor, job):
    executor.error = RuntimeError()
    run = await coordinator.execute(job.id)
    assert run.status == RunStatus.FAILED
    assert run.error_message == "RuntimeError"


@pytest.mark.asyncio
async def test_partial_failure_keeps_metrics(coordinator, executor, job, failures):
    executor.error = PartialFailure("1 of 3 files failed", RunMetrics(files_affected=2, errors=["a.bak: locked"]))
    run = await coordinator.execute(job.id)
    await coordinator.drain()

    assert run.status == RunStatus.PARTIAL
    assert run.metrics.files_affected == 2
    assert run.metrics.errors == ["a.bak: locked"]
    assert failures == []


@pytest.mark.asyncio
async def test_missing_job_is_skipped(coordinator):
    result = await coordinator.execute("job_missing")
    assert isinstance(result, SkippedRun)
    assert result.reason == "job not found"


@pytest.mark.asyncio
async def test_unregistered_kind_fails_the_run(coordinator, store):
    job = ScheduledJob(id="job_sync", kind=JobKind.SYNC, cron_expression="0 6 * * *")
    await store.create_job(job)
    run = await coordinator.execute(job.id)
    assert run.status == RunStatus.FAILED
    assert "No executor registered for kind 'sync'" in run.error_message
