import asyncio
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from backup_scheduler.domain.job import JobKind, ScheduledJob
from backup_scheduler.errors import JobValidationError
from backup_scheduler.registry import ScheduleRegistry

# 50ms before a minute boundary, so "* * * * *" fires almost immediately.
JUST_BEFORE_MINUTE = datetime(2024, 3, 12, 10, 0, 59, 950000, tzinfo=timezone.utc)


class ManualClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_job(job_id: str = "job_1", cron_expression: str = "* * * * *", **kwargs) -> ScheduledJob:
    return ScheduledJob(id=job_id, kind=JobKind.BACKUP, cron_expression=cron_expression, resource_key="sales", **kwargs)


@pytest.fixture
def dispatched():
    return []


@pytest.fixture
def registry(dispatched):
    async def dispatch(job_id: str):
        dispatched.append(job_id)

    registry = ScheduleRegistry(dispatch, clock=ManualClock(JUST_BEFORE_MINUTE))
    yield registry
    registry.shutdown()


@pytest.mark.asyncio
async def test_register_sets_next_fire(registry: ScheduleRegistry):
    job = make_job(cron_expression="0 2 * * *")
    fire_at = registry.register(job)

    assert fire_at == datetime(2024, 3, 13, 2, 0, tzinfo=timezone.utc)
    assert job.next_fire_at == fire_at
    assert registry.list_scheduled() == ["job_1"]
    status = registry.status("job_1")
    assert status.scheduled and status.next_fire_at == fire_at and status.resource_key == "sales"


@pytest.mark.asyncio
async def test_invalid_cron_is_never_armed(registry: ScheduleRegistry):
    job = make_job(cron_expression="61 * * * *")
    with pytest.raises(JobValidationError):
        registry.register(job)
    assert registry.list_scheduled() == []
    assert job.next_fire_at is None


@pytest.mark.asyncio
async def test_disabled_job_is_unregistered(registry: ScheduleRegistry):
    job = make_job()
    registry.register(job)
    job.disable()

    assert registry.register(job) is None
    assert not registry.is_scheduled(job.id)
    assert job.next_fire_at is None


@pytest.mark.asyncio
async def test_reregister_replaces_timer(registry: ScheduleRegistry):
    job = make_job(cron_expression="0 2 * * *")
    registry.register(job)
    job.cron_expression = "30 3 * * *"
    registry.register(job)

    assert registry.list_scheduled() == ["job_1"]
    assert registry.next_fire_at("job_1") == datetime(2024, 3, 13, 3, 30, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_fire_dispatches_and_rearms(registry: ScheduleRegistry, dispatched):
    registry.register(make_job())
    await asyncio.sleep(0.2)
    await registry.drain()

    assert dispatched == ["job_1"]
    assert registry.next_fire_at("job_1") == datetime(2024, 3, 12, 10, 2, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_slow_dispatch_does_not_block_rearm(dispatched):
    release = asyncio.Event()

    async def dispatch(job_id: str):
        dispatched.append(job_id)
        await release.wait()

    registry = ScheduleRegistry(dispatch, clock=ManualClock(JUST_BEFORE_MINUTE))
    registry.register(make_job())
    await asyncio.sleep(0.2)

    assert dispatched == ["job_1"]
    assert registry.inflight_count == 1
    assert registry.next_fire_at("job_1") == datetime(2024, 3, 12, 10, 2, tzinfo=timezone.utc)

    release.set()
    await registry.drain()
    assert registry.inflight_count == 0
    registry.shutdown()


@pytest.mark.asyncio
async def test_unregister_cancels_timer(registry: ScheduleRegistry, dispatched):
    registry.register(make_job())
    assert registry.unregister("job_1")
    assert not registry.unregister("job_1")
    await asyncio.sleep(0.2)
    assert dispatched == []


@pytest.mark.asyncio
async def test_shutdown_cancels_everything(registry: ScheduleRegistry, dispatched):
    registry.register(make_job("a"))
    registry.register(make_job("b"))
    assert registry.shutdown() == 2
    await asyncio.sleep(0.2)
    assert dispatched == []
    assert registry.list_scheduled() == []


@pytest.mark.asyncio
async def test_mark_unschedulable_reports_reason(registry: ScheduleRegistry):
    registry.register(make_job())
    registry.mark_unschedulable("job_1", "bad cron")

    status = registry.status("job_1")
    assert not status.scheduled
    assert status.reason == "bad cron"
    assert registry.list_scheduled() == []


@pytest.mark.asyncio
async def test_cron_evaluated_in_registry_timezone(dispatched):
    async def dispatch(job_id: str):
        dispatched.append(job_id)

    tz = ZoneInfo("America/New_York")
    registry = ScheduleRegistry(dispatch, tz=tz, clock=ManualClock(JUST_BEFORE_MINUTE))
    fire_at = registry.register(make_job(cron_expression="0 2 * * *"))
    registry.shutdown()

    assert fire_at.tzinfo is not None
    assert fire_at.astimezone(tz).hour == 2
    assert fire_at - JUST_BEFORE_MINUTE < timedelta(days=1)
