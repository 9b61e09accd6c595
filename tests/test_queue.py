"""Tests for the database-backed job queue."""
import asyncio
import pytest
from datetime import timedelta

from sqlalchemy import select

from pulsewatch.database import utcnow
from pulsewatch.exceptions import UnknownJobKindError
from pulsewatch.models.job import Job
from pulsewatch.queue import CHECK_MONITOR, CLEANUP_OLD_DATA, SEND_NOTIFICATION, JobQueue


def make_queue(session_factory, **options) -> JobQueue:
    defaults = {"concurrency": 1, "poll_interval": 0.05, "retry_backoff_seconds": 0}
    return JobQueue(session_factory, **{**defaults, **options})


async def load_job(session_factory, job_id: str) -> Job:
    async with session_factory() as db:
        return await db.get(Job, job_id)


@pytest.mark.asyncio
async def test_enqueue_and_run(session_factory):
    queue = make_queue(session_factory)
    seen = []

    async def handler(payload):
        seen.append(payload)

    queue.register(CHECK_MONITOR, handler)
    job_id = await queue.schedule_check("monitor-1")

    assert await queue.run_pending() == 1
    assert seen == [{"monitor_id": "monitor-1", "force": False}]

    job = await load_job(session_factory, job_id)
    assert job.status == "completed"
    assert job.attempts == 1
    assert job.finished_at is not None


@pytest.mark.asyncio
async def test_delayed_job_waits(session_factory):
    queue = make_queue(session_factory)
    queue.register(CHECK_MONITOR, lambda payload: asyncio.sleep(0))
    job_id = await queue.schedule_check("monitor-1", delay_ms=60_000)

    assert await queue.run_pending() == 0
    job = await load_job(session_factory, job_id)
    assert job.status == "pending"


@pytest.mark.asyncio
async def test_unknown_kind_rejected(session_factory):
    queue = make_queue(session_factory)
    with pytest.raises(UnknownJobKindError):
        await queue.enqueue("reticulate-splines", {})


@pytest.mark.asyncio
async def test_registered_custom_kind_accepted(session_factory):
    queue = make_queue(session_factory)
    ran = []

    async def handler(payload):
        ran.append(payload["n"])

    queue.register("custom", handler, max_attempts=4)
    job_id = await queue.enqueue("custom", {"n": 7})

    job = await load_job(session_factory, job_id)
    assert job.max_attempts == 4
    await queue.run_pending()
    assert ran == [7]


@pytest.mark.asyncio
async def test_notification_retries_then_fails(session_factory):
    queue = make_queue(session_factory, notification_max_attempts=3)
    calls = 0

    async def handler(payload):
        nonlocal calls
        calls += 1
        raise RuntimeError("smtp unavailable")

    queue.register(SEND_NOTIFICATION, handler)
    job_id = await queue.schedule_notification("incident_started", {"x": 1})

    await queue.run_pending()
    job = await load_job(session_factory, job_id)
    assert job.status == "pending"
    assert job.attempts == 1
    assert job.last_error == "smtp unavailable"

    await queue.run_pending()
    await queue.run_pending()
    job = await load_job(session_factory, job_id)
    assert calls == 3
    assert job.status == "failed"
    assert job.attempts == 3

    # Exhausted jobs are never picked up again
    assert await queue.run_pending() == 0


@pytest.mark.asyncio
async def test_retry_is_backed_off(session_factory):
    queue = make_queue(session_factory, retry_backoff_seconds=30)

    async def handler(payload):
        raise RuntimeError("nope")

    queue.register(SEND_NOTIFICATION, handler)
    job_id = await queue.schedule_notification("incident_started", {})

    before = utcnow()
    await queue.run_pending()
    job = await load_job(session_factory, job_id)

    assert job.status == "pending"
    run_at = job.run_at.replace(tzinfo=None)
    assert run_at >= (before + timedelta(seconds=29)).replace(tzinfo=None)
    assert await queue.run_pending() == 0


@pytest.mark.asyncio
async def test_check_jobs_are_not_retried(session_factory):
    queue = make_queue(session_factory)

    async def handler(payload):
        raise RuntimeError("probe crashed")

    queue.register(CHECK_MONITOR, handler)
    job_id = await queue.schedule_check("monitor-1")
    await queue.run_pending()

    job = await load_job(session_factory, job_id)
    assert job.max_attempts == 1
    assert job.status == "failed"
    assert job.last_error == "probe crashed"


@pytest.mark.asyncio
async def test_notification_payload_shape(session_factory):
    queue = make_queue(session_factory)
    job_id = await queue.schedule_notification("incident_resolved", {"recipient": "ops"})

    job = await load_job(session_factory, job_id)
    assert job.kind == SEND_NOTIFICATION
    assert job.payload == {"type": "incident_resolved", "data": {"recipient": "ops"}}


@pytest.mark.asyncio
async def test_history_is_trimmed(session_factory):
    queue = make_queue(session_factory, keep_completed=2, keep_failed=1)

    async def ok(payload):
        return None

    async def broken(payload):
        raise RuntimeError("broken")

    queue.register(CHECK_MONITOR, ok)
    queue.register(CLEANUP_OLD_DATA, broken, max_attempts=1)
    for i in range(4):
        await queue.schedule_check(f"monitor-{i}")
    for _ in range(3):
        await queue.enqueue(CLEANUP_OLD_DATA, {})

    assert await queue.run_pending(limit=10) == 7

    async with session_factory() as db:
        completed = (await db.execute(
            select(Job).where(Job.kind == CHECK_MONITOR, Job.status == "completed")
        )).scalars().all()
        failed = (await db.execute(
            select(Job).where(Job.kind == CLEANUP_OLD_DATA, Job.status == "failed")
        )).scalars().all()

    assert len(completed) == 2
    assert len(failed) == 1


@pytest.mark.asyncio
async def test_open_requeues_stale_running_jobs(session_factory):
    async with session_factory() as db:
        stale = Job(
            kind=CHECK_MONITOR,
            payload={"monitor_id": "m"},
            status="running",
            attempts=1,
            started_at=utcnow() - timedelta(hours=2),
        )
        fresh = Job(
            kind=CHECK_MONITOR,
            payload={"monitor_id": "n"},
            status="running",
            attempts=1,
            started_at=utcnow(),
        )
        db.add_all([stale, fresh])
        await db.commit()

    queue = make_queue(session_factory)
    await queue.open(start_workers=False)
    assert queue.is_open

    assert (await load_job(session_factory, stale.id)).status == "pending"
    assert (await load_job(session_factory, fresh.id)).status == "running"
    await queue.close()
    assert not queue.is_open


@pytest.mark.asyncio
async def test_workers_poll_for_jobs(session_factory):
    queue = make_queue(session_factory)
    done = asyncio.Event()

    async def handler(payload):
        done.set()

    queue.register(CHECK_MONITOR, handler)
    job_id = await queue.schedule_check("monitor-1")

    await queue.open(start_workers=True)
    try:
        await asyncio.wait_for(done.wait(), timeout=5)
    finally:
        await queue.close()

    job = await load_job(session_factory, job_id)
    assert job.status == "completed"
