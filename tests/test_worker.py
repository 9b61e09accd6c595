"""Tests for the check pipeline, notification delivery and cleanup jobs."""
import json
import pytest
from datetime import timedelta
from unittest.mock import AsyncMock, patch

from sqlalchemy import delete, select, update

from pulsewatch.checker import CheckResult
from pulsewatch.database import utcnow
from pulsewatch.models.check import HEARTBEAT_REGION, Check
from pulsewatch.models.incident import Incident, IncidentUpdate
from pulsewatch.models.job import Job
from pulsewatch.models.maintenance import MaintenanceWindow
from pulsewatch.models.monitor import Monitor
from pulsewatch.notifications import NotificationPayload
from pulsewatch.queue import SEND_NOTIFICATION
from pulsewatch.worker import MonitorWorker


def scripted_checker(*results, before=None):
    """Checker returning ``results`` in order, repeating the last one."""
    pending = list(results)
    calls = []

    async def checker(monitor, **kwargs):
        calls.append(kwargs)
        if before is not None:
            await before(monitor)
        if isinstance(pending[0], Exception):
            raise pending[0]
        return pending.pop(0) if len(pending) > 1 else pending[0]

    checker.calls = calls
    return checker


def make_worker(services, session_factory, settings, checker) -> MonitorWorker:
    return MonitorWorker(
        session_factory,
        services.queue,
        services.incidents,
        services.dispatcher,
        services.publisher,
        settings,
        checker=checker,
    )


async def load(session_factory, model, object_id):
    async with session_factory() as db:
        return await db.get(model, object_id)


async def checks_for(session_factory, monitor_id: str) -> list[Check]:
    async with session_factory() as db:
        result = await db.execute(
            select(Check).where(Check.monitor_id == monitor_id).order_by(Check.checked_at)
        )
        return list(result.scalars().all())


UP = CheckResult(status="up", status_code=200, response_time_ms=120)
DOWN = CheckResult(status="down", status_code=503, response_time_ms=80, error="Expected status 200, got 503")


@pytest.mark.asyncio
async def test_check_is_recorded(services, make_monitor, session_factory, settings):
    monitor = await make_monitor()
    worker = make_worker(services, session_factory, settings, scripted_checker(UP))

    result = await worker.perform_check({"monitor_id": monitor.id})

    assert result.is_up
    checks = await checks_for(session_factory, monitor.id)
    assert len(checks) == 1
    assert checks[0].status == "up"
    assert checks[0].response_time == 120
    assert checks[0].status_code == 200

    refreshed = await load(session_factory, Monitor, monitor.id)
    assert refreshed.status == "up"
    assert refreshed.uptime_percentage == 100.0
    assert refreshed.avg_response_time == 120
    assert refreshed.last_check_at is not None
    assert refreshed.last_uptime is not None
    assert refreshed.last_downtime is None


@pytest.mark.asyncio
async def test_outage_and_recovery(services, make_monitor, session_factory, settings):
    monitor = await make_monitor(name="API")
    checker = scripted_checker(DOWN)
    worker = make_worker(services, session_factory, settings, checker)

    await worker.perform_check({"monitor_id": monitor.id})
    assert (await load(session_factory, Monitor, monitor.id)).status == "down"

    # Still down: no second incident
    await worker.perform_check({"monitor_id": monitor.id})

    async with session_factory() as db:
        incidents = (await db.execute(select(Incident))).scalars().all()
    assert len(incidents) == 1
    assert incidents[0].status == "investigating"

    worker._checker = scripted_checker(UP)
    await worker.perform_check({"monitor_id": monitor.id})

    refreshed = await load(session_factory, Monitor, monitor.id)
    assert refreshed.status == "up"
    assert refreshed.uptime_percentage == 33.33
    incident = await load(session_factory, Incident, incidents[0].id)
    assert incident.status == "resolved"

    async with session_factory() as db:
        jobs = (await db.execute(
            select(Job).where(Job.kind == SEND_NOTIFICATION).order_by(Job.created_at)
        )).scalars().all()
    assert [job.payload["type"] for job in jobs] == ["incident_started", "incident_resolved"]


@pytest.mark.asyncio
async def test_retries_until_success(services, make_monitor, session_factory, settings):
    monitor = await make_monitor(retry_count=3)
    checker = scripted_checker(DOWN, DOWN, UP)
    worker = make_worker(services, session_factory, settings, checker)

    result = await worker.perform_check({"monitor_id": monitor.id})

    assert result.is_up
    assert len(checker.calls) == 3
    assert [c.status for c in await checks_for(session_factory, monitor.id)] == ["up"]


@pytest.mark.asyncio
async def test_retries_exhausted(services, make_monitor, session_factory, settings):
    monitor = await make_monitor(retry_count=2)
    checker = scripted_checker(DOWN)
    worker = make_worker(services, session_factory, settings, checker)

    result = await worker.perform_check({"monitor_id": monitor.id})

    assert result.status == "down"
    assert len(checker.calls) == 2
    assert len(await checks_for(session_factory, monitor.id)) == 1


@pytest.mark.asyncio
async def test_heartbeat_uses_last_push_and_no_retries(services, make_monitor, session_factory, settings):
    monitor = await make_monitor(type="heartbeat", url=None, retry_count=3, interval=300)
    async with session_factory() as db:
        db.add(Check(monitor_id=monitor.id, status="up", region=HEARTBEAT_REGION,
                     checked_at=utcnow() - timedelta(seconds=30)))
        await db.commit()

    checker = scripted_checker(DOWN)
    worker = make_worker(services, session_factory, settings, checker)
    await worker.perform_check({"monitor_id": monitor.id})

    assert len(checker.calls) == 1
    assert checker.calls[0]["last_heartbeat_at"] is not None
    assert checker.calls[0]["region"] == settings.check_region


@pytest.mark.asyncio
async def test_inactive_monitor_skipped_unless_forced(services, make_monitor, session_factory, settings):
    monitor = await make_monitor(is_active=False, status="paused")
    worker = make_worker(services, session_factory, settings, scripted_checker(DOWN))

    assert await worker.perform_check({"monitor_id": monitor.id}) is None
    assert await checks_for(session_factory, monitor.id) == []

    await worker.perform_check({"monitor_id": monitor.id, "force": True})
    assert len(await checks_for(session_factory, monitor.id)) == 1
    # A forced check never moves a paused monitor
    assert (await load(session_factory, Monitor, monitor.id)).status == "paused"


@pytest.mark.asyncio
async def test_missing_monitor_is_ignored(services, session_factory, settings):
    checker = scripted_checker(UP)
    worker = make_worker(services, session_factory, settings, checker)

    assert await worker.perform_check({"monitor_id": "does-not-exist"}) is None
    assert checker.calls == []


@pytest.mark.asyncio
async def test_monitor_in_maintenance_is_not_probed(services, make_monitor, session_factory, settings):
    monitor = await make_monitor()
    now = utcnow()
    async with session_factory() as db:
        db.add(MaintenanceWindow(monitor_id=monitor.id, start_time=now - timedelta(minutes=1),
                                 end_time=now + timedelta(hours=1)))
        await db.commit()

    checker = scripted_checker(DOWN)
    worker = make_worker(services, session_factory, settings, checker)

    assert await worker.perform_check({"monitor_id": monitor.id}) is None
    assert checker.calls == []
    assert (await load(session_factory, Monitor, monitor.id)).status == "maintenance"


@pytest.mark.asyncio
async def test_pause_during_probe_freezes_status(services, make_monitor, session_factory, settings):
    monitor = await make_monitor()

    async def pause(probed):
        async with session_factory() as db:
            await db.execute(
                update(Monitor).where(Monitor.id == probed.id).values(is_active=False, status="paused")
            )
            await db.commit()

    worker = make_worker(services, session_factory, settings, scripted_checker(DOWN, before=pause))
    await worker.perform_check({"monitor_id": monitor.id})

    assert len(await checks_for(session_factory, monitor.id)) == 1
    assert (await load(session_factory, Monitor, monitor.id)).status == "paused"
    async with session_factory() as db:
        assert (await db.execute(select(Incident))).scalars().all() == []


@pytest.mark.asyncio
async def test_delete_during_probe_discards_result(services, make_monitor, session_factory, settings):
    monitor = await make_monitor()

    async def remove(probed):
        async with session_factory() as db:
            await db.execute(delete(Monitor).where(Monitor.id == probed.id))
            await db.commit()

    worker = make_worker(services, session_factory, settings, scripted_checker(DOWN, before=remove))
    await worker.perform_check({"monitor_id": monitor.id})

    assert await checks_for(session_factory, monitor.id) == []
    assert await load(session_factory, Monitor, monitor.id) is None


@pytest.mark.asyncio
async def test_pipeline_failure_leaves_down_check(services, make_monitor, session_factory, settings):
    monitor = await make_monitor()
    worker = make_worker(services, session_factory, settings, scripted_checker(RuntimeError("boom")))

    with pytest.raises(RuntimeError):
        await worker.perform_check({"monitor_id": monitor.id})

    checks = await checks_for(session_factory, monitor.id)
    assert len(checks) == 1
    assert checks[0].status == "down"
    assert checks[0].error_message == "Check failed: boom"


@pytest.mark.asyncio
async def test_events_are_published(services, make_monitor, workspace, session_factory, settings):
    monitor = await make_monitor()
    websocket = AsyncMock()
    await services.publisher.connect(workspace.id, websocket)

    worker = make_worker(services, session_factory, settings, scripted_checker(DOWN))
    await worker.perform_check({"monitor_id": monitor.id})

    events = [json.loads(call.args[0]) for call in websocket.send_text.call_args_list]
    assert [e["event"] for e in events] == ["check-result", "monitor-update", "incident-update"]
    assert events[0]["data"]["status"] == "down"
    assert events[1]["data"] == {"monitor_id": monitor.id, "status": "down"}
    assert events[2]["data"]["action"] == "created"


@pytest.mark.asyncio
async def test_queued_check_end_to_end(services, make_monitor, session_factory, mock_httpx, make_response):
    monitor = await make_monitor(name="Shop")
    await services.queue.schedule_check(monitor.id)

    with mock_httpx("pulsewatch.checker", make_response(500)):
        assert await services.queue.run_pending() == 1

    checks = await checks_for(session_factory, monitor.id)
    assert checks[0].error_message == "Expected status 200, got 500"

    # The incident queued an email for the workspace owner
    with patch("pulsewatch.notifications.aiosmtplib.send", new_callable=AsyncMock) as send:
        assert await services.queue.run_pending() == 1

    message = send.call_args.args[0]
    assert message["To"] == "owner@example.com"
    assert message["Subject"] == "[PulseWatch] Shop is down"




@pytest.mark.asyncio
async def test_send_notification_rebuilds_payload(services):
    payload = NotificationPayload.test({"type": "slack", "webhook_url": "https://hooks.slack.com/x"})

    with patch.object(services.dispatcher, "send", new_callable=AsyncMock) as send:
        await services.worker.send_notification(
            {"type": "incident_started", "data": payload.model_dump(mode="json")}
        )

    delivered = send.call_args.args[0]
    assert isinstance(delivered, NotificationPayload)
    assert delivered.is_test
    assert delivered.channel.type == "slack"


@pytest.mark.asyncio
async def test_cleanup_old_data(services, make_monitor, session_factory):
    monitor = await make_monitor()
    now = utcnow()
    async with session_factory() as db:
        db.add_all([
            Check(monitor_id=monitor.id, status="up", checked_at=now - timedelta(days=120)),
            Check(monitor_id=monitor.id, status="up", checked_at=now - timedelta(days=1)),
        ])
        old = Incident(monitor_id=monitor.id, title="old", status="resolved",
                       started_at=now - timedelta(days=101), resolved_at=now - timedelta(days=100))
        stuck = Incident(monitor_id=monitor.id, title="still open", status="investigating",
                         started_at=now - timedelta(days=200))
        recent = Incident(monitor_id=monitor.id, title="recent", status="resolved",
                          started_at=now - timedelta(days=3), resolved_at=now - timedelta(days=2))
        db.add_all([old, stuck, recent])
        await db.flush()
        db.add(IncidentUpdate(incident_id=old.id, status="resolved", message="done"))
        await db.commit()

    removed = await services.worker.cleanup_old_data({"retention_days": 90})

    assert removed == (1, 1)
    assert len(await checks_for(session_factory, monitor.id)) == 1
    async with session_factory() as db:
        titles = sorted(i.title for i in (await db.execute(select(Incident))).scalars().all())
        updates = (await db.execute(select(IncidentUpdate))).scalars().all()
    assert titles == ["recent", "still open"]
    assert updates == []
