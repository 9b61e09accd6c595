import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pulsewatch.auth import WorkspaceContext, get_workspace_context, require_write_access
from pulsewatch.database import as_utc, get_db, utcnow
from pulsewatch.dependencies import get_dispatcher, get_job_queue, get_publisher
from pulsewatch.events import MONITOR_UPDATE, EventPublisher
from pulsewatch.incidents import monitor_snapshot
from pulsewatch.models.check import Check
from pulsewatch.models.incident import Incident
from pulsewatch.models.maintenance import MaintenanceWindow
from pulsewatch.models.monitor import Monitor
from pulsewatch.notifications import NotificationDispatcher, NotificationPayload
from pulsewatch.plans import get_plan_limits
from pulsewatch.queue import JobQueue
from pulsewatch.recipients import INCIDENT_STARTED, load_recipients
from pulsewatch.schemas import (
    ChannelTestResult,
    CheckResponse,
    MaintenanceWindowCreate,
    MaintenanceWindowResponse,
    MonitorCreate,
    MonitorResponse,
    MonitorUpdate,
)
from pulsewatch.stats import compute_uptime_stats, last_check_status

logger = logging.getLogger("pulsewatch.api")

router = APIRouter(prefix="/api/monitors", tags=["monitors"])

RESUME_CHECK_DELAY_MS = 1000
TEST_CHECK_DELAY_MS = 100


async def get_workspace_monitor(db: AsyncSession, ctx: WorkspaceContext, monitor_id: str) -> Monitor:
    result = await db.execute(
        select(Monitor).where(Monitor.id == monitor_id, Monitor.workspace_id == ctx.workspace.id)
    )
    monitor = result.scalar_one_or_none()
    if not monitor:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Monitor not found",
        )
    return monitor


def _check_plan_allows(ctx: WorkspaceContext, monitor: MonitorCreate, interval_changed: bool = True) -> None:
    limits = get_plan_limits(ctx.workspace.plan)
    if interval_changed and monitor.interval < limits.min_check_interval:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Your {ctx.workspace.plan} plan requires a minimum check interval of "
            f"{limits.min_check_interval} seconds. Upgrade your plan for faster checks.",
        )
    if not limits.allows_type(monitor.type):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"{monitor.type.upper()} monitoring is not available on the {ctx.workspace.plan} plan.",
        )


async def _schedule(queue: JobQueue, monitor_id: str, delay_ms: int = 0, force: bool = False):
    try:
        return await queue.schedule_check(monitor_id, delay_ms=delay_ms, force=force)
    except Exception:
        logger.exception(f"Could not enqueue check for monitor {monitor_id}")
        return None


async def _publish_status(publisher: EventPublisher, monitor: Monitor) -> None:
    await publisher.publish(
        monitor.workspace_id, MONITOR_UPDATE, {"monitor_id": monitor.id, "status": monitor.status}
    )


@router.get("", response_model=list[MonitorResponse])
async def list_monitors(
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Monitor)
        .where(Monitor.workspace_id == ctx.workspace.id)
        .order_by(Monitor.created_at.desc())
    )
    return [MonitorResponse.model_validate(m) for m in result.scalars().all()]


@router.post("", response_model=MonitorResponse, status_code=201)
async def create_monitor(
    body: MonitorCreate,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
):
    limits = get_plan_limits(ctx.workspace.plan)
    count_result = await db.execute(
        select(func.count(Monitor.id)).where(Monitor.workspace_id == ctx.workspace.id)
    )
    if not limits.allows_monitor_count(count_result.scalar()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Your {ctx.workspace.plan} plan allows up to {limits.max_monitors} monitors. "
            f"Upgrade your plan to add more.",
        )
    _check_plan_allows(ctx, body)

    monitor = Monitor(workspace_id=ctx.workspace.id, status="up", **body.model_dump())
    db.add(monitor)
    await db.commit()
    await db.refresh(monitor)

    await _schedule(queue, monitor.id)
    return MonitorResponse.model_validate(monitor)


@router.get("/{monitor_id}", response_model=MonitorResponse)
async def get_monitor(
    monitor_id: str,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: AsyncSession = Depends(get_db),
):
    return MonitorResponse.model_validate(await get_workspace_monitor(db, ctx, monitor_id))


@router.patch("/{monitor_id}", response_model=MonitorResponse)
async def update_monitor(
    monitor_id: str,
    body: MonitorUpdate,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
):
    monitor = await get_workspace_monitor(db, ctx, monitor_id)

    current = {field: getattr(monitor, field) for field in MonitorCreate.model_fields}
    current["keyword_type"] = current["keyword_type"] or "exists"
    try:
        merged = MonitorCreate.model_validate({**current, **body.model_dump(exclude_unset=True)})
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False, include_context=False))

    _check_plan_allows(ctx, merged, interval_changed=body.interval is not None)

    for field, value in merged.model_dump().items():
        setattr(monitor, field, value)
    await db.commit()
    await db.refresh(monitor)
    return MonitorResponse.model_validate(monitor)


@router.delete("/{monitor_id}", status_code=204)
async def delete_monitor(
    monitor_id: str,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
):
    monitor = await get_workspace_monitor(db, ctx, monitor_id)
    await db.delete(monitor)
    await db.commit()


@router.post("/{monitor_id}/pause", response_model=MonitorResponse)
async def pause_monitor(
    monitor_id: str,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
):
    monitor = await get_workspace_monitor(db, ctx, monitor_id)
    monitor.is_active = False
    monitor.status = "paused"
    await db.commit()
    await db.refresh(monitor)
    await _publish_status(publisher, monitor)
    return MonitorResponse.model_validate(monitor)


@router.post("/{monitor_id}/resume", response_model=MonitorResponse)
async def resume_monitor(
    monitor_id: str,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    publisher: EventPublisher = Depends(get_publisher),
):
    monitor = await get_workspace_monitor(db, ctx, monitor_id)
    monitor.is_active = True
    # An outage that began before the pause is still open until a check clears it
    monitor.status = await last_check_status(db, monitor.id)
    await db.commit()
    await db.refresh(monitor)

    await _schedule(queue, monitor.id, delay_ms=RESUME_CHECK_DELAY_MS)
    await _publish_status(publisher, monitor)
    return MonitorResponse.model_validate(monitor)


@router.post("/{monitor_id}/test", status_code=202)
async def test_monitor(
    monitor_id: str,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
):
    monitor = await get_workspace_monitor(db, ctx, monitor_id)
    job_id = await queue.schedule_check(monitor.id, delay_ms=TEST_CHECK_DELAY_MS, force=True)
    return {"message": "Test check queued", "job_id": job_id}


@router.get("/{monitor_id}/checks", response_model=list[CheckResponse])
async def get_checks(
    monitor_id: str,
    hours: int = 24,
    limit: int = 100,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: AsyncSession = Depends(get_db),
):
    await get_workspace_monitor(db, ctx, monitor_id)
    cutoff = utcnow() - timedelta(hours=max(1, hours))
    result = await db.execute(
        select(Check)
        .where(Check.monitor_id == monitor_id, Check.checked_at >= cutoff)
        .order_by(Check.checked_at.desc())
        .limit(min(max(1, limit), 1000))
    )
    return [CheckResponse.model_validate(c) for c in result.scalars().all()]


@router.get("/{monitor_id}/stats")
async def get_monitor_stats(
    monitor_id: str,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: AsyncSession = Depends(get_db),
):
    monitor = await get_workspace_monitor(db, ctx, monitor_id)
    now = utcnow()
    periods = {
        "24h": timedelta(hours=24),
        "7d": timedelta(days=7),
        "30d": timedelta(days=30),
    }

    result = await db.execute(
        select(Check).where(Check.monitor_id == monitor_id, Check.checked_at >= now - periods["30d"])
    )
    checks = result.scalars().all()

    uptime = {}
    for label, delta in periods.items():
        cutoff = now - delta
        window = [c for c in checks if as_utc(c.checked_at) >= cutoff]
        stats = compute_uptime_stats(window)
        uptime[label] = {
            "uptime_percentage": stats.uptime_percentage,
            "avg_response_time": stats.avg_response_time,
            "total_checks": stats.total_checks,
        }

    incident_result = await db.execute(
        select(Incident)
        .where(Incident.monitor_id == monitor_id)
        .order_by(Incident.started_at.desc())
        .limit(10)
    )
    incidents = incident_result.scalars().all()

    return {
        "monitor_id": monitor_id,
        "status": monitor.status,
        "uptime_percentage": monitor.uptime_percentage,
        "avg_response_time": monitor.avg_response_time,
        "uptime": uptime,
        "incidents": [
            {
                "id": i.id,
                "title": i.title,
                "severity": i.severity,
                "status": i.status,
                "started_at": i.started_at.isoformat(),
                "resolved_at": i.resolved_at.isoformat() if i.resolved_at else None,
            }
            for i in incidents
        ],
    }


@router.get("/{monitor_id}/maintenance", response_model=list[MaintenanceWindowResponse])
async def list_maintenance_windows(
    monitor_id: str,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: AsyncSession = Depends(get_db),
):
    await get_workspace_monitor(db, ctx, monitor_id)
    result = await db.execute(
        select(MaintenanceWindow)
        .where(MaintenanceWindow.monitor_id == monitor_id)
        .order_by(MaintenanceWindow.start_time)
    )
    return [MaintenanceWindowResponse.model_validate(w) for w in result.scalars().all()]


@router.post("/{monitor_id}/maintenance", response_model=MaintenanceWindowResponse, status_code=201)
async def create_maintenance_window(
    monitor_id: str,
    body: MaintenanceWindowCreate,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
):
    await get_workspace_monitor(db, ctx, monitor_id)
    window = MaintenanceWindow(monitor_id=monitor_id, **body.model_dump())
    db.add(window)
    await db.commit()
    await db.refresh(window)
    return MaintenanceWindowResponse.model_validate(window)


@router.delete("/{monitor_id}/maintenance/{window_id}", status_code=204)
async def delete_maintenance_window(
    monitor_id: str,
    window_id: str,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
):
    await get_workspace_monitor(db, ctx, monitor_id)
    result = await db.execute(
        select(MaintenanceWindow).where(
            MaintenanceWindow.id == window_id, MaintenanceWindow.monitor_id == monitor_id
        )
    )
    window = result.scalar_one_or_none()
    if not window:
        raise HTTPException(status_code=404, detail="Maintenance window not found")
    await db.delete(window)
    await db.commit()


@router.post("/{monitor_id}/test-notifications", response_model=list[ChannelTestResult])
async def test_monitor_notifications(
    monitor_id: str,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    """Send a synthetic alert to everyone who would hear about this monitor."""
    monitor = await get_workspace_monitor(db, ctx, monitor_id)
    recipients = await load_recipients(db, monitor, INCIDENT_STARTED)
    snapshot = monitor_snapshot(monitor)

    summary = await dispatcher.dispatch(
        NotificationPayload.test(r.channel, snapshot, recipient=r.name) for r in recipients
    )
    return [
        ChannelTestResult(
            name=d.payload.recipient, type=d.payload.channel.type, success=d.ok, error=d.error
        )
        for d in summary.deliveries
    ]
