"""Inbound probes: heartbeat pushes and externally reported check results."""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulsewatch.checker import CheckResult
from pulsewatch.database import get_db
from pulsewatch.dependencies import get_monitor_worker
from pulsewatch.models.check import HEARTBEAT_REGION
from pulsewatch.models.monitor import Monitor
from pulsewatch.schemas import InboundCheckRequest
from pulsewatch.worker import MonitorWorker

router = APIRouter(prefix="/api/push", tags=["probes"])

WEBHOOK_REGION = "webhook"


async def get_monitor_by_token(db: AsyncSession, push_token: str) -> Monitor:
    result = await db.execute(select(Monitor).where(Monitor.push_token == push_token))
    monitor = result.scalar_one_or_none()
    if not monitor:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Unknown push token",
        )
    return monitor


@router.api_route("/{push_token}", methods=["GET", "POST"])
async def receive_heartbeat(
    push_token: str,
    db: AsyncSession = Depends(get_db),
    worker: MonitorWorker = Depends(get_monitor_worker),
):
    monitor = await get_monitor_by_token(db, push_token)
    if monitor.type != "heartbeat":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Heartbeats can only be pushed to heartbeat monitors",
        )

    await worker.record_result(db, monitor, CheckResult(status="up", region=HEARTBEAT_REGION))
    return {"ok": True, "monitor_id": monitor.id, "status": monitor.status}


@router.post("/{push_token}/check")
async def receive_check(
    push_token: str,
    body: InboundCheckRequest,
    db: AsyncSession = Depends(get_db),
    worker: MonitorWorker = Depends(get_monitor_worker),
):
    monitor = await get_monitor_by_token(db, push_token)
    result = CheckResult(
        status=body.status,
        response_time_ms=body.response_time,
        status_code=body.status_code,
        error=body.error,
        region=body.region or WEBHOOK_REGION,
    )
    check = await worker.record_result(db, monitor, result)
    return {"ok": True, "monitor_id": monitor.id, "check_id": check.id if check else None, "status": monitor.status}
