from dataclasses import asdict
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from pulsewatch.auth import WorkspaceContext, get_workspace_context, require_write_access
from pulsewatch.database import get_db
from pulsewatch.dependencies import get_incident_manager
from pulsewatch.exceptions import IncidentStateError
from pulsewatch.incidents import IncidentManager, incident_stats
from pulsewatch.models.incident import Incident, OPEN_INCIDENT_STATUSES
from pulsewatch.models.monitor import Monitor
from pulsewatch.schemas import (
    IncidentDetailResponse,
    IncidentResolveRequest,
    IncidentResponse,
    IncidentStatsResponse,
    IncidentUpdateRequest,
)

router = APIRouter(prefix="/api/incidents", tags=["incidents"])

STATS_PERIODS = {"7d": 7, "30d": 30, "90d": 90}


async def get_workspace_incident(db: AsyncSession, ctx: WorkspaceContext, incident_id: str) -> Incident:
    result = await db.execute(
        select(Incident)
        .join(Monitor, Monitor.id == Incident.monitor_id)
        .where(Incident.id == incident_id, Monitor.workspace_id == ctx.workspace.id)
        .options(selectinload(Incident.updates))
    )
    incident = result.scalar_one_or_none()
    if not incident:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Incident not found",
        )
    return incident


async def _detail(db: AsyncSession, incident: Incident) -> IncidentDetailResponse:
    # Reload so the timeline includes the update just appended
    await db.refresh(incident, attribute_names=["updates"])
    return IncidentDetailResponse.model_validate(incident)


@router.get("", response_model=list[IncidentResponse])
async def list_incidents(
    state: Optional[Literal["open", "resolved"]] = None,
    monitor_id: Optional[str] = None,
    limit: int = 50,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: AsyncSession = Depends(get_db),
):
    query = (
        select(Incident)
        .join(Monitor, Monitor.id == Incident.monitor_id)
        .where(Monitor.workspace_id == ctx.workspace.id)
    )
    if state == "open":
        query = query.where(Incident.status.in_(OPEN_INCIDENT_STATUSES))
    elif state == "resolved":
        query = query.where(Incident.status == "resolved")
    if monitor_id:
        query = query.where(Incident.monitor_id == monitor_id)

    result = await db.execute(
        query.order_by(Incident.started_at.desc()).limit(min(max(1, limit), 500))
    )
    return [IncidentResponse.model_validate(i) for i in result.scalars().all()]


@router.get("/stats", response_model=IncidentStatsResponse)
async def get_incident_stats(
    period: Literal["7d", "30d", "90d"] = "7d",
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: AsyncSession = Depends(get_db),
):
    stats = await incident_stats(db, ctx.workspace.id, days=STATS_PERIODS[period])
    return IncidentStatsResponse(period=period, **asdict(stats))


@router.get("/{incident_id}", response_model=IncidentDetailResponse)
async def get_incident(
    incident_id: str,
    ctx: WorkspaceContext = Depends(get_workspace_context),
    db: AsyncSession = Depends(get_db),
):
    return IncidentDetailResponse.model_validate(await get_workspace_incident(db, ctx, incident_id))


@router.post("/{incident_id}/acknowledge", response_model=IncidentDetailResponse)
async def acknowledge_incident(
    incident_id: str,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incident = await get_workspace_incident(db, ctx, incident_id)
    try:
        await manager.acknowledge(db, incident, ctx.user.id)
    except IncidentStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return await _detail(db, incident)


@router.post("/{incident_id}/updates", response_model=IncidentDetailResponse)
async def add_incident_update(
    incident_id: str,
    body: IncidentUpdateRequest,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incident = await get_workspace_incident(db, ctx, incident_id)
    try:
        await manager.update(db, incident, body.status, body.message, ctx.user.id)
    except IncidentStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return await _detail(db, incident)


@router.post("/{incident_id}/resolve", response_model=IncidentDetailResponse)
async def resolve_incident(
    incident_id: str,
    body: Optional[IncidentResolveRequest] = None,
    ctx: WorkspaceContext = Depends(require_write_access),
    db: AsyncSession = Depends(get_db),
    manager: IncidentManager = Depends(get_incident_manager),
):
    incident = await get_workspace_incident(db, ctx, incident_id)
    try:
        await manager.resolve(db, incident, body.message if body else None, ctx.user.id)
    except IncidentStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return await _detail(db, incident)
