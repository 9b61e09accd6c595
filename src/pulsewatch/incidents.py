"""
Incident lifecycle: opened on a transition into down, resolved on recovery,
plus the manual acknowledge / update / resolve operations.

State is committed before notifications are queued, so a delivery problem
can never undo an incident.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from pulsewatch.checker import CheckResult
from pulsewatch.config import Settings, get_settings
from pulsewatch.database import as_utc, utcnow
from pulsewatch.events import INCIDENT_UPDATE, EventPublisher
from pulsewatch.exceptions import IncidentStateError
from pulsewatch.models.incident import INCIDENT_STATUSES, OPEN_INCIDENT_STATUSES, Incident, IncidentUpdate
from pulsewatch.models.monitor import Monitor
from pulsewatch.notifications import IncidentSnapshot, MonitorSnapshot, NotificationPayload
from pulsewatch.queue import JobQueue
from pulsewatch.recipients import INCIDENT_RESOLVED, INCIDENT_STARTED, load_recipients

logger = logging.getLogger("pulsewatch.incidents")

ACKNOWLEDGED_MESSAGE = "Incident has been acknowledged and is being investigated."
RESOLVED_MESSAGE = "Incident has been resolved"


def determine_severity(
    status: str,
    error: Optional[str],
    response_time: Optional[int],
    *,
    critical_ms: int = 10000,
) -> str:
    text = (error or "").lower()
    if "ssl certificate" in text or "domain" in text:
        return "critical"
    if response_time is not None and response_time > critical_ms:
        return "critical"
    if status == "down":
        return "major"
    return "minor"


def duration_minutes(started_at: datetime, ended_at: datetime) -> int:
    seconds = (as_utc(ended_at) - as_utc(started_at)).total_seconds()
    return max(0, math.floor(seconds / 60 + 0.5))


def monitor_snapshot(monitor: Monitor) -> MonitorSnapshot:
    return MonitorSnapshot(
        id=monitor.id,
        name=monitor.name,
        type=monitor.type,
        target=monitor.target,
        workspace_id=monitor.workspace_id,
    )


def incident_snapshot(incident: Incident) -> IncidentSnapshot:
    minutes = None
    if incident.resolved_at is not None:
        minutes = duration_minutes(incident.started_at, incident.resolved_at)
    return IncidentSnapshot(
        id=incident.id,
        title=incident.title,
        severity=incident.severity,
        status=incident.status,
        error_message=incident.error_message,
        started_at=as_utc(incident.started_at),
        resolved_at=as_utc(incident.resolved_at),
        duration_minutes=minutes,
    )


async def get_open_incident(db: AsyncSession, monitor_id: str) -> Optional[Incident]:
    result = await db.execute(
        select(Incident)
        .where(Incident.monitor_id == monitor_id, Incident.status.in_(OPEN_INCIDENT_STATUSES))
        .order_by(Incident.started_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


@dataclass
class IncidentStats:
    total: int
    open: int
    resolved: int
    critical: int
    major: int
    minor: int
    avg_resolution_minutes: int


async def incident_stats(
    db: AsyncSession, workspace_id: str, days: int = 7, now: Optional[datetime] = None
) -> IncidentStats:
    since = (now or utcnow()) - timedelta(days=days)
    result = await db.execute(
        select(Incident)
        .join(Monitor, Monitor.id == Incident.monitor_id)
        .where(Monitor.workspace_id == workspace_id, Incident.started_at >= since)
    )
    incidents = result.scalars().all()

    resolved = [i for i in incidents if i.status == "resolved" and i.resolved_at is not None]
    avg = 0
    if resolved:
        total_minutes = sum(
            (as_utc(i.resolved_at) - as_utc(i.started_at)).total_seconds() / 60 for i in resolved
        )
        avg = math.floor(total_minutes / len(resolved) + 0.5)

    return IncidentStats(
        total=len(incidents),
        open=sum(1 for i in incidents if i.is_open),
        resolved=sum(1 for i in incidents if i.status == "resolved"),
        critical=sum(1 for i in incidents if i.severity == "critical"),
        major=sum(1 for i in incidents if i.severity == "major"),
        minor=sum(1 for i in incidents if i.severity == "minor"),
        avg_resolution_minutes=avg,
    )


class IncidentManager:
    def __init__(
        self,
        queue: JobQueue,
        publisher: Optional[EventPublisher] = None,
        settings: Optional[Settings] = None,
    ):
        self._queue = queue
        self._publisher = publisher
        self._settings = settings or get_settings()

    async def handle_status_change(
        self,
        db: AsyncSession,
        monitor: Monitor,
        previous_status: str,
        result: CheckResult,
    ) -> Optional[Incident]:
        """React to a monitor moving between up and down."""
        if result.status == "down" and previous_status != "down":
            return await self.open_incident(db, monitor, result)
        if result.status == "up" and previous_status == "down":
            return await self.resolve_for_recovery(db, monitor)
        return None

    async def open_incident(
        self, db: AsyncSession, monitor: Monitor, result: CheckResult
    ) -> Optional[Incident]:
        existing = await get_open_incident(db, monitor.id)
        if existing is not None:
            logger.info(f"Monitor '{monitor.name}' already has open incident {existing.id}")
            return None

        now = utcnow()
        incident = Incident(
            monitor_id=monitor.id,
            title=f"{monitor.name} is down",
            severity=determine_severity(
                result.status,
                result.error,
                result.response_time_ms,
                critical_ms=self._settings.critical_response_ms,
            ),
            status="investigating",
            error_message=result.error,
            started_at=now,
        )
        try:
            async with db.begin_nested():
                db.add(incident)
        except IntegrityError:
            # A concurrent check opened one first
            logger.info(f"Monitor '{monitor.name}' already has an open incident")
            return None
        db.add(
            IncidentUpdate(
                incident_id=incident.id,
                status="investigating",
                message=f"Monitor {monitor.name} is experiencing issues. "
                "We are investigating the problem.",
                created_at=now,
            )
        )
        await db.commit()
        logger.warning(
            f"Incident {incident.id} opened for '{monitor.name}' "
            f"({incident.severity}): {result.error}"
        )

        await self._fan_out(db, monitor, incident, INCIDENT_STARTED)
        await self._publish(monitor.workspace_id, incident, "created")
        return incident

    async def resolve_for_recovery(self, db: AsyncSession, monitor: Monitor) -> Optional[Incident]:
        incident = await get_open_incident(db, monitor.id)
        if incident is None:
            return None

        now = utcnow()
        minutes = duration_minutes(incident.started_at, now)
        incident.status = "resolved"
        incident.resolved_at = now
        db.add(
            IncidentUpdate(
                incident_id=incident.id,
                status="resolved",
                message=f"Monitor {monitor.name} has recovered. "
                f"The incident lasted {minutes} minutes.",
                created_at=now,
            )
        )
        await db.commit()
        logger.warning(f"Incident {incident.id} resolved for '{monitor.name}' after {minutes} min")

        await self._fan_out(db, monitor, incident, INCIDENT_RESOLVED)
        await self._publish(monitor.workspace_id, incident, "resolved")
        return incident

    # --- Manual operations ---

    async def acknowledge(self, db: AsyncSession, incident: Incident, user_id: str) -> Incident:
        self._ensure_open(incident)
        now = utcnow()
        incident.status = "identified"
        incident.acknowledged_at = now
        incident.acknowledged_by = user_id
        db.add(
            IncidentUpdate(
                incident_id=incident.id,
                status="identified",
                message=ACKNOWLEDGED_MESSAGE,
                created_by=user_id,
                created_at=now,
            )
        )
        await db.commit()
        await self._publish_for(db, incident, "acknowledged")
        return incident

    async def update(
        self,
        db: AsyncSession,
        incident: Incident,
        status: str,
        message: str,
        user_id: Optional[str] = None,
    ) -> Incident:
        self._ensure_open(incident)
        if status not in INCIDENT_STATUSES:
            raise IncidentStateError(f"Unknown incident status '{status}'")

        now = utcnow()
        incident.status = status
        if status == "resolved":
            incident.resolved_at = now
        db.add(
            IncidentUpdate(
                incident_id=incident.id,
                status=status,
                message=message,
                created_by=user_id,
                created_at=now,
            )
        )
        await db.commit()
        await self._publish_for(db, incident, "updated")
        return incident

    async def resolve(
        self,
        db: AsyncSession,
        incident: Incident,
        message: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> Incident:
        return await self.update(db, incident, "resolved", message or RESOLVED_MESSAGE, user_id)

    @staticmethod
    def _ensure_open(incident: Incident) -> None:
        if not incident.is_open:
            raise IncidentStateError(f"Incident {incident.id} is already resolved")

    # --- Fan-out ---

    async def _fan_out(
        self, db: AsyncSession, monitor: Monitor, incident: Incident, event: str
    ) -> int:
        """Queue one notification job per recipient; returns how many were queued."""
        try:
            recipients = await load_recipients(db, monitor, event)
        except Exception:
            logger.exception(f"Could not resolve recipients for incident {incident.id}")
            return 0

        monitor_snap = monitor_snapshot(monitor)
        incident_snap = incident_snapshot(incident)
        queued = 0
        for recipient in recipients:
            payload = NotificationPayload.for_recipient(event, monitor_snap, incident_snap, recipient)
            try:
                await self._queue.schedule_notification(event, payload.model_dump(mode="json"))
                queued += 1
            except Exception:
                logger.exception(f"Failed to queue {event} notification for {recipient.name}")
        logger.info(f"Queued {queued}/{len(recipients)} {event} notification(s) for '{monitor.name}'")
        return queued

    async def _publish_for(self, db: AsyncSession, incident: Incident, action: str) -> None:
        monitor = await db.get(Monitor, incident.monitor_id)
        if monitor is not None:
            await self._publish(monitor.workspace_id, incident, action)

    async def _publish(self, workspace_id: str, incident: Incident, action: str) -> None:
        if self._publisher is None:
            return
        await self._publisher.publish(
            workspace_id,
            INCIDENT_UPDATE,
            {
                "action": action,
                "incident_id": incident.id,
                "monitor_id": incident.monitor_id,
                "status": incident.status,
                "severity": incident.severity,
            },
        )
