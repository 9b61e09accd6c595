"""
Job handlers: the check pipeline, notification delivery and data cleanup.

    check-monitor     -> probe (with retries) -> Check -> stats -> status
                         -> incident manager on a status change
    send-notification -> NotificationDispatcher.send
    cleanup-old-data  -> prune checks and resolved incidents
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulsewatch.checker import CheckResult, check_monitor
from pulsewatch.config import Settings, get_settings
from pulsewatch.database import utcnow
from pulsewatch.events import CHECK_RESULT, MONITOR_UPDATE, EventPublisher
from pulsewatch.incidents import IncidentManager
from pulsewatch.maintenance import active_window
from pulsewatch.models.check import HEARTBEAT_REGION, Check
from pulsewatch.models.incident import Incident, IncidentUpdate
from pulsewatch.models.monitor import Monitor
from pulsewatch.notifications import NotificationDispatcher, NotificationPayload
from pulsewatch.queue import CHECK_MONITOR, CLEANUP_OLD_DATA, SEND_NOTIFICATION, JobQueue
from pulsewatch.stats import refresh_monitor_stats

logger = logging.getLogger("pulsewatch.worker")

Checker = Callable[..., Awaitable[CheckResult]]

# Statuses that freeze the monitor's state machine
FROZEN_STATUSES = ("paused", "maintenance")


async def last_heartbeat_at(db: AsyncSession, monitor_id: str) -> Optional[datetime]:
    result = await db.execute(
        select(Check.checked_at)
        .where(
            Check.monitor_id == monitor_id,
            Check.region == HEARTBEAT_REGION,
            Check.status == "up",
        )
        .order_by(Check.checked_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


class MonitorWorker:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        incidents: IncidentManager,
        dispatcher: NotificationDispatcher,
        publisher: Optional[EventPublisher] = None,
        settings: Optional[Settings] = None,
        checker: Checker = check_monitor,
    ):
        self._session_factory = session_factory
        self._queue = queue
        self._incidents = incidents
        self._dispatcher = dispatcher
        self._publisher = publisher
        self._settings = settings or get_settings()
        self._checker = checker

    def register(self, queue: Optional[JobQueue] = None) -> None:
        queue = queue or self._queue
        queue.register(CHECK_MONITOR, self.perform_check)
        queue.register(SEND_NOTIFICATION, self.send_notification)
        queue.register(CLEANUP_OLD_DATA, self.cleanup_old_data)

    # --- check-monitor ---

    async def perform_check(self, payload: dict) -> Optional[CheckResult]:
        monitor_id = payload["monitor_id"]
        force = bool(payload.get("force", False))

        async with self._session_factory() as db:
            monitor = await db.get(Monitor, monitor_id)
            if monitor is None:
                logger.info(f"Monitor {monitor_id} no longer exists, skipping check")
                return None
            if not monitor.is_active and not force:
                logger.debug(f"Monitor '{monitor.name}' is inactive, skipping check")
                return None

            if not force and await active_window(db, monitor.id, utcnow()) is not None:
                if monitor.status != "maintenance":
                    monitor.status = "maintenance"
                    await db.commit()
                    await self._publish_monitor(monitor)
                logger.info(f"Monitor '{monitor.name}' is in maintenance, skipping check")
                return None

            try:
                heartbeat = None
                if monitor.type == "heartbeat":
                    heartbeat = await last_heartbeat_at(db, monitor.id)
                result = await self._probe(monitor, heartbeat)
                await self.record_result(db, monitor, result)
            except Exception as e:
                await db.rollback()
                await self._record_failure(monitor_id, e)
                raise

        return result

    async def _probe(self, monitor: Monitor, last_heartbeat: Optional[datetime]) -> CheckResult:
        """Run up to ``retry_count`` probes, stopping at the first success."""
        attempts = 1 if monitor.type == "heartbeat" else max(1, monitor.retry_count or 1)
        for attempt in range(1, attempts + 1):
            result = await self._checker(
                monitor, region=self._settings.check_region, last_heartbeat_at=last_heartbeat
            )
            if result.is_up or attempt == attempts:
                break
            logger.info(
                f"Check {attempt}/{attempts} for '{monitor.name}' failed ({result.error}), retrying"
            )
            await asyncio.sleep(self._settings.check_retry_delay_seconds)
        return result

    async def record_result(
        self,
        db: AsyncSession,
        monitor: Monitor,
        result: CheckResult,
        now: Optional[datetime] = None,
    ) -> Optional[Check]:
        """Persist a probe outcome and drive the monitor's status machine.

        Also used for inbound heartbeats and webhook-reported checks.
        Returns None when the monitor was deleted while the probe ran.
        """
        now = now or utcnow()
        still_exists = await db.scalar(select(Monitor.id).where(Monitor.id == monitor.id))
        if still_exists is None:
            logger.info(f"Monitor {monitor.id} was deleted during its check, discarding result")
            return None
        # Pause / maintenance may have been applied while the probe was running
        await db.refresh(monitor, attribute_names=["is_active", "status"])

        check = Check(
            monitor_id=monitor.id,
            status=result.status,
            status_code=result.status_code,
            response_time=result.response_time_ms,
            error_message=result.error,
            region=result.region,
            ssl_expiry_days=result.ssl_expiry_days,
            checked_at=now,
        )
        db.add(check)
        await db.flush()

        await refresh_monitor_stats(db, monitor, now)
        monitor.last_check_at = now
        if result.is_up:
            monitor.last_uptime = now
        else:
            monitor.last_downtime = now

        previous_status = monitor.status
        drives_status = monitor.is_active and previous_status not in FROZEN_STATUSES
        if drives_status:
            monitor.status = result.status
        await db.commit()

        if result.is_up:
            logger.info(
                f"Check '{monitor.name}': up ({result.status_code or '-'}, "
                f"{result.response_time_ms}ms)"
            )
            if (result.response_time_ms or 0) > self._settings.slow_response_ms:
                logger.info(f"Monitor '{monitor.name}' is slow: {result.response_time_ms}ms")
        else:
            logger.info(f"Check '{monitor.name}': down ({result.error})")

        await self._publish_check(monitor, check)
        if drives_status and previous_status != result.status:
            await self._publish_monitor(monitor)
            await self._incidents.handle_status_change(db, monitor, previous_status, result)
        return check

    async def _record_failure(self, monitor_id: str, error: Exception) -> None:
        """Leave a down Check behind when the pipeline itself blew up."""
        try:
            async with self._session_factory() as db:
                if await db.get(Monitor, monitor_id) is None:
                    return
                db.add(
                    Check(
                        monitor_id=monitor_id,
                        status="down",
                        response_time=0,
                        error_message=f"Check failed: {error}"[:1000],
                        region=self._settings.check_region,
                        checked_at=utcnow(),
                    )
                )
                await db.commit()
        except Exception:
            logger.exception(f"Could not record failed check for monitor {monitor_id}")

    # --- send-notification ---

    async def send_notification(self, payload: dict) -> None:
        notification = NotificationPayload.model_validate(payload["data"])
        await self._dispatcher.send(notification)

    # --- cleanup-old-data ---

    async def cleanup_old_data(self, payload: dict) -> tuple[int, int]:
        days = int(payload.get("retention_days") or self._settings.retention_days)
        cutoff = utcnow() - timedelta(days=days)

        async with self._session_factory() as db:
            checks = await db.execute(delete(Check).where(Check.checked_at < cutoff))
            stale_incidents = select(Incident.id).where(
                Incident.status == "resolved", Incident.resolved_at < cutoff
            )
            await db.execute(
                delete(IncidentUpdate).where(IncidentUpdate.incident_id.in_(stale_incidents))
            )
            incidents = await db.execute(delete(Incident).where(Incident.id.in_(stale_incidents)))
            await db.commit()

        logger.info(
            f"Cleanup removed {checks.rowcount} check(s) and "
            f"{incidents.rowcount} incident(s) older than {days} days"
        )
        return checks.rowcount, incidents.rowcount

    # --- Events ---

    async def _publish_check(self, monitor: Monitor, check: Check) -> None:
        if self._publisher is None:
            return
        await self._publisher.publish(
            monitor.workspace_id,
            CHECK_RESULT,
            {
                "monitor_id": monitor.id,
                "status": check.status,
                "status_code": check.status_code,
                "response_time": check.response_time,
                "error": check.error_message,
                "region": check.region,
                "checked_at": check.checked_at,
                "uptime_percentage": monitor.uptime_percentage,
                "avg_response_time": monitor.avg_response_time,
            },
        )

    async def _publish_monitor(self, monitor: Monitor) -> None:
        if self._publisher is None:
            return
        await self._publisher.publish(
            monitor.workspace_id,
            MONITOR_UPDATE,
            {"monitor_id": monitor.id, "status": monitor.status},
        )
