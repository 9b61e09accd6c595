"""
Periodic tasks on APScheduler: the monitor tick, the stats backstop and the
retention cleanup. Cadence comes from Settings; the tasks themselves only
enqueue work for the job queue.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulsewatch.config import Settings, get_settings
from pulsewatch.database import as_utc, utcnow
from pulsewatch.events import MONITOR_UPDATE, EventPublisher
from pulsewatch.maintenance import monitors_in_maintenance
from pulsewatch.models.job import Job
from pulsewatch.models.monitor import Monitor
from pulsewatch.queue import CHECK_MONITOR, CLEANUP_OLD_DATA, STALE_JOB_SECONDS, JobQueue
from pulsewatch.stats import last_check_status, recalculate_all_stats

logger = logging.getLogger("pulsewatch.scheduler")


@dataclass
class PeriodicTask:
    name: str
    func: Callable[[], Awaitable[Any]]
    trigger: BaseTrigger


class Scheduler:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobQueue,
        settings: Optional[Settings] = None,
        publisher: Optional[EventPublisher] = None,
    ):
        self._session_factory = session_factory
        self._queue = queue
        self._settings = settings or get_settings()
        self._publisher = publisher
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def periodic_tasks(self) -> list[PeriodicTask]:
        return [
            PeriodicTask(
                "monitor-tick",
                self.tick,
                IntervalTrigger(seconds=self._settings.scheduler_tick_seconds),
            ),
            PeriodicTask(
                "recalculate-stats",
                self.recalculate_stats,
                IntervalTrigger(seconds=self._settings.stats_recalc_seconds),
            ),
            PeriodicTask(
                "cleanup-old-data",
                self.enqueue_cleanup,
                CronTrigger.from_crontab(self._settings.cleanup_cron, timezone="UTC"),
            ),
        ]

    def start(self) -> None:
        if self.running:
            return
        self._scheduler = AsyncIOScheduler(timezone="UTC")
        tasks = self.periodic_tasks()
        for task in tasks:
            self._scheduler.add_job(
                self._run_task,
                trigger=task.trigger,
                args=[task],
                id=task.name,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        self._scheduler.start()
        logger.info(f"Scheduler started with {len(tasks)} periodic task(s)")

    def stop(self) -> None:
        if self.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
        self._scheduler = None

    async def _run_task(self, task: PeriodicTask) -> None:
        try:
            await task.func()
        except Exception:
            logger.exception(f"Periodic task '{task.name}' failed")

    @staticmethod
    def is_due(monitor: Monitor, now: datetime) -> bool:
        if monitor.last_check_at is None:
            return True
        elapsed = (now - as_utc(monitor.last_check_at)).total_seconds()
        return elapsed >= monitor.interval

    async def tick(self, now: Optional[datetime] = None) -> list[str]:
        """Enqueue checks for due monitors. Returns the ids of the enqueued jobs."""
        now = now or utcnow()
        changed: list[Monitor] = []
        to_check: list[str] = []

        async with self._session_factory() as db:
            result = await db.execute(select(Monitor).where(Monitor.is_active == True))  # noqa: E712
            monitors = result.scalars().all()
            in_maintenance = await monitors_in_maintenance(db, now)
            busy = await self._monitors_with_queued_checks(db, now)

            for monitor in monitors:
                if monitor.id in in_maintenance:
                    if monitor.status != "maintenance":
                        monitor.status = "maintenance"
                        changed.append(monitor)
                        logger.info(f"Monitor '{monitor.name}' entered maintenance")
                    continue

                if monitor.status == "maintenance":
                    monitor.status = await last_check_status(db, monitor.id)
                    changed.append(monitor)
                    to_check.append(monitor.id)
                    logger.info(f"Monitor '{monitor.name}' left maintenance ({monitor.status})")
                    continue

                # A late tick never stacks checks behind one still waiting in the queue
                if monitor.id in busy:
                    continue
                if self.is_due(monitor, now):
                    to_check.append(monitor.id)

            await db.commit()

        job_ids = []
        for monitor_id in to_check:
            try:
                job_ids.append(await self._queue.schedule_check(monitor_id))
            except Exception:
                logger.exception(f"Failed to enqueue check for monitor {monitor_id}")

        if self._publisher is not None:
            for monitor in changed:
                await self._publisher.publish(
                    monitor.workspace_id,
                    MONITOR_UPDATE,
                    {"monitor_id": monitor.id, "status": monitor.status},
                )

        if job_ids:
            logger.debug(f"Tick enqueued {len(job_ids)} check(s) for {len(monitors)} active monitor(s)")
        return job_ids

    async def _monitors_with_queued_checks(self, db: AsyncSession, now: datetime) -> set[str]:
        # A job left running by a dead worker no longer holds its monitor
        stale_before = now - timedelta(seconds=STALE_JOB_SECONDS)
        result = await db.execute(
            select(Job.payload).where(
                Job.kind == CHECK_MONITOR,
                or_(
                    Job.status == "pending",
                    and_(Job.status == "running", Job.started_at >= stale_before),
                ),
            )
        )
        return {payload.get("monitor_id") for payload in result.scalars().all()}

    async def recalculate_stats(self) -> int:
        return await recalculate_all_stats(self._session_factory)

    async def enqueue_cleanup(self) -> str:
        return await self._queue.enqueue(
            CLEANUP_OLD_DATA, {"retention_days": self._settings.retention_days}
        )
