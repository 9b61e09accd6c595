"""
Durable job queue backed by the ``jobs`` table.

Producers (scheduler, API, incident manager) call ``enqueue`` or one of the
``schedule_*`` helpers. Workers poll for due jobs, claim them with a
compare-and-set update so several processes can share one database, and
run them as asyncio tasks bounded by the configured concurrency.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulsewatch.config import Settings
from pulsewatch.database import utcnow
from pulsewatch.exceptions import UnknownJobKindError
from pulsewatch.models.job import Job

logger = logging.getLogger("pulsewatch.queue")

CHECK_MONITOR = "check-monitor"
SEND_NOTIFICATION = "send-notification"
CLEANUP_OLD_DATA = "cleanup-old-data"
JOB_KINDS = (CHECK_MONITOR, SEND_NOTIFICATION, CLEANUP_OLD_DATA)

# A running job older than this is assumed to belong to a dead worker
STALE_JOB_SECONDS = 30 * 60

JobHandler = Callable[[dict], Awaitable[None]]


class JobQueue:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        concurrency: int = 10,
        poll_interval: float = 1.0,
        keep_completed: int = 10,
        keep_failed: int = 5,
        retry_backoff_seconds: float = 5.0,
        notification_max_attempts: int = 3,
    ):
        self._session_factory = session_factory
        self._concurrency = concurrency
        self._poll_interval = poll_interval
        self._keep_completed = keep_completed
        self._keep_failed = keep_failed
        self._retry_backoff_seconds = retry_backoff_seconds
        self._max_attempts = {
            CHECK_MONITOR: 1,
            SEND_NOTIFICATION: notification_max_attempts,
            CLEANUP_OLD_DATA: 2,
        }
        self._handlers: dict[str, JobHandler] = {}
        self._semaphore = asyncio.Semaphore(concurrency)
        self._tasks: set[asyncio.Task] = set()
        self._poller: Optional[asyncio.Task] = None
        self._is_open = False

    @classmethod
    def from_settings(
        cls, session_factory: async_sessionmaker[AsyncSession], settings: Settings
    ) -> "JobQueue":
        return cls(
            session_factory,
            concurrency=settings.worker_concurrency,
            poll_interval=settings.queue_poll_interval,
            keep_completed=settings.queue_keep_completed,
            keep_failed=settings.queue_keep_failed,
            retry_backoff_seconds=settings.queue_retry_backoff_seconds,
            notification_max_attempts=settings.notification_max_attempts,
        )

    @property
    def is_open(self) -> bool:
        return self._is_open

    def register(self, kind: str, handler: JobHandler, max_attempts: Optional[int] = None) -> None:
        """Attach the coroutine that processes jobs of ``kind``."""
        self._handlers[kind] = handler
        if max_attempts is not None:
            self._max_attempts[kind] = max_attempts

    async def open(self, start_workers: bool = True) -> None:
        """Recover jobs orphaned by a crashed worker and start polling."""
        cutoff = utcnow() - timedelta(seconds=STALE_JOB_SECONDS)
        async with self._session_factory() as db:
            result = await db.execute(
                update(Job)
                .where(Job.status == "running", Job.started_at < cutoff)
                .values(status="pending", run_at=utcnow())
            )
            await db.commit()
        if result.rowcount:
            logger.warning(f"Requeued {result.rowcount} stale running job(s)")

        if start_workers:
            self._poller = asyncio.create_task(self._poll_loop())
        self._is_open = True
        logger.info(f"Job queue opened (workers={'on' if start_workers else 'off'})")

    async def close(self) -> None:
        """Stop polling and wait for in-flight jobs to finish."""
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._is_open = False
        logger.info("Job queue closed")

    async def enqueue(
        self,
        kind: str,
        payload: dict,
        delay_ms: int = 0,
        max_attempts: Optional[int] = None,
    ) -> str:
        if kind not in JOB_KINDS and kind not in self._handlers:
            raise UnknownJobKindError(kind)

        job = Job(
            kind=kind,
            payload=payload,
            status="pending",
            run_at=utcnow() + timedelta(milliseconds=delay_ms),
            attempts=0,
            max_attempts=max_attempts or self._max_attempts.get(kind, 1),
        )
        async with self._session_factory() as db:
            db.add(job)
            await db.commit()
        logger.debug(f"Enqueued {kind} job {job.id} (delay={delay_ms}ms)")
        return job.id

    async def schedule_check(self, monitor_id: str, delay_ms: int = 0, force: bool = False) -> str:
        """Enqueue one check for a monitor. ``force`` runs it even when inactive."""
        return await self.enqueue(
            CHECK_MONITOR, {"monitor_id": monitor_id, "force": force}, delay_ms=delay_ms
        )

    async def schedule_notification(self, kind: str, payload: dict, delay_ms: int = 0) -> str:
        return await self.enqueue(
            SEND_NOTIFICATION, {"type": kind, "data": payload}, delay_ms=delay_ms
        )

    async def run_pending(self, limit: Optional[int] = None) -> int:
        """Claim and run every job that is currently due. Returns the number run."""
        jobs = await self._claim_due(limit or self._concurrency)
        if jobs:
            await asyncio.gather(*(self._run_bounded(job) for job in jobs))
        return len(jobs)

    async def _poll_loop(self) -> None:
        while True:
            try:
                free = self._concurrency - len(self._tasks)
                if free > 0:
                    for job in await self._claim_due(free):
                        task = asyncio.create_task(self._run_bounded(job))
                        self._tasks.add(task)
                        task.add_done_callback(self._tasks.discard)
            except Exception:
                logger.exception("Job queue poll failed")
            await asyncio.sleep(self._poll_interval)

    async def _claim_due(self, limit: int) -> list[Job]:
        now = utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                select(Job.id)
                .where(Job.status == "pending", Job.run_at <= now)
                .order_by(Job.run_at)
                .limit(limit)
            )
            candidates = result.scalars().all()

            claimed = []
            for job_id in candidates:
                # Another worker may have won the race for this row
                res = await db.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status == "pending")
                    .values(status="running", attempts=Job.attempts + 1, started_at=now)
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 1:
                    claimed.append(job_id)
            await db.commit()

            if not claimed:
                return []
            result = await db.execute(
                select(Job).where(Job.id.in_(claimed)).order_by(Job.run_at)
            )
            return list(result.scalars().all())

    async def _run_bounded(self, job: Job) -> None:
        async with self._semaphore:
            await self._execute(job)

    async def _execute(self, job: Job) -> None:
        handler = self._handlers.get(job.kind)
        try:
            if handler is None:
                raise UnknownJobKindError(job.kind)
            await handler(job.payload)
        except Exception as e:
            logger.error(
                f"Job {job.id} ({job.kind}) failed on attempt "
                f"{job.attempts}/{job.max_attempts}: {e}"
            )
            await self._finish(job, error=str(e)[:1000] or e.__class__.__name__)
        else:
            await self._finish(job)

    async def _finish(self, job: Job, error: Optional[str] = None) -> None:
        now = utcnow()
        async with self._session_factory() as db:
            if error is None:
                values = {"status": "completed", "finished_at": now, "last_error": None}
                status = "completed"
            elif job.attempts < job.max_attempts:
                backoff = self._retry_backoff_seconds * (2 ** (job.attempts - 1))
                values = {
                    "status": "pending",
                    "run_at": now + timedelta(seconds=backoff),
                    "last_error": error,
                }
                status = "pending"
            else:
                values = {"status": "failed", "finished_at": now, "last_error": error}
                status = "failed"

            await db.execute(
                update(Job)
                .where(Job.id == job.id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if status == "completed":
                await self._trim_history(db, job.kind, "completed", self._keep_completed)
            elif status == "failed":
                await self._trim_history(db, job.kind, "failed", self._keep_failed)
            await db.commit()

    async def _trim_history(self, db: AsyncSession, kind: str, status: str, keep: int) -> None:
        result = await db.execute(
            select(Job.id)
            .where(Job.kind == kind, Job.status == status)
            .order_by(Job.finished_at.desc(), Job.created_at.desc())
            .offset(keep)
        )
        stale_ids = result.scalars().all()
        if stale_ids:
            await db.execute(
                delete(Job)
                .where(Job.id.in_(stale_ids))
                .execution_options(synchronize_session=False)
            )
