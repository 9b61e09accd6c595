"""
Uptime and response-time aggregation over a trailing window of checks.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pulsewatch.database import utcnow
from pulsewatch.models.check import Check
from pulsewatch.models.monitor import Monitor

logger = logging.getLogger("pulsewatch.stats")

STATS_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class UptimeStats:
    uptime_percentage: float
    avg_response_time: int
    total_checks: int
    up_checks: int


def _round_half_up(value: Decimal, places: str) -> Decimal:
    return value.quantize(Decimal(places), rounding=ROUND_HALF_UP)


def compute_uptime_stats(checks: Iterable[Check]) -> UptimeStats:
    """Pure aggregation; an empty window yields zeros, never NaN."""
    total = 0
    up = 0
    response_times = []
    for check in checks:
        total += 1
        if check.status == "up":
            up += 1
            if check.response_time is not None:
                response_times.append(check.response_time)

    if total == 0:
        return UptimeStats(uptime_percentage=0.0, avg_response_time=0, total_checks=0, up_checks=0)

    uptime = _round_half_up(Decimal(up) * 100 / Decimal(total), "0.01")
    avg = 0
    if response_times:
        avg = int(_round_half_up(Decimal(sum(response_times)) / len(response_times), "1"))
    return UptimeStats(
        uptime_percentage=float(uptime),
        avg_response_time=avg,
        total_checks=total,
        up_checks=up,
    )


async def load_window(
    db: AsyncSession, monitor_id: str, now: Optional[datetime] = None
) -> list[Check]:
    since = (now or utcnow()) - STATS_WINDOW
    result = await db.execute(
        select(Check).where(Check.monitor_id == monitor_id, Check.checked_at >= since)
    )
    return list(result.scalars().all())


async def last_check_status(db: AsyncSession, monitor_id: str) -> str:
    """Status of the most recent check, or "up" for a monitor never checked."""
    result = await db.execute(
        select(Check.status)
        .where(Check.monitor_id == monitor_id)
        .order_by(Check.checked_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none() or "up"


async def refresh_monitor_stats(
    db: AsyncSession, monitor: Monitor, now: Optional[datetime] = None
) -> UptimeStats:
    """Recompute the monitor's rolling stats from stored history (caller commits)."""
    stats = compute_uptime_stats(await load_window(db, monitor.id, now))
    monitor.uptime_percentage = stats.uptime_percentage
    monitor.avg_response_time = stats.avg_response_time
    return stats


async def recalculate_all_stats(session_factory: async_sessionmaker[AsyncSession]) -> int:
    """Hourly backstop: refresh every active monitor."""
    async with session_factory() as db:
        result = await db.execute(select(Monitor).where(Monitor.is_active == True))  # noqa: E712
        monitors = result.scalars().all()
        for monitor in monitors:
            await refresh_monitor_stats(db, monitor)
        await db.commit()
    logger.info(f"Recalculated stats for {len(monitors)} monitor(s)")
    return len(monitors)
