"""Maintenance window lookups shared by the scheduler and the check worker."""
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pulsewatch.models.maintenance import MaintenanceWindow


async def active_window(
    db: AsyncSession, monitor_id: str, now: datetime
) -> Optional[MaintenanceWindow]:
    """The window covering ``now`` for this monitor, if any (start inclusive, end exclusive)."""
    result = await db.execute(
        select(MaintenanceWindow)
        .where(
            MaintenanceWindow.monitor_id == monitor_id,
            MaintenanceWindow.start_time <= now,
            MaintenanceWindow.end_time > now,
        )
        .order_by(MaintenanceWindow.end_time.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def monitors_in_maintenance(db: AsyncSession, now: datetime) -> set[str]:
    result = await db.execute(
        select(MaintenanceWindow.monitor_id).where(
            MaintenanceWindow.start_time <= now,
            MaintenanceWindow.end_time > now,
        )
    )
    return set(result.scalars().all())
