"""Tests for uptime / response-time aggregation."""
import pytest
from datetime import timedelta

from sqlalchemy import select

from pulsewatch.database import utcnow
from pulsewatch.models.check import Check
from pulsewatch.models.monitor import Monitor
from pulsewatch.stats import compute_uptime_stats, recalculate_all_stats, refresh_monitor_stats


def _checks(*rows):
    return [Check(monitor_id="m", status=status, response_time=rt) for status, rt in rows]


def test_uptime_and_average_over_up_checks():
    stats = compute_uptime_stats(
        _checks(("up", 100), ("up", 200), ("down", None), ("up", 150))
    )
    assert stats.uptime_percentage == 75.0
    assert stats.avg_response_time == 150
    assert stats.total_checks == 4
    assert stats.up_checks == 3


def test_empty_window_is_zero():
    stats = compute_uptime_stats([])
    assert stats.uptime_percentage == 0.0
    assert stats.avg_response_time == 0
    assert stats.total_checks == 0


def test_down_response_times_do_not_count():
    stats = compute_uptime_stats(_checks(("up", 100), ("down", 30000)))
    assert stats.uptime_percentage == 50.0
    assert stats.avg_response_time == 100


def test_rounding_is_half_up():
    # 2 / 3 = 66.666..
    stats = compute_uptime_stats(_checks(("up", 100), ("up", 101), ("down", None)))
    assert stats.uptime_percentage == 66.67
    # (100 + 101) / 2 = 100.5
    assert stats.avg_response_time == 101


def test_all_down_has_no_average():
    stats = compute_uptime_stats(_checks(("down", 10), ("down", 20)))
    assert stats.uptime_percentage == 0.0
    assert stats.avg_response_time == 0


@pytest.mark.asyncio
async def test_refresh_only_uses_trailing_window(make_monitor, session_factory):
    monitor = await make_monitor()
    now = utcnow()
    async with session_factory() as db:
        db.add_all([
            Check(monitor_id=monitor.id, status="up", response_time=100, checked_at=now - timedelta(hours=1)),
            Check(monitor_id=monitor.id, status="down", checked_at=now - timedelta(hours=2)),
            # Outside the 24h window
            Check(monitor_id=monitor.id, status="down", checked_at=now - timedelta(hours=30)),
        ])
        await db.commit()

        db_monitor = await db.get(Monitor, monitor.id)
        stats = await refresh_monitor_stats(db, db_monitor, now)
        await db.commit()

    assert stats.total_checks == 2
    assert stats.uptime_percentage == 50.0
    assert stats.avg_response_time == 100


@pytest.mark.asyncio
async def test_recalculate_all_is_idempotent(make_monitor, session_factory):
    monitor = await make_monitor()
    paused = await make_monitor(name="Paused", is_active=False, uptime_percentage=12.5)
    now = utcnow()
    async with session_factory() as db:
        db.add_all([
            Check(monitor_id=monitor.id, status="up", response_time=120, checked_at=now - timedelta(minutes=5)),
            Check(monitor_id=monitor.id, status="up", response_time=80, checked_at=now - timedelta(minutes=10)),
        ])
        await db.commit()

    assert await recalculate_all_stats(session_factory) == 1
    async with session_factory() as db:
        first = (await db.execute(select(Monitor).where(Monitor.id == monitor.id))).scalar_one()
        first_values = (first.uptime_percentage, first.avg_response_time)

    await recalculate_all_stats(session_factory)
    async with session_factory() as db:
        second = (await db.execute(select(Monitor).where(Monitor.id == monitor.id))).scalar_one()
        untouched = await db.get(Monitor, paused.id)

    assert first_values == (100.0, 100)
    assert (second.uptime_percentage, second.avg_response_time) == first_values
    assert untouched.uptime_percentage == 12.5
