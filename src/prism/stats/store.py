"""Raw stat storage used by platform adapters.

Every write re-reads the connection's ``is_active`` flag first. A sync that
finishes after its connection was disconnected has its results discarded here,
so no PlatformStat or Task row is touched for an inactive connection.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from prism.db.enums import TaskSource, TaskStatus
from prism.db.models import PlatformConnection, PlatformStat, Task
from prism.db.upsert import upsert
from prism.errors import NotFoundError
from prism.timeutils import as_utc, local_date, utcnow

logger = logging.getLogger(__name__)

TOUCHED_KEY = "prism.touched"

COUNTER_FIELDS = (
    "commits",
    "pull_requests",
    "issues",
    "reviews",
    "problems_solved",
    "easy_solved",
    "medium_solved",
    "hard_solved",
    "contests_participated",
    "calendar_events",
)


async def _active_connection(db: AsyncSession, connection_id: int) -> PlatformConnection | None:
    result = await db.execute(
        select(PlatformConnection)
        .where(PlatformConnection.id == connection_id)
        .execution_options(populate_existing=True)
    )
    conn = result.scalar_one_or_none()
    if conn is None:
        raise NotFoundError(f"Platform connection {connection_id} not found")
    if not conn.is_active:
        logger.info("Discarding stats for inactive connection %d", connection_id)
        return None
    return conn


def _touch(db: AsyncSession, moment: date | datetime) -> None:
    db.info.setdefault(TOUCHED_KEY, set()).add(moment)


def reset_touched(db: AsyncSession) -> None:
    db.info.pop(TOUCHED_KEY, None)


def touched_days(db: AsyncSession, tz: str) -> set[date]:
    """Local days whose stat rows or task completions were written through ``db``.

    Collected since the last :func:`reset_touched`. Task completion timestamps
    are converted to calendar days in ``tz``.
    """
    days: set[date] = set()
    for moment in db.info.get(TOUCHED_KEY, ()):
        days.add(local_date(moment, tz) if isinstance(moment, datetime) else moment)
    return days


def daily_delta(current: dict[str, int], previous: dict[str, int] | None) -> dict[str, int]:
    """Per-day increments from two cumulative snapshots.

    With no previous snapshot the whole total counts as the increment. Totals
    that go down (deleted submissions, account resets) contribute 0.
    """
    previous = previous or {}
    return {key: max(0, int(value) - int(previous.get(key, 0))) for key, value in current.items()}


async def upsert_platform_stat(
    db: AsyncSession,
    connection_id: int,
    day: date,
    counters: dict[str, int],
    *,
    rating: int | None = None,
    detail: dict[str, Any] | None = None,
    baseline: bool = False,
) -> PlatformStat | None:
    """Upsert the (connection, day) stat row. Returns None when the write was discarded."""
    unknown = set(counters) - set(COUNTER_FIELDS)
    if unknown:
        raise ValueError(f"Unknown stat counters: {sorted(unknown)}")

    conn = await _active_connection(db, connection_id)
    if conn is None:
        return None

    values: dict[str, Any] = {field: int(counters.get(field, 0)) for field in COUNTER_FIELDS}
    values.update(
        connection_id=conn.id,
        user_id=conn.user_id,
        platform=conn.platform,
        date=day,
        rating=rating,
        detail=detail or {},
        is_baseline=baseline,
        updated_at=utcnow(),
    )
    await upsert(db, PlatformStat, values, conflict_columns=["connection_id", "date"])
    _touch(db, day)

    result = await db.execute(
        select(PlatformStat)
        .where(PlatformStat.connection_id == connection_id, PlatformStat.date == day)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def previous_totals(db: AsyncSession, connection_id: int, before: date) -> dict[str, int] | None:
    """Cumulative totals recorded by the latest stat row strictly before ``before``."""
    result = await db.execute(
        select(PlatformStat.detail)
        .where(PlatformStat.connection_id == connection_id, PlatformStat.date < before)
        .order_by(PlatformStat.date.desc())
        .limit(1)
    )
    detail = result.scalar_one_or_none()
    if not detail:
        return None
    return detail.get("totals")


async def record_cumulative_snapshot(
    db: AsyncSession,
    connection_id: int,
    day: date,
    totals: dict[str, int],
    *,
    rating: int | None = None,
    detail: dict[str, Any] | None = None,
) -> PlatformStat | None:
    """Store a platform that only reports lifetime totals as per-day increments.

    The day's row holds ``totals - previous day's totals``, so summing rows over
    any window never double-counts. Re-syncing the same day is idempotent.

    The first snapshot of a connection carries the whole account history. It is
    stored as a baseline row: lifetime sums include it, day and period windows
    do not.
    """
    previous = await previous_totals(db, connection_id, day)
    counters = daily_delta(totals, previous)
    return await upsert_platform_stat(
        db,
        connection_id,
        day,
        counters,
        rating=rating,
        detail={**(detail or {}), "totals": totals},
        baseline=previous is None,
    )


async def upsert_task(
    db: AsyncSession,
    connection_id: int,
    source: TaskSource,
    source_id: str,
    title: str,
    status: TaskStatus,
    completed_at: datetime | None = None,
) -> bool:
    """Upsert a tracker task for the connection's user. Returns False when discarded."""
    conn = await _active_connection(db, connection_id)
    if conn is None:
        return False
    previous = await db.scalar(
        select(Task.completed_at).where(
            Task.user_id == conn.user_id, Task.source == source, Task.source_id == source_id
        )
    )
    completed = as_utc(completed_at) if status is TaskStatus.COMPLETED and completed_at else None
    now = utcnow()
    await upsert(
        db,
        Task,
        {
            "user_id": conn.user_id,
            "source": source,
            "source_id": source_id,
            "title": title[:512],
            "status": status,
            "completed_at": completed,
            "created_at": now,
            "updated_at": now,
        },
        conflict_columns=["user_id", "source", "source_id"],
        update_columns=["title", "status", "completed_at", "updated_at"],
    )
    previous = as_utc(previous) if previous is not None else None
    if previous != completed:
        # reopening or moving a completion changes the old day as well
        for moment in (previous, completed):
            if moment is not None:
                _touch(db, moment)
    return True
