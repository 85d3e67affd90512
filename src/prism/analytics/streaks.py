"""Streak calculator.

A day counts as active when its heatmap row has ``total_activities > 0``. The
current streak survives while the latest active day is today or yesterday
(local calendar days); a skipped day resets it to 0.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from prism.db.models import ActivityHeatmapEntry, User
from prism.errors import NotFoundError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreakInfo:
    current_streak: int = 0
    longest_streak: int = 0
    last_activity_date: date | None = None


def compute_streaks(active_dates: Iterable[date], today: date) -> StreakInfo:
    """Current and longest runs of consecutive active days."""
    dates = sorted(set(active_dates), reverse=True)
    if not dates:
        return StreakInfo()

    # runs, most recent first
    runs: list[int] = []
    run = 1
    for newer, older in zip(dates, dates[1:]):
        if (newer - older).days == 1:
            run += 1
        else:
            runs.append(run)
            run = 1
    runs.append(run)

    last = dates[0]
    current = runs[0] if (today - last).days <= 1 else 0
    return StreakInfo(current_streak=current, longest_streak=max(runs), last_activity_date=last)


async def active_dates(db: AsyncSession, user_id: int) -> list[date]:
    result = await db.execute(
        select(ActivityHeatmapEntry.date)
        .where(ActivityHeatmapEntry.user_id == user_id, ActivityHeatmapEntry.total_activities > 0)
        .order_by(ActivityHeatmapEntry.date.desc())
    )
    return list(result.scalars())


async def calculate_streaks(db: AsyncSession, user_id: int, today: date) -> StreakInfo:
    """Recompute streaks from the heatmap and cache them on the user."""
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")

    info = compute_streaks(await active_dates(db, user_id), today)
    user.current_streak = info.current_streak
    user.longest_streak = info.longest_streak
    user.last_activity_date = info.last_activity_date
    await db.flush()
    logger.info(
        "Streaks for user %d: current=%d longest=%d", user_id, info.current_streak, info.longest_streak
    )
    return info


async def has_activity_today(db: AsyncSession, user_id: int, today: date) -> bool:
    result = await db.execute(
        select(ActivityHeatmapEntry.id).where(
            ActivityHeatmapEntry.user_id == user_id,
            ActivityHeatmapEntry.date == today,
            ActivityHeatmapEntry.total_activities > 0,
        )
    )
    return result.first() is not None


def live_streak(user: User, today: date) -> int:
    """Cached current streak, zeroed if the cached last activity has lapsed since it was computed."""
    if user.last_activity_date is None or today - user.last_activity_date > timedelta(days=1):
        return 0
    return user.current_streak
