"""Caller-facing analytics operations and the stats recalculation flow."""

from __future__ import annotations

import logging
from datetime import date

from sqlalchemy.ext.asyncio import AsyncSession

from prism.analytics.heatmap import get_activity_summary, get_heatmap, update_heatmap
from prism.analytics.points import calculate_total_points, get_points_breakdown
from prism.analytics.schemas import ActivityHeatmapResponse, PointsBreakdown, StreakStats, UserStats
from prism.analytics.streaks import calculate_streaks, has_activity_today, live_streak
from prism.competition.leaderboard_service import latest_user_rank
from prism.config import Settings, get_settings
from prism.db.enums import LeaderboardPeriod
from prism.db.models import User
from prism.errors import NotFoundError, ValidationError
from prism.timeutils import local_today

logger = logging.getLogger(__name__)

MAX_HEATMAP_DAYS = 366
SUMMARY_DAYS = 30


async def recalculate_user_stats(
    db: AsyncSession, user_id: int, day: date, settings: Settings | None = None
) -> dict[str, int]:
    """Heatmap for ``day``, then streaks, then lifetime points.

    Every step rebuilds from source rows, so running the same (user, day) twice
    leaves identical results. The caller commits.
    """
    settings = settings or get_settings()
    if await db.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")

    heatmap = await update_heatmap(db, user_id, day, settings.timezone)
    streaks = await calculate_streaks(db, user_id, local_today(settings.timezone))
    total_points = await calculate_total_points(db, user_id)
    return {
        "activity_score": heatmap.activity_score,
        "current_streak": streaks.current_streak,
        "longest_streak": streaks.longest_streak,
        "total_points": total_points,
    }


async def get_user_stats(db: AsyncSession, user_id: int, settings: Settings | None = None) -> UserStats:
    """Cached points and streaks plus a 30-day summary.

    Read-only: the rank comes from the newest stored ALL_TIME generation and is
    None until the leaderboard refresh has produced one.
    """
    settings = settings or get_settings()
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")

    today = local_today(settings.timezone)
    current = live_streak(user, today)
    streaks = StreakStats(
        current_streak=current,
        longest_streak=user.longest_streak,
        last_activity_date=user.last_activity_date,
        is_active_today=await has_activity_today(db, user_id, today),
        streak_status="active" if current > 0 else "broken",
    )
    return UserStats(
        user_id=user.id,
        username=user.username,
        total_points=user.total_points,
        points=PointsBreakdown(**await get_points_breakdown(db, user_id)),
        streaks=streaks,
        summary=await get_activity_summary(db, user_id, SUMMARY_DAYS, today),
        rank=await latest_user_rank(db, user_id, LeaderboardPeriod.ALL_TIME),
    )


async def get_activity_heatmap(
    db: AsyncSession, user_id: int, days: int = 365, settings: Settings | None = None
) -> ActivityHeatmapResponse:
    settings = settings or get_settings()
    if not 1 <= days <= MAX_HEATMAP_DAYS:
        raise ValidationError(f"days must be between 1 and {MAX_HEATMAP_DAYS}")
    if await db.get(User, user_id) is None:
        raise NotFoundError(f"User {user_id} not found")

    today = local_today(settings.timezone)
    return ActivityHeatmapResponse(
        user_id=user_id,
        days=days,
        entries=await get_heatmap(db, user_id, days, today),
        summary=await get_activity_summary(db, user_id, days, today),
    )
