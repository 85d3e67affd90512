"""Activity heatmap aggregator: one rolled-up row per (user, local day)."""

from __future__ import annotations

import logging
from datetime import date, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from prism.analytics.schemas import ActivitySummary, HeatmapDay
from prism.db.enums import TaskStatus
from prism.db.models import ActivityHeatmapEntry, PlatformStat, Task
from prism.db.upsert import upsert
from prism.timeutils import day_bounds, utcnow

logger = logging.getLogger(__name__)

COMMIT_WEIGHT = 5
PROBLEM_WEIGHT = 10
TASK_WEIGHT = 3
EVENT_WEIGHT = 1


def activity_score(commits: int, problems_solved: int, tasks_completed: int, calendar_events: int) -> int:
    return (
        commits * COMMIT_WEIGHT
        + problems_solved * PROBLEM_WEIGHT
        + tasks_completed * TASK_WEIGHT
        + calendar_events * EVENT_WEIGHT
    )


async def update_heatmap(db: AsyncSession, user_id: int, day: date, tz: str) -> HeatmapDay:
    """Recompute the (user, day) row from source tables and upsert it.

    Idempotent: the row is always rebuilt from PlatformStat and Task, never
    incremented.
    """
    result = await db.execute(
        select(
            func.coalesce(func.sum(PlatformStat.commits), 0),
            func.coalesce(func.sum(PlatformStat.problems_solved), 0),
            func.coalesce(func.sum(PlatformStat.calendar_events), 0),
        ).where(
            PlatformStat.user_id == user_id,
            PlatformStat.date == day,
            PlatformStat.is_baseline.is_(False),
        )
    )
    commits, problems, events = (int(v) for v in result.one())

    start, end = day_bounds(day, tz)
    tasks = int(
        await db.scalar(
            select(func.count(Task.id)).where(
                Task.user_id == user_id,
                Task.status == TaskStatus.COMPLETED,
                Task.completed_at >= start,
                Task.completed_at < end,
            )
        )
        or 0
    )

    row = HeatmapDay(
        date=day,
        activity_score=activity_score(commits, problems, tasks, events),
        commits=commits,
        problems_solved=problems,
        tasks_completed=tasks,
        calendar_events=events,
        total_activities=commits + problems + tasks + events,
    )
    await upsert(
        db,
        ActivityHeatmapEntry,
        {"user_id": user_id, **row.model_dump(), "updated_at": utcnow()},
        conflict_columns=["user_id", "date"],
    )
    logger.debug("Heatmap for user %d on %s: score=%d", user_id, day, row.activity_score)
    return row


async def get_heatmap(db: AsyncSession, user_id: int, days: int, today: date) -> list[HeatmapDay]:
    """Rows for the trailing ``days`` local days ending today, oldest first. Missing days are omitted."""
    start = today - timedelta(days=days - 1)
    result = await db.execute(
        select(ActivityHeatmapEntry)
        .where(
            ActivityHeatmapEntry.user_id == user_id,
            ActivityHeatmapEntry.date >= start,
            ActivityHeatmapEntry.date <= today,
        )
        .order_by(ActivityHeatmapEntry.date.asc())
    )
    return [
        HeatmapDay(
            date=e.date,
            activity_score=e.activity_score,
            commits=e.commits,
            problems_solved=e.problems_solved,
            tasks_completed=e.tasks_completed,
            calendar_events=e.calendar_events,
            total_activities=e.total_activities,
        )
        for e in result.scalars()
    ]


async def get_activity_summary(db: AsyncSession, user_id: int, days: int, today: date) -> ActivitySummary:
    """Totals, average daily score and active-day count over the trailing window."""
    start = today - timedelta(days=days - 1)
    window = (
        ActivityHeatmapEntry.user_id == user_id,
        ActivityHeatmapEntry.date >= start,
        ActivityHeatmapEntry.date <= today,
    )
    result = await db.execute(
        select(
            func.coalesce(func.sum(ActivityHeatmapEntry.activity_score), 0).label("score"),
            func.coalesce(func.sum(ActivityHeatmapEntry.commits), 0).label("commits"),
            func.coalesce(func.sum(ActivityHeatmapEntry.problems_solved), 0).label("problems"),
            func.coalesce(func.sum(ActivityHeatmapEntry.tasks_completed), 0).label("tasks"),
            func.coalesce(func.sum(ActivityHeatmapEntry.calendar_events), 0).label("events"),
            func.coalesce(func.sum(ActivityHeatmapEntry.total_activities), 0).label("total"),
        ).where(*window)
    )
    sums = result.one()
    active_days = int(
        await db.scalar(
            select(func.count(ActivityHeatmapEntry.id)).where(*window, ActivityHeatmapEntry.total_activities > 0)
        )
        or 0
    )
    total_score = int(sums.score)
    return ActivitySummary(
        days=days,
        total_activity_score=total_score,
        # averaged over the whole window, so idle days pull it down
        average_activity_score=round(total_score / days, 2) if days else 0.0,
        total_commits=int(sums.commits),
        total_problems_solved=int(sums.problems),
        total_tasks_completed=int(sums.tasks),
        total_calendar_events=int(sums.events),
        total_activities=int(sums.total),
        active_days=active_days,
    )
