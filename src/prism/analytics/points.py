"""Points calculator.

Points are a pure weighted sum of counters. ``calculate_total_points`` always
recomputes the lifetime total from source rows, so calling it repeatedly is
idempotent.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from prism.db.enums import Platform, TaskSource, TaskStatus, UserMissionStatus
from prism.db.models import Mission, PlatformStat, Task, User, UserMission
from prism.errors import NotFoundError
from prism.timeutils import day_bounds

logger = logging.getLogger(__name__)

COMMIT_POINTS = 5
PULL_REQUEST_POINTS = 20
ISSUE_POINTS = 10
REVIEW_POINTS = 15
EASY_PROBLEM_POINTS = 10
MEDIUM_PROBLEM_POINTS = 20
HARD_PROBLEM_POINTS = 40
TASK_POINTS = 5

# (days, bonus), highest tier first; only the highest reached tier pays out
STREAK_MILESTONES: tuple[tuple[int, int], ...] = ((100, 2000), (30, 500), (7, 100))

# platform whose tasks count towards its per-platform board
TASK_PLATFORMS = {Platform.OPENPROJECT: TaskSource.OPENPROJECT}


@dataclass(frozen=True)
class ActivityCounters:
    """Summed activity over some window."""

    commits: int = 0
    pull_requests: int = 0
    issues: int = 0
    reviews: int = 0
    problems_solved: int = 0
    easy_solved: int = 0
    medium_solved: int = 0
    hard_solved: int = 0
    tasks_completed: int = 0
    missions_completed: int = 0
    mission_points: int = 0


def streak_bonus(streak: int) -> int:
    """Non-stacking milestone bonus for the current streak."""
    for days, bonus in STREAK_MILESTONES:
        if streak >= days:
            return bonus
    return 0


def github_points(c: ActivityCounters) -> int:
    return (
        c.commits * COMMIT_POINTS
        + c.pull_requests * PULL_REQUEST_POINTS
        + c.issues * ISSUE_POINTS
        + c.reviews * REVIEW_POINTS
    )


def problem_points(c: ActivityCounters) -> int:
    return (
        c.easy_solved * EASY_PROBLEM_POINTS
        + c.medium_solved * MEDIUM_PROBLEM_POINTS
        + c.hard_solved * HARD_PROBLEM_POINTS
    )


def calculate_points(counters: ActivityCounters, current_streak: int = 0) -> int:
    """Weighted total, never negative."""
    total = (
        github_points(counters)
        + problem_points(counters)
        + counters.tasks_completed * TASK_POINTS
        + counters.mission_points
        + streak_bonus(current_streak)
    )
    return max(0, total)


async def aggregate_counters(
    db: AsyncSession,
    *,
    user_ids: Iterable[int] | None = None,
    start: date | None = None,
    platform: Platform | None = None,
    tz: str = "UTC",
) -> dict[int, ActivityCounters]:
    """Sum counters per user from ``start`` (local day, inclusive) to now.

    ``start=None`` means lifetime, the only window that counts baseline rows
    (a lifetime-total platform's first snapshot). With ``platform`` only that
    platform's stat rows count; tasks only count for a platform that produces
    them and missions only count on the global board.
    """
    ids = list(user_ids) if user_ids is not None else None
    sums: dict[int, dict[str, int]] = {}

    stat_cols = (
        "commits",
        "pull_requests",
        "issues",
        "reviews",
        "problems_solved",
        "easy_solved",
        "medium_solved",
        "hard_solved",
    )
    stmt = select(
        PlatformStat.user_id,
        *(func.coalesce(func.sum(getattr(PlatformStat, col)), 0).label(col) for col in stat_cols),
    ).group_by(PlatformStat.user_id)
    if ids is not None:
        stmt = stmt.where(PlatformStat.user_id.in_(ids))
    if start is not None:
        stmt = stmt.where(PlatformStat.date >= start, PlatformStat.is_baseline.is_(False))
    if platform is not None:
        stmt = stmt.where(PlatformStat.platform == platform)
    for row in await db.execute(stmt):
        sums.setdefault(row.user_id, {}).update({col: int(getattr(row, col)) for col in stat_cols})

    start_at = day_bounds(start, tz)[0] if start is not None else None

    task_source = TASK_PLATFORMS.get(platform) if platform is not None else None
    if platform is None or task_source is not None:
        stmt = (
            select(Task.user_id, func.count(Task.id).label("n"))
            .where(Task.status == TaskStatus.COMPLETED)
            .group_by(Task.user_id)
        )
        if task_source is not None:
            stmt = stmt.where(Task.source == task_source)
        if ids is not None:
            stmt = stmt.where(Task.user_id.in_(ids))
        if start_at is not None:
            stmt = stmt.where(Task.completed_at >= start_at)
        for row in await db.execute(stmt):
            sums.setdefault(row.user_id, {})["tasks_completed"] = int(row.n)

    if platform is None:
        stmt = (
            select(
                UserMission.user_id,
                func.count(UserMission.id).label("n"),
                func.coalesce(func.sum(Mission.points), 0).label("points"),
            )
            .join(Mission, Mission.id == UserMission.mission_id)
            .where(UserMission.status == UserMissionStatus.COMPLETED)
            .group_by(UserMission.user_id)
        )
        if ids is not None:
            stmt = stmt.where(UserMission.user_id.in_(ids))
        if start_at is not None:
            stmt = stmt.where(UserMission.completed_at >= start_at)
        for row in await db.execute(stmt):
            bucket = sums.setdefault(row.user_id, {})
            bucket["missions_completed"] = int(row.n)
            bucket["mission_points"] = int(row.points)

    return {user_id: ActivityCounters(**values) for user_id, values in sums.items()}


async def _get_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


async def calculate_total_points(db: AsyncSession, user_id: int) -> int:
    """Recompute the lifetime total, cache it on the user and return it."""
    user = await _get_user(db, user_id)
    counters = (await aggregate_counters(db, user_ids=[user_id])).get(user_id, ActivityCounters())
    total = calculate_points(counters, user.current_streak)
    user.total_points = total
    await db.flush()
    logger.info("Total points for user %d: %d", user_id, total)
    return total


async def get_points_breakdown(db: AsyncSession, user_id: int) -> dict[str, int]:
    """Lifetime points per source. Read-only."""
    user = await _get_user(db, user_id)
    c = (await aggregate_counters(db, user_ids=[user_id])).get(user_id, ActivityCounters())
    breakdown = {
        "github": github_points(c),
        "problems": problem_points(c),
        "tasks": c.tasks_completed * TASK_POINTS,
        "missions": c.mission_points,
        "streak_bonus": streak_bonus(user.current_streak),
    }
    breakdown["total"] = max(0, sum(breakdown.values()))
    return breakdown
