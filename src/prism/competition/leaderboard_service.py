"""Leaderboard service: period-scoped rankings cached as timestamped generations.

Every calculation writes one generation of ``leaderboard_entries`` rows sharing
a ``calculated_at``. Reads serve the newest generation for the (period,
platform) pair while it is younger than ``leaderboard_cache_ttl_seconds``;
otherwise the board is recomputed synchronously.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import ColumnElement, delete, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession

from prism.analytics.points import ActivityCounters, aggregate_counters, calculate_points
from prism.analytics.streaks import live_streak
from prism.competition.ranking import rank_entries
from prism.competition.schemas import LeaderboardResponse, LeaderboardRow
from prism.config import Settings, get_settings
from prism.db.enums import LeaderboardPeriod, Platform, parse_period, parse_platform
from prism.db.models import LeaderboardEntry, PlatformConnection, User
from prism.errors import ValidationError
from prism.timeutils import local_today, period_start, utcnow

logger = logging.getLogger(__name__)


def _platform_filter(platform: Platform | None) -> ColumnElement[bool]:
    if platform is None:
        return LeaderboardEntry.platform.is_(None)
    return LeaderboardEntry.platform == platform


def _validate(
    period: str | LeaderboardPeriod, limit: int, platform: str | Platform | None, settings: Settings
) -> tuple[LeaderboardPeriod, Platform | None]:
    if not 1 <= limit <= settings.leaderboard_cache_size:
        raise ValidationError(f"limit must be between 1 and {settings.leaderboard_cache_size}")
    return parse_period(period), parse_platform(platform) if platform is not None else None


async def _candidates(db: AsyncSession, platform: Platform | None, settings: Settings) -> list[User]:
    """Active users, bounded. Platform boards only consider users with an active connection there."""
    stmt = select(User).where(User.is_active.is_(True))
    if platform is not None:
        stmt = stmt.where(
            User.id.in_(
                select(PlatformConnection.user_id).where(
                    PlatformConnection.platform == platform,
                    PlatformConnection.is_active.is_(True),
                )
            )
        )
    stmt = stmt.order_by(User.total_points.desc(), User.id.asc()).limit(settings.leaderboard_max_candidates)
    return list((await db.execute(stmt)).scalars())


async def calculate_leaderboard(
    db: AsyncSession,
    period: str | LeaderboardPeriod,
    limit: int = 100,
    platform: str | Platform | None = None,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> LeaderboardResponse:
    """Compute, cache and return a board.

    ALL_TIME global scores are each user's cached lifetime total. Other boards
    score the period's counters (or one platform's counters) with the lifetime
    weights and no streak bonus.
    """
    settings = settings or get_settings()
    period, platform = _validate(period, limit, platform, settings)
    now = now or utcnow()
    today = local_today(settings.timezone, now)

    users = await _candidates(db, platform, settings)
    counters = await aggregate_counters(
        db, start=period_start(period, today), platform=platform, tz=settings.timezone
    )

    entries = []
    for user in users:
        c = counters.get(user.id, ActivityCounters())
        if period is LeaderboardPeriod.ALL_TIME and platform is None:
            score = user.total_points
        else:
            score = calculate_points(c)
        entries.append(
            {
                "user_id": user.id,
                "username": user.username,
                "avatar_url": user.avatar_url,
                "score": score,
                "commits_count": c.commits,
                "problems_solved": c.problems_solved,
                "tasks_completed": c.tasks_completed,
                "missions_completed": c.missions_completed,
                "streak_days": live_streak(user, today),
            }
        )
    ranked = rank_entries(entries)

    cached = ranked[: settings.leaderboard_cache_size]
    if cached:
        await db.execute(
            insert(LeaderboardEntry),
            [
                {
                    "user_id": e["user_id"],
                    "period": period,
                    "platform": platform,
                    "rank": e["rank"],
                    "score": e["score"],
                    "commits_count": e["commits_count"],
                    "problems_solved": e["problems_solved"],
                    "tasks_completed": e["tasks_completed"],
                    "missions_completed": e["missions_completed"],
                    "streak_days": e["streak_days"],
                    "calculated_at": now,
                }
                for e in cached
            ],
        )
        await db.flush()

    logger.info(
        "Leaderboard %s/%s calculated: %d ranked",
        period.value,
        platform.value if platform else "global",
        len(ranked),
    )
    return LeaderboardResponse(
        period=period,
        platform=platform,
        calculated_at=now,
        cached=False,
        entries=[LeaderboardRow(**e) for e in ranked[:limit]],
    )


async def _fresh_generation(
    db: AsyncSession,
    period: LeaderboardPeriod,
    platform: Platform | None,
    settings: Settings,
    now: datetime,
) -> datetime | None:
    cutoff = now - timedelta(seconds=settings.leaderboard_cache_ttl_seconds)
    return await db.scalar(
        select(func.max(LeaderboardEntry.calculated_at)).where(
            LeaderboardEntry.period == period,
            _platform_filter(platform),
            LeaderboardEntry.calculated_at >= cutoff,
        )
    )


async def get_leaderboard(
    db: AsyncSession,
    period: str | LeaderboardPeriod,
    limit: int = 100,
    platform: str | Platform | None = None,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> LeaderboardResponse:
    """Serve the newest fresh generation, or recompute when there is none."""
    settings = settings or get_settings()
    period, platform = _validate(period, limit, platform, settings)
    now = now or utcnow()

    generation = await _fresh_generation(db, period, platform, settings, now)
    if generation is None:
        return await calculate_leaderboard(db, period, limit, platform, settings=settings, now=now)

    result = await db.execute(
        select(LeaderboardEntry, User.username, User.avatar_url)
        .join(User, User.id == LeaderboardEntry.user_id)
        .where(
            LeaderboardEntry.period == period,
            _platform_filter(platform),
            LeaderboardEntry.calculated_at == generation,
        )
        .order_by(LeaderboardEntry.rank.asc())
        .limit(limit)
    )
    rows = [
        LeaderboardRow(
            rank=entry.rank,
            user_id=entry.user_id,
            username=username,
            avatar_url=avatar_url,
            score=entry.score,
            commits_count=entry.commits_count,
            problems_solved=entry.problems_solved,
            tasks_completed=entry.tasks_completed,
            missions_completed=entry.missions_completed,
            streak_days=entry.streak_days,
        )
        for entry, username, avatar_url in result
    ]
    return LeaderboardResponse(
        period=period, platform=platform, calculated_at=generation, cached=True, entries=rows
    )


async def get_user_rank(
    db: AsyncSession,
    user_id: int,
    period: str | LeaderboardPeriod,
    platform: str | Platform | None = None,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> int | None:
    """User's rank in the current generation; None when outside the cached top N."""
    settings = settings or get_settings()
    response = await get_leaderboard(db, period, 1, platform, settings=settings, now=now)
    return await db.scalar(
        select(LeaderboardEntry.rank).where(
            LeaderboardEntry.user_id == user_id,
            LeaderboardEntry.period == response.period,
            _platform_filter(response.platform),
            LeaderboardEntry.calculated_at == response.calculated_at,
        )
    )


async def latest_user_rank(
    db: AsyncSession,
    user_id: int,
    period: str | LeaderboardPeriod,
    platform: str | Platform | None = None,
) -> int | None:
    """User's rank in the newest stored generation, however old. Never computes a board."""
    period = parse_period(period)
    platform = parse_platform(platform) if platform is not None else None
    newest = (
        select(func.max(LeaderboardEntry.calculated_at))
        .where(LeaderboardEntry.period == period, _platform_filter(platform))
        .scalar_subquery()
    )
    return await db.scalar(
        select(LeaderboardEntry.rank).where(
            LeaderboardEntry.user_id == user_id,
            LeaderboardEntry.period == period,
            _platform_filter(platform),
            LeaderboardEntry.calculated_at == newest,
        )
    )

async def prune_leaderboard_generations(
    db: AsyncSession, settings: Settings | None = None, now: datetime | None = None
) -> int:
    """Delete generations older than ``leaderboard_retention_days``."""
    settings = settings or get_settings()
    cutoff = (now or utcnow()) - timedelta(days=settings.leaderboard_retention_days)
    result = await db.execute(delete(LeaderboardEntry).where(LeaderboardEntry.calculated_at < cutoff))
    logger.info("Pruned %d leaderboard rows older than %s", result.rowcount, cutoff.isoformat())
    return result.rowcount
