"""Leaderboard refresh arq worker: periodic generation rebuilds.

Intervals:
- All boards (global + per platform, every period): every hour
- Pruning of old generations: daily
"""

from __future__ import annotations

import logging

from prism.competition.leaderboard_service import calculate_leaderboard, prune_leaderboard_generations
from prism.config import Settings
from prism.db.enums import LeaderboardPeriod, Platform

logger = logging.getLogger(__name__)


async def refresh_leaderboards(ctx: dict) -> int:  # type: ignore[type-arg]
    """Recompute every board so reads within the TTL hit the cache. Returns boards refreshed."""
    settings: Settings = ctx["settings"]
    platforms: list[Platform | None] = [None, *sorted(ctx["registry"].supported_platforms, key=lambda p: p.value)]
    refreshed = 0
    for period in LeaderboardPeriod:
        for platform in platforms:
            db = ctx["session_factory"]()
            try:
                await calculate_leaderboard(db, period, 1, platform, settings=settings)
                await db.commit()
                refreshed += 1
            except Exception:
                await db.rollback()
                logger.exception(
                    "Leaderboard refresh failed for %s/%s", period.value, platform.value if platform else "global"
                )
            finally:
                await db.close()
    logger.info("Leaderboards refreshed: %d boards", refreshed)
    return refreshed


async def prune_leaderboards(ctx: dict) -> int:  # type: ignore[type-arg]
    """Delete cached generations past the retention window."""
    db = ctx["session_factory"]()
    try:
        deleted = await prune_leaderboard_generations(db, ctx["settings"])
        await db.commit()
        return deleted
    finally:
        await db.close()
