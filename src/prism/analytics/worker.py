"""Stats lane arq worker function."""

from __future__ import annotations

from datetime import date

import structlog

from prism.analytics.service import recalculate_user_stats
from prism.config import Settings
from prism.errors import classify_error
from prism.sync.queue import retry_or_fail

logger = structlog.get_logger()


async def recalculate_stats(ctx: dict, user_id: int, day_iso: str) -> dict[str, int]:  # type: ignore[type-arg]
    """arq job: rebuild heatmap, streaks and points for (user, day).

    Runs downstream of a successful sync; a failure here never affects the sync
    job that queued it.
    """
    settings: Settings = ctx["settings"]
    day = date.fromisoformat(day_iso)
    db = ctx["session_factory"]()
    try:
        result = await recalculate_user_stats(db, user_id, day, settings)
        await db.commit()
    except Exception as exc:
        await db.rollback()
        error = classify_error(exc)
        logger.error("stats_recalculation_failed", user_id=user_id, day=day_iso, error=error.message)
        failure = retry_or_fail(error, ctx.get("job_try", 1), settings)
        if failure is exc:
            raise
        raise failure from exc
    finally:
        await db.close()

    logger.info("stats_recalculated", user_id=user_id, day=day_iso, **result)
    return result
