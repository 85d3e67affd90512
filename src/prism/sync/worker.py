"""Sync lane arq worker functions.

The worker never loops on failure itself: it records the attempt, then raises
``arq.Retry`` (retryable error, attempts left) or the error (permanent
failure) so arq's own ``job_try`` accounting is the only attempt counter.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, timedelta

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prism.config import Settings
from prism.db.enums import Platform, SyncJobStatus, SyncStatus, parse_platform
from prism.db.models import PlatformConnection, SyncJob
from prism.db.upsert import insert_ignore
from prism.errors import InvalidCredentialError, NotFoundError, PrismError, classify_error
from prism.integrations.registry import IntegrationRegistry
from prism.sync.queue import retry_or_fail
from prism.sync.status_tracker import begin_sync, set_status, truncate_error
from prism.stats.store import reset_touched, touched_days
from prism.timeutils import local_today, utcnow

logger = structlog.get_logger()


@dataclass(frozen=True)
class SyncOutcome:
    """Result of one sync attempt as seen by the job function."""

    status: SyncJobStatus
    error: PrismError | None = None
    deactivated: bool = False
    # local days whose aggregates need rebuilding
    days: frozenset[date] = field(default_factory=frozenset)


async def _get_or_create_job(
    db: AsyncSession, job_id: str, conn: PlatformConnection
) -> SyncJob:
    # the enqueueing service may be inserting the same row concurrently
    await insert_ignore(
        db,
        SyncJob,
        {
            "job_id": job_id,
            "user_id": conn.user_id,
            "connection_id": conn.id,
            "platform": conn.platform,
            "status": SyncJobStatus.QUEUED,
        },
        conflict_columns=["job_id"],
    )
    result = await db.execute(
        select(SyncJob).where(SyncJob.job_id == job_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def _finish_job(
    db: AsyncSession, job_id: str, status: SyncJobStatus, error_message: str | None, settings: Settings
) -> None:
    result = await db.execute(
        select(SyncJob).where(SyncJob.job_id == job_id).execution_options(populate_existing=True)
    )
    job = result.scalar_one()
    job.status = status
    job.completed_at = utcnow()
    job.error_message = truncate_error(error_message, settings.sync_error_max_length) if error_message else None


async def _record_failure(
    db: AsyncSession,
    connection_id: int,
    job_id: str,
    error: PrismError,
    settings: Settings,
) -> bool:
    """Persist a failed attempt after the sync transaction was rolled back.

    Returns True when the connection was deactivated for a bad credential.
    """
    conn = await set_status(db, connection_id, SyncStatus.FAILED, error.message, settings=settings)
    deactivated = False
    if isinstance(error, InvalidCredentialError) and conn.is_active:
        conn.is_active = False
        deactivated = True
    await _finish_job(db, job_id, SyncJobStatus.FAILED, error.message, settings)
    await db.commit()
    return deactivated


async def run_sync(
    session_factory: async_sessionmaker[AsyncSession],
    registry: IntegrationRegistry,
    settings: Settings,
    *,
    user_id: int,
    connection_id: int,
    platform: Platform,
    job_id: str,
    job_try: int = 1,
) -> SyncOutcome:
    """One sync attempt for one connection.

    1. mark the SyncJob PROCESSING and claim the connection (SYNCING), committed
       before any remote call;
    2. run the adapter under ``sync_timeout_seconds``;
    3. on success re-check ``is_active`` (late-result discard), then commit the
       stat rows with COMPLETED;
    4. on failure roll the stat writes back and commit FAILED with the
       truncated error.
    """
    log = logger.bind(job_id=job_id, connection_id=connection_id, platform=platform.value, job_try=job_try)
    db = session_factory()
    try:
        conn = await db.get(PlatformConnection, connection_id)
        if conn is None:
            raise NotFoundError(f"Platform connection {connection_id} not found")
        job = await _get_or_create_job(db, job_id, conn)

        if job.status is SyncJobStatus.CANCELLED:
            log.info("sync_skipped_cancelled")
            return SyncOutcome(SyncJobStatus.CANCELLED)

        if not conn.is_active:
            await _finish_job(db, job_id, SyncJobStatus.CANCELLED, "Connection is inactive", settings)
            await db.commit()
            log.info("sync_skipped_inactive")
            return SyncOutcome(SyncJobStatus.CANCELLED)

        if not await begin_sync(db, connection_id, settings=settings):
            await _finish_job(db, job_id, SyncJobStatus.CANCELLED, "Coalesced: connection already syncing", settings)
            await db.commit()
            log.info("sync_coalesced")
            return SyncOutcome(SyncJobStatus.CANCELLED)

        job.status = SyncJobStatus.PROCESSING
        job.attempts = job_try
        job.started_at = utcnow()
        job.completed_at = None
        await db.commit()

        reset_touched(db)
        try:
            await asyncio.wait_for(
                registry.sync_platform(db, user_id, connection_id, platform),
                timeout=settings.sync_timeout_seconds,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            error = classify_error(exc)
            await db.rollback()
            deactivated = await _record_failure(db, connection_id, job_id, error, settings)
            log.warning("sync_failed", error=error.message, code=error.code, deactivated=deactivated)
            return SyncOutcome(SyncJobStatus.FAILED, error=error, deactivated=deactivated)

        result = await db.execute(
            select(PlatformConnection.is_active)
            .where(PlatformConnection.id == connection_id)
            .execution_options(populate_existing=True)
        )
        if not result.scalar_one():
            await db.rollback()
            reason = "Connection disconnected during sync"
            await set_status(db, connection_id, SyncStatus.FAILED, reason, settings=settings)
            await _finish_job(db, job_id, SyncJobStatus.CANCELLED, reason, settings)
            await db.commit()
            log.info("sync_result_discarded")
            return SyncOutcome(SyncJobStatus.CANCELLED)

        days = frozenset(touched_days(db, settings.timezone) | {local_today(settings.timezone)})
        await set_status(db, connection_id, SyncStatus.COMPLETED, settings=settings)
        await _finish_job(db, job_id, SyncJobStatus.COMPLETED, None, settings)
        await db.commit()
        log.info("sync_completed", days=len(days))
        return SyncOutcome(SyncJobStatus.COMPLETED, days=days)
    finally:
        await db.close()


async def sync_platform(ctx: dict, user_id: int, connection_id: int, platform: str) -> str:  # type: ignore[type-arg]
    """arq job: sync one connection, then queue a stats recalculation for every
    local day the sync wrote to (always including today)."""
    settings: Settings = ctx["settings"]
    job_try = ctx.get("job_try", 1)
    platform_enum = parse_platform(platform)
    try:
        outcome = await run_sync(
            ctx["session_factory"],
            ctx["registry"],
            settings,
            user_id=user_id,
            connection_id=connection_id,
            platform=platform_enum,
            job_id=ctx["job_id"],
            job_try=job_try,
        )
    except NotFoundError:
        await ctx["scheduler"].cancel(connection_id, platform_enum)
        raise

    if outcome.status is SyncJobStatus.COMPLETED:
        for day in sorted(outcome.days):
            try:
                await ctx["queue"].enqueue_stats(user_id, day)
            except Exception:
                # aggregation is best-effort; the sync itself succeeded
                logger.warning("stats_enqueue_failed", user_id=user_id, day=day.isoformat(), exc_info=True)
        return outcome.status.value

    if outcome.error is None:
        return outcome.status.value

    if outcome.deactivated:
        await ctx["scheduler"].cancel(connection_id, platform_enum)
    raise retry_or_fail(outcome.error, job_try, settings)


async def dispatch_due_schedules(ctx: dict) -> int:  # type: ignore[type-arg]
    """Cron tick: enqueue recurring syncs whose fire time has passed."""
    return await ctx["scheduler"].dispatch_due()


async def prune_sync_history(ctx: dict) -> int:  # type: ignore[type-arg]
    """Cron: delete finished SyncJob audit rows past the retention window."""
    settings: Settings = ctx["settings"]
    cutoff = utcnow() - timedelta(days=settings.sync_history_retention_days)
    db = ctx["session_factory"]()
    try:
        result = await db.execute(
            delete(SyncJob).where(
                SyncJob.created_at < cutoff,
                SyncJob.status.in_(
                    [SyncJobStatus.COMPLETED, SyncJobStatus.FAILED, SyncJobStatus.CANCELLED]
                ),
            )
        )
        await db.commit()
        logger.info("sync_history_pruned", deleted=result.rowcount)
        return result.rowcount
    finally:
        await db.close()
