"""Caller-facing sync operations.

Triggers only record state and enqueue; they never run a sync inline. A
connection is marked PENDING only after the queue accepted a new job, so a
trigger coalesced into an existing job leaves the status untouched. The
caller's session is committed here.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from prism.config import Settings, get_settings
from prism.db.enums import Platform, SyncJobStatus, SyncStatus, parse_platform
from prism.db.models import PlatformConnection, SyncJob, User
from prism.db.upsert import insert_ignore
from prism.errors import ConfigurationError, NotFoundError, ValidationError, public_message
from prism.integrations.registry import IntegrationRegistry
from prism.sync.queue import JobQueue
from prism.sync.scheduler import SyncScheduler
from prism.sync.schemas import ConnectionStatus, SyncJobRecord, SyncTriggerResult
from prism.sync.status_tracker import set_status
from prism.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

MAX_HISTORY = 100


def _status(conn: PlatformConnection) -> ConnectionStatus:
    return ConnectionStatus(
        connection_id=conn.id,
        platform=conn.platform,
        external_username=conn.external_username,
        is_active=conn.is_active,
        sync_status=conn.sync_status,
        last_synced=conn.last_synced,
        message=public_message(conn.sync_status.value),
    )


async def _require_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")
    return user


async def _active_connections(
    db: AsyncSession, user_id: int, platform: Platform | None = None
) -> list[PlatformConnection]:
    stmt = select(PlatformConnection).where(
        PlatformConnection.user_id == user_id,
        PlatformConnection.is_active.is_(True),
    )
    if platform is not None:
        stmt = stmt.where(PlatformConnection.platform == platform)
    return list((await db.execute(stmt.order_by(PlatformConnection.id))).scalars())


async def _trigger_connection(
    db: AsyncSession, queue: JobQueue, conn: PlatformConnection, settings: Settings
) -> SyncTriggerResult:
    def result(status: str, job_id: str | None = None) -> SyncTriggerResult:
        return SyncTriggerResult(
            connection_id=conn.id,
            platform=conn.platform,
            status=status,
            job_id=job_id,
            message=public_message("PENDING" if status == "queued" else "SYNCING"),
        )

    if conn.sync_status is SyncStatus.SYNCING:
        started = conn.sync_started_at
        stale_before = utcnow() - timedelta(seconds=settings.sync_stale_after_seconds)
        if started is not None and as_utc(started) >= stale_before:
            return result("coalesced")
        # abandoned claim: the worker reclaims it

    job = await queue.enqueue_sync(conn.user_id, conn.id, conn.platform)
    if job is None:
        return result("coalesced")

    current = await db.scalar(select(PlatformConnection.sync_status).where(PlatformConnection.id == conn.id))
    # a worker that already claimed the job owns the status
    if current in (SyncStatus.COMPLETED, SyncStatus.FAILED):
        await set_status(db, conn.id, SyncStatus.PENDING, settings=settings)
    await insert_ignore(
        db,
        SyncJob,
        {
            "job_id": job.job_id,
            "user_id": conn.user_id,
            "connection_id": conn.id,
            "platform": conn.platform,
            "status": SyncJobStatus.QUEUED,
        },
        conflict_columns=["job_id"],
    )
    await db.commit()
    return result("queued", job.job_id)


async def trigger_sync(
    db: AsyncSession,
    queue: JobQueue,
    registry: IntegrationRegistry,
    user_id: int,
    platform: str | Platform,
    settings: Settings | None = None,
) -> list[SyncTriggerResult]:
    """Queue a sync for each of the user's active connections on ``platform``.

    A connection already SYNCING, or with an identical job still queued, is
    coalesced rather than queued twice.
    """
    settings = settings or get_settings()
    registry.get_adapter(platform)
    platform = parse_platform(platform)
    await _require_user(db, user_id)
    connections = await _active_connections(db, user_id, platform)
    if not connections:
        raise NotFoundError(f"No active {platform.value} connection for user {user_id}")
    return [await _trigger_connection(db, queue, conn, settings) for conn in connections]


async def trigger_sync_all(
    db: AsyncSession,
    queue: JobQueue,
    registry: IntegrationRegistry,
    user_id: int,
    settings: Settings | None = None,
) -> list[SyncTriggerResult]:
    """Queue a sync for every active connection; each is handled independently."""
    settings = settings or get_settings()
    await _require_user(db, user_id)
    results = []
    for conn in await _active_connections(db, user_id):
        if conn.platform not in registry.supported_platforms:
            results.append(
                SyncTriggerResult(
                    connection_id=conn.id,
                    platform=conn.platform,
                    status="unsupported",
                    message=ConfigurationError.public_message,
                )
            )
            continue
        results.append(await _trigger_connection(db, queue, conn, settings))
    logger.info("Triggered sync for user %d: %d connections", user_id, len(results))
    return results


async def connect_platform(
    db: AsyncSession,
    scheduler: SyncScheduler,
    registry: IntegrationRegistry,
    user_id: int,
    platform: str | Platform,
    external_username: str,
    *,
    credential: str | None = None,
    external_id: str | None = None,
    settings: Settings | None = None,
) -> ConnectionStatus:
    """Link an external account, or reactivate the same account's inactive row.

    ``credential`` is the already-encrypted blob. Supported platforms get a
    recurring sync scheduled with the platform's default cron.
    """
    settings = settings or get_settings()
    platform = parse_platform(platform)
    external_username = external_username.strip()
    if not external_username:
        raise ValidationError("external_username is required")
    await _require_user(db, user_id)

    result = await db.execute(
        select(PlatformConnection)
        .where(
            PlatformConnection.user_id == user_id,
            PlatformConnection.platform == platform,
            PlatformConnection.external_username == external_username,
        )
        .order_by(PlatformConnection.is_active.desc(), PlatformConnection.id.desc())
    )
    conn = result.scalars().first()
    if conn is None:
        conn = PlatformConnection(
            user_id=user_id,
            platform=platform,
            external_username=external_username,
            external_id=external_id,
            credential=credential,
            is_active=True,
            sync_status=SyncStatus.PENDING,
            meta={},
        )
        db.add(conn)
        await db.flush()
    else:
        conn.is_active = True
        if credential is not None:
            conn.credential = credential
        if external_id is not None:
            conn.external_id = external_id
        await db.flush()
        if conn.sync_status in (SyncStatus.COMPLETED, SyncStatus.FAILED):
            await set_status(db, conn.id, SyncStatus.PENDING, settings=settings)
    await db.commit()
    logger.info("User %d connected %s account %s", user_id, platform.value, external_username)

    if platform in registry.supported_platforms:
        await scheduler.schedule(user_id, conn.id, platform, settings.sync_cron_for(platform.value))
    return _status(conn)


async def disconnect_platform(
    db: AsyncSession, scheduler: SyncScheduler, user_id: int, connection_id: int
) -> ConnectionStatus:
    """Soft-delete a connection and cancel its recurring sync.

    An in-flight sync is not interrupted; its results are discarded when it
    tries to write.
    """
    conn = await db.get(PlatformConnection, connection_id)
    if conn is None or conn.user_id != user_id:
        raise NotFoundError(f"Platform connection {connection_id} not found")
    conn.is_active = False
    await db.commit()
    await scheduler.cancel(conn.id, conn.platform)
    logger.info("User %d disconnected connection %d", user_id, connection_id)
    return _status(conn)


async def get_sync_status(db: AsyncSession, user_id: int) -> list[ConnectionStatus]:
    await _require_user(db, user_id)
    return [_status(conn) for conn in await _active_connections(db, user_id)]


async def get_sync_history(db: AsyncSession, user_id: int, limit: int = 20) -> list[SyncJobRecord]:
    """Newest audit records first."""
    if not 1 <= limit <= MAX_HISTORY:
        raise ValidationError(f"limit must be between 1 and {MAX_HISTORY}")
    await _require_user(db, user_id)
    result = await db.execute(
        select(SyncJob)
        .where(SyncJob.user_id == user_id)
        .order_by(SyncJob.created_at.desc(), SyncJob.id.desc())
        .limit(limit)
    )
    return [
        SyncJobRecord(
            job_id=job.job_id,
            platform=job.platform,
            status=job.status,
            attempts=job.attempts,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )
        for job in result.scalars()
    ]


async def cancel_pending_syncs(db: AsyncSession, user_id: int) -> int:
    """Cancel the user's queued syncs that no worker has picked up yet.

    The arq jobs stay queued; a worker that receives one finds its audit row
    CANCELLED and skips it. Returns the number of cancelled jobs.
    """
    await _require_user(db, user_id)
    result = await db.execute(
        update(SyncJob)
        .where(SyncJob.user_id == user_id, SyncJob.status == SyncJobStatus.QUEUED)
        .values(status=SyncJobStatus.CANCELLED, error_message="Cancelled by user", completed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    logger.info("Cancelled %d queued syncs for user %d", result.rowcount, user_id)
    return result.rowcount
