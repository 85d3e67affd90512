"""Per-connection sync state machine.

``set_status`` is the only code path that writes ``sync_status``,
``sync_started_at`` and ``last_synced`` on a connection. Transitions::

    PENDING -> SYNCING -> COMPLETED | FAILED
    COMPLETED | FAILED -> PENDING

A sync always announces SYNCING before any remote call, so PENDING never goes
straight to a terminal state.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from prism.config import Settings, get_settings
from prism.db.enums import SyncStatus
from prism.db.models import PlatformConnection
from prism.errors import InvalidTransitionError, NotFoundError
from prism.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.PENDING: frozenset({SyncStatus.SYNCING, SyncStatus.PENDING}),
    SyncStatus.SYNCING: frozenset({SyncStatus.COMPLETED, SyncStatus.FAILED}),
    SyncStatus.COMPLETED: frozenset({SyncStatus.PENDING}),
    SyncStatus.FAILED: frozenset({SyncStatus.PENDING}),
}


def check_transition(current: SyncStatus, target: SyncStatus) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is allowed."""
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionError(f"Sync status cannot change from {current.value} to {target.value}")


def truncate_error(message: str, max_length: int) -> str:
    if len(message) <= max_length:
        return message
    return message[: max_length - 3] + "..."


async def _load_for_update(db: AsyncSession, connection_id: int) -> PlatformConnection:
    result = await db.execute(
        select(PlatformConnection)
        .where(PlatformConnection.id == connection_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    conn = result.scalar_one_or_none()
    if conn is None:
        raise NotFoundError(f"Platform connection {connection_id} not found")
    return conn


async def set_status(
    db: AsyncSession,
    connection_id: int,
    status: SyncStatus,
    error_message: str | None = None,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> PlatformConnection:
    """Move a connection to ``status``. The caller owns the transaction."""
    settings = settings or get_settings()
    now = now or utcnow()
    conn = await _load_for_update(db, connection_id)
    previous = conn.sync_status
    check_transition(previous, status)

    if status is SyncStatus.SYNCING:
        conn.sync_started_at = now
    elif status is SyncStatus.COMPLETED:
        conn.last_synced = now
        conn.sync_started_at = None
        meta = dict(conn.meta or {})
        meta.pop("last_error", None)
        meta.pop("last_error_at", None)
        conn.meta = meta
    elif status is SyncStatus.FAILED:
        conn.sync_started_at = None
        conn.meta = {
            **(conn.meta or {}),
            "last_error": truncate_error(error_message or "Unknown error", settings.sync_error_max_length),
            "last_error_at": now.isoformat(),
        }

    conn.sync_status = status
    await db.flush()
    if previous is not status:
        logger.info("Connection %d sync status %s -> %s", connection_id, previous.value, status.value)
    return conn


async def begin_sync(
    db: AsyncSession,
    connection_id: int,
    *,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> bool:
    """Claim a connection for syncing.

    Walks COMPLETED/FAILED through PENDING, then flips PENDING to SYNCING with a
    conditional UPDATE so that of two concurrent claims only one wins. A SYNCING
    claim older than ``sync_stale_after_seconds`` is considered abandoned: it is
    failed and reclaimed. Returns False when another sync holds the connection.
    """
    settings = settings or get_settings()
    now = now or utcnow()
    conn = await _load_for_update(db, connection_id)

    if conn.sync_status is SyncStatus.SYNCING:
        started = conn.sync_started_at
        cutoff = now - timedelta(seconds=settings.sync_stale_after_seconds)
        if started is not None and as_utc(started) >= cutoff:
            return False
        logger.warning("Connection %d has an abandoned sync claim, reclaiming", connection_id)
        await set_status(db, connection_id, SyncStatus.FAILED, "Sync abandoned", settings=settings, now=now)

    if conn.sync_status in (SyncStatus.COMPLETED, SyncStatus.FAILED):
        await set_status(db, connection_id, SyncStatus.PENDING, settings=settings, now=now)

    result = await db.execute(
        update(PlatformConnection)
        .where(
            PlatformConnection.id == connection_id,
            PlatformConnection.sync_status == SyncStatus.PENDING,
        )
        .values(sync_status=SyncStatus.SYNCING, sync_started_at=now)
        .execution_options(synchronize_session=False)
    )
    claimed = result.rowcount == 1
    await db.refresh(conn)
    if claimed:
        logger.info("Connection %d sync status PENDING -> SYNCING", connection_id)
    return claimed
