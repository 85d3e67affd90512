"""arq-backed job queue with two lanes: platform sync and stats recalculation.

Job ids are deterministic per (target, time bucket). arq refuses to enqueue a
job whose id is already queued, running, or kept as a result, so a second
request for the same connection inside one dedup window is coalesced.
"""

from __future__ import annotations

import math
from datetime import date, datetime

import structlog
from arq import Retry
from arq.connections import ArqRedis
from arq.jobs import Job

from prism.config import Settings
from prism.db.enums import Platform
from prism.errors import PrismError
from prism.timeutils import utcnow

logger = structlog.get_logger()

SYNC_JOB = "sync_platform"
STATS_JOB = "recalculate_stats"


def time_bucket(now: datetime, window_seconds: int) -> int:
    """Index of the dedup window containing ``now``."""
    return math.floor(now.timestamp() / max(1, window_seconds))


def sync_job_id(platform: Platform, connection_id: int, bucket: int) -> str:
    return f"sync:{platform.value}:{connection_id}:{bucket}"


def stats_job_id(user_id: int, day: date, bucket: int) -> str:
    return f"stats:{user_id}:{day.isoformat()}:{bucket}"


def backoff_delay(job_try: int, base: float, cap: float) -> float:
    """Exponential backoff in seconds before attempt ``job_try + 1``: base, 2*base, 4*base, ..."""
    return min(cap, base * 2 ** max(0, job_try - 1))


def retry_or_fail(error: PrismError, job_try: int, settings: Settings) -> BaseException:
    """Exception a job function should raise after ``error`` on attempt ``job_try``.

    Retryable errors below the attempt budget become ``arq.Retry`` with the
    backoff delay. Everything else is returned as-is, which arq records as a
    permanent failure.
    """
    if error.retryable and job_try < settings.queue_max_tries:
        defer = backoff_delay(job_try, settings.queue_backoff_base_seconds, settings.queue_backoff_max_seconds)
        return Retry(defer=defer)
    return error


class JobQueue:
    """Enqueue side of both lanes. Never blocks on job execution."""

    def __init__(self, pool: ArqRedis, settings: Settings) -> None:
        self._pool = pool
        self._settings = settings

    async def enqueue_sync(
        self,
        user_id: int,
        connection_id: int,
        platform: Platform,
        *,
        now: datetime | None = None,
    ) -> Job | None:
        """Queue a sync for one connection. Returns None when coalesced into an existing job."""
        bucket = time_bucket(now or utcnow(), self._settings.queue_dedup_window_seconds)
        job_id = sync_job_id(platform, connection_id, bucket)
        job = await self._pool.enqueue_job(
            SYNC_JOB,
            user_id,
            connection_id,
            platform.value,
            _job_id=job_id,
            _queue_name=self._settings.sync_queue_name,
        )
        if job is None:
            logger.info("sync_job_coalesced", job_id=job_id, connection_id=connection_id)
        else:
            logger.info("sync_job_enqueued", job_id=job_id, connection_id=connection_id, platform=platform.value)
        return job

    async def enqueue_stats(self, user_id: int, day: date, *, now: datetime | None = None) -> Job | None:
        """Queue a stats recalculation for (user, day). Returns None when coalesced."""
        bucket = time_bucket(now or utcnow(), self._settings.queue_dedup_window_seconds)
        job_id = stats_job_id(user_id, day, bucket)
        job = await self._pool.enqueue_job(
            STATS_JOB,
            user_id,
            day.isoformat(),
            _job_id=job_id,
            _queue_name=self._settings.stats_queue_name,
        )
        if job is not None:
            logger.info("stats_job_enqueued", job_id=job_id, user_id=user_id)
        return job
