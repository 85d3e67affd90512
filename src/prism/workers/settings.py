"""arq worker settings, one class per queue lane.

Import paths for arq CLI:
    arq prism.workers.settings.SyncWorkerSettings
    arq prism.workers.settings.StatsWorkerSettings
"""

from __future__ import annotations

import logging

from arq import cron, func
from arq.connections import RedisSettings

from prism.analytics.worker import recalculate_stats
from prism.competition.leaderboard_worker import prune_leaderboards, refresh_leaderboards
from prism.config import get_settings
from prism.database import close_db, get_session_factory, init_db
from prism.integrations.http import build_http_client
from prism.integrations.registry import build_registry
from prism.logging_config import bind_job_context, clear_job_context, setup_logging
from prism.security.credentials import CredentialCipher
from prism.sync.queue import JobQueue
from prism.sync.scheduler import SyncScheduler
from prism.sync.worker import dispatch_due_schedules, prune_sync_history, sync_platform

logger = logging.getLogger(__name__)

_settings = get_settings()


async def worker_startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Build the per-process dependencies shared by every job.

    ``ctx["redis"]`` is the arq pool, reused for enqueueing downstream jobs and
    for the schedule store.
    """
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)

    cipher = CredentialCipher(settings.credential_encryption_key) if settings.credential_encryption_key else None
    http = build_http_client(settings.http_timeout_seconds)
    queue = JobQueue(ctx["redis"], settings)

    ctx["settings"] = settings
    ctx["session_factory"] = get_session_factory()
    ctx["http"] = http
    ctx["registry"] = build_registry(settings, http, cipher)
    ctx["queue"] = queue
    ctx["scheduler"] = SyncScheduler(ctx["redis"], queue)
    logger.info("Worker started (cipher=%s)", "on" if cipher else "off")


async def worker_shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    """Clean up on worker shutdown."""
    http = ctx.get("http")
    if http:
        await http.aclose()
    await close_db()
    logger.info("Worker shut down")


class SyncWorkerSettings:
    """arq worker settings for the platform sync lane."""

    functions = [
        func(sync_platform, max_tries=_settings.queue_max_tries, timeout=_settings.sync_job_timeout_seconds),
    ]
    cron_jobs = [
        cron(dispatch_due_schedules, second=0, run_at_startup=True),
        cron(prune_sync_history, hour=3, minute=15, second=0),
    ]
    queue_name = _settings.sync_queue_name
    redis_settings = RedisSettings.from_dsn(_settings.redis_url)
    on_startup = worker_startup
    on_shutdown = worker_shutdown
    on_job_start = bind_job_context
    on_job_end = clear_job_context
    max_jobs = _settings.worker_max_jobs
    max_tries = _settings.queue_max_tries
    keep_result = _settings.queue_keep_result_seconds
    job_timeout = _settings.sync_job_timeout_seconds


class StatsWorkerSettings:
    """arq worker settings for stats recalculation and leaderboard refresh."""

    functions = [func(recalculate_stats, max_tries=_settings.queue_max_tries)]
    cron_jobs = [
        cron(refresh_leaderboards, minute=0, second=0),
        cron(prune_leaderboards, hour=3, minute=45, second=0),
    ]
    queue_name = _settings.stats_queue_name
    redis_settings = RedisSettings.from_dsn(_settings.redis_url)
    on_startup = worker_startup
    on_shutdown = worker_shutdown
    on_job_start = bind_job_context
    on_job_end = clear_job_context
    max_jobs = _settings.worker_max_jobs
    max_tries = _settings.queue_max_tries
    keep_result = _settings.queue_keep_result_seconds
    job_timeout = 600  # full leaderboard refresh
