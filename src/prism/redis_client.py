"""arq Redis pool for the enqueue side (the process hosting the caller-facing operations)."""

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from prism.config import Settings
from prism.sync.queue import JobQueue
from prism.sync.scheduler import SyncScheduler

_pool: ArqRedis | None = None


async def init_queue_pool(url: str) -> None:
    """Initialize the arq Redis pool."""
    global _pool  # noqa: PLW0603
    _pool = await create_pool(RedisSettings.from_dsn(url))


async def close_queue_pool() -> None:
    """Close the arq Redis pool."""
    global _pool  # noqa: PLW0603
    if _pool:
        await _pool.aclose()
        _pool = None


def get_queue_pool() -> ArqRedis:
    """Get the arq Redis pool."""
    if _pool is None:
        msg = "Queue pool not initialized. Call init_queue_pool() first."
        raise RuntimeError(msg)
    return _pool


def get_job_queue(settings: Settings) -> JobQueue:
    return JobQueue(get_queue_pool(), settings)


def get_scheduler(settings: Settings) -> SyncScheduler:
    return SyncScheduler(get_queue_pool(), get_job_queue(settings))
