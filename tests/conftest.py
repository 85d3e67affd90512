"""Shared test fixtures.

Relational tests run against a throwaway SQLite file per test so that separate
sessions (worker vs. test assertions) get separate connections, as they would
against PostgreSQL. The arq pool and Redis are replaced by small in-memory
doubles exposing only the commands the code under test issues.
"""

from __future__ import annotations

import itertools
from collections.abc import AsyncGenerator
from typing import Any

import pytest
import pytest_asyncio
from arq.jobs import Job
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from prism.config import Settings
from prism.db.base import Base
from prism.db.enums import Platform
from prism.db.models import PlatformConnection, User
from prism.security.credentials import CredentialCipher
from prism.sync.queue import JobQueue
from prism.sync.scheduler import SyncScheduler

TEST_KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"


class FakeArqPool:
    """Records enqueued jobs and refuses duplicate job ids, like ArqRedis.enqueue_job."""

    def __init__(self) -> None:
        self.jobs: dict[str, dict[str, Any]] = {}

    async def enqueue_job(self, function: str, *args: Any, _job_id: str, _queue_name: str) -> Job | None:
        if _job_id in self.jobs:
            return None
        self.jobs[_job_id] = {"function": function, "args": args, "queue": _queue_name}
        return Job(_job_id, redis=self, _queue_name=_queue_name)


class FakeRedis:
    """Hash and sorted-set subset of redis.asyncio.Redis. Returns bytes like a raw connection."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}

    async def hset(self, key: str, field: str, value: str) -> int:
        bucket = self.hashes.setdefault(key, {})
        created = field not in bucket
        bucket[field] = value
        return int(created)

    async def hget(self, key: str, field: str) -> bytes | None:
        value = self.hashes.get(key, {}).get(field)
        return value.encode() if value is not None else None

    async def hdel(self, key: str, field: str) -> int:
        return int(self.hashes.get(key, {}).pop(field, None) is not None)

    async def zadd(self, key: str, mapping: dict[str, float]) -> int:
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zrem(self, key: str, member: str) -> int:
        return int(self.zsets.get(key, {}).pop(member, None) is not None)

    async def zrangebyscore(self, key: str, low: str | float, high: str | float) -> list[bytes]:
        lo = float("-inf") if low == "-inf" else float(low)
        hi = float("inf") if high == "+inf" else float(high)
        members = sorted(self.zsets.get(key, {}).items(), key=lambda kv: kv[1])
        return [member.encode() for member, score in members if lo <= score <= hi]


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        timezone="UTC",
        credential_encryption_key=TEST_KEY,
        sync_timeout_seconds=5.0,
        queue_max_tries=3,
        queue_backoff_base_seconds=2.0,
        queue_backoff_max_seconds=600.0,
        # one bucket for the whole test run
        queue_dedup_window_seconds=10**9,
    )


@pytest.fixture
def cipher() -> CredentialCipher:
    return CredentialCipher(TEST_KEY)


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'prism.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for test setup and assertions."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def arq_pool() -> FakeArqPool:
    return FakeArqPool()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def job_queue(arq_pool: FakeArqPool, settings: Settings) -> JobQueue:
    return JobQueue(arq_pool, settings)


@pytest.fixture
def scheduler(fake_redis: FakeRedis, job_queue: JobQueue) -> SyncScheduler:
    return SyncScheduler(fake_redis, job_queue)


@pytest_asyncio.fixture
async def make_user(db_session: AsyncSession):
    """Factory creating committed users."""
    counter = itertools.count(1)

    async def _make(username: str | None = None, **fields: Any) -> User:
        user = User(username=username or f"dev{next(counter)}", **fields)
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest_asyncio.fixture
async def make_connection(db_session: AsyncSession):
    """Factory creating committed platform connections."""
    counter = itertools.count(1)

    async def _make(user: User, platform: Platform = Platform.GITHUB, **fields: Any) -> PlatformConnection:
        fields.setdefault("external_username", f"account{next(counter)}")
        fields.setdefault("meta", {})
        conn = PlatformConnection(user_id=user.id, platform=platform, **fields)
        db_session.add(conn)
        await db_session.commit()
        return conn

    return _make
