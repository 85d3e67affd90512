"""Sync lane job functions: attempts, failures, coalescing and late-result discard."""

from __future__ import annotations

import asyncio
from datetime import datetime, time, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from arq import Retry
from sqlalchemy import func, select

from prism.analytics.worker import recalculate_stats
from prism.db.enums import Platform, SyncJobStatus, SyncStatus, TaskSource, TaskStatus
from prism.db.models import PlatformConnection, PlatformStat, SyncJob
from prism.errors import InvalidCredentialError, NotFoundError, ServiceUnavailableError
from prism.integrations.registry import IntegrationRegistry, build_registry
from prism.stats.store import upsert_platform_stat, upsert_task
from prism.sync.queue import STATS_JOB
from prism.sync.service import cancel_pending_syncs
from prism.sync.worker import prune_sync_history, run_sync, sync_platform
from prism.timeutils import local_today, utcnow


class CommitsAdapter:
    platform = Platform.GITHUB

    def __init__(self, commits: int = 3) -> None:
        self.commits = commits
        self.calls = 0

    async def fetch_user_data(self, db, connection_id):
        raise NotImplementedError

    async def sync_data(self, db, user_id, connection_id):
        self.calls += 1
        await upsert_platform_stat(db, connection_id, local_today("UTC"), {"commits": self.commits})


class FailingAdapter(CommitsAdapter):
    def __init__(self, error: Exception) -> None:
        super().__init__()
        self.error = error

    async def sync_data(self, db, user_id, connection_id):
        self.calls += 1
        raise self.error


class SlowAdapter(CommitsAdapter):
    async def sync_data(self, db, user_id, connection_id):
        await asyncio.sleep(5)


class DisconnectedMidSyncAdapter(CommitsAdapter):
    """The user disconnects (in another session) while the remote calls are in flight."""

    def __init__(self, session_factory) -> None:
        super().__init__()
        self.session_factory = session_factory

    async def sync_data(self, db, user_id, connection_id):
        async with self.session_factory() as other:
            conn = await other.get(PlatformConnection, connection_id)
            conn.is_active = False
            await other.commit()
        await super().sync_data(db, user_id, connection_id)


class CompletedTaskAdapter(CommitsAdapter):
    platform = Platform.OPENPROJECT

    def __init__(self, completed_at: datetime) -> None:
        super().__init__()
        self.completed_at = completed_at

    async def sync_data(self, db, user_id, connection_id):
        await upsert_task(
            db, connection_id, TaskSource.OPENPROJECT, "42", "Close sprint", TaskStatus.COMPLETED, self.completed_at
        )


class BrokenQueue:
    async def enqueue_stats(self, user_id, day, *, now=None):
        raise ConnectionError("redis down")


@pytest_asyncio.fixture
async def github_conn(make_user, make_connection):
    user = await make_user()
    return await make_connection(user, Platform.GITHUB)


@pytest.fixture
def make_ctx(settings, session_factory, job_queue, scheduler):
    def _make(adapter, conn_or_id, job_try: int = 1, **overrides):
        connection_id = conn_or_id if isinstance(conn_or_id, int) else conn_or_id.id
        ctx = {
            "settings": settings,
            "session_factory": session_factory,
            "registry": IntegrationRegistry({Platform.GITHUB: lambda: adapter}),
            "queue": job_queue,
            "scheduler": scheduler,
            "job_id": f"sync:GITHUB:{connection_id}:0",
            "job_try": job_try,
        }
        ctx.update(overrides)
        return ctx

    return _make


async def load(session_factory, model, **where):
    async with session_factory() as db:
        stmt = select(model).filter_by(**where)
        return (await db.execute(stmt)).scalar_one()


async def stat_count(session_factory) -> int:
    async with session_factory() as db:
        return await db.scalar(select(func.count(PlatformStat.id)))


class TestSuccessfulSync:
    async def test_marks_completed_and_queues_stats(self, make_ctx, github_conn, session_factory, arq_pool, settings):
        adapter = CommitsAdapter(commits=4)
        ctx = make_ctx(adapter, github_conn)

        assert await sync_platform(ctx, github_conn.user_id, github_conn.id, "GITHUB") == "COMPLETED"

        conn = await load(session_factory, PlatformConnection, id=github_conn.id)
        assert conn.sync_status is SyncStatus.COMPLETED
        assert conn.last_synced is not None
        job = await load(session_factory, SyncJob, job_id=ctx["job_id"])
        assert job.status is SyncJobStatus.COMPLETED
        assert job.attempts == 1
        assert job.completed_at is not None
        stat = await load(session_factory, PlatformStat, connection_id=github_conn.id)
        assert stat.commits == 4

        stats_jobs = [j for j in arq_pool.jobs.values() if j["function"] == STATS_JOB]
        assert stats_jobs == [
            {
                "function": STATS_JOB,
                "args": (github_conn.user_id, local_today("UTC").isoformat()),
                "queue": settings.stats_queue_name,
            }
        ]

    async def test_queues_stats_for_task_completed_on_earlier_day(
        self, make_ctx, make_user, make_connection, session_factory, arq_pool, settings
    ):
        user = await make_user()
        conn = await make_connection(user, Platform.OPENPROJECT)
        today = local_today("UTC")
        yesterday = today - timedelta(days=1)
        adapter = CompletedTaskAdapter(datetime.combine(yesterday, time(12), tzinfo=timezone.utc))
        ctx = make_ctx(
            adapter,
            conn,
            registry=IntegrationRegistry({Platform.OPENPROJECT: lambda: adapter}),
            job_id=f"sync:OPENPROJECT:{conn.id}:0",
        )

        assert await sync_platform(ctx, user.id, conn.id, "OPENPROJECT") == "COMPLETED"

        days = sorted(j["args"][1] for j in arq_pool.jobs.values() if j["function"] == STATS_JOB)
        assert days == [yesterday.isoformat(), today.isoformat()]

        stats_ctx = {"settings": settings, "session_factory": session_factory, "job_try": 1}
        result = await recalculate_stats(stats_ctx, user.id, yesterday.isoformat())
        assert result["current_streak"] == 1
        assert result["activity_score"] > 0

    async def test_unchanged_task_does_not_requeue_its_day(self, make_ctx, make_user, make_connection, arq_pool):
        user = await make_user()
        conn = await make_connection(user, Platform.OPENPROJECT)
        yesterday = local_today("UTC") - timedelta(days=1)
        adapter = CompletedTaskAdapter(datetime.combine(yesterday, time(12), tzinfo=timezone.utc))
        registry = IntegrationRegistry({Platform.OPENPROJECT: lambda: adapter})

        for job_id in ("first", "second"):
            arq_pool.jobs.clear()
            ctx = make_ctx(adapter, conn, registry=registry, job_id=job_id)
            await sync_platform(ctx, user.id, conn.id, "OPENPROJECT")

        days = [j["args"][1] for j in arq_pool.jobs.values() if j["function"] == STATS_JOB]
        assert days == [local_today("UTC").isoformat()]

    async def test_stats_enqueue_failure_does_not_fail_sync(self, make_ctx, github_conn, session_factory):
        ctx = make_ctx(CommitsAdapter(), github_conn, queue=BrokenQueue())
        assert await sync_platform(ctx, github_conn.user_id, github_conn.id, "GITHUB") == "COMPLETED"
        job = await load(session_factory, SyncJob, job_id=ctx["job_id"])
        assert job.status is SyncJobStatus.COMPLETED

    async def test_resync_after_completion(self, make_ctx, github_conn, session_factory):
        adapter = CommitsAdapter()
        await sync_platform(make_ctx(adapter, github_conn), github_conn.user_id, github_conn.id, "GITHUB")
        second = make_ctx(adapter, github_conn, job_id=f"sync:GITHUB:{github_conn.id}:1")
        assert await sync_platform(second, github_conn.user_id, github_conn.id, "GITHUB") == "COMPLETED"
        assert adapter.calls == 2
        assert await stat_count(session_factory) == 1


class TestFailures:
    async def test_retryable_failure_requests_retry(self, make_ctx, github_conn, session_factory):
        ctx = make_ctx(FailingAdapter(ServiceUnavailableError("GitHub down")), github_conn)
        with pytest.raises(Retry) as exc_info:
            await sync_platform(ctx, github_conn.user_id, github_conn.id, "GITHUB")
        assert exc_info.value.defer_score == 2000

        conn = await load(session_factory, PlatformConnection, id=github_conn.id)
        assert conn.sync_status is SyncStatus.FAILED
        assert conn.meta["last_error"] == "GitHub down"
        job = await load(session_factory, SyncJob, job_id=ctx["job_id"])
        assert job.status is SyncJobStatus.FAILED
        assert job.error_message == "GitHub down"

    async def test_three_failures_end_permanently_failed(self, make_ctx, github_conn, session_factory, arq_pool):
        adapter = FailingAdapter(ServiceUnavailableError("GitHub down"))
        for job_try in (1, 2):
            with pytest.raises(Retry):
                await sync_platform(make_ctx(adapter, github_conn, job_try), github_conn.user_id, github_conn.id, "GITHUB")

        ctx = make_ctx(adapter, github_conn, 3)
        with pytest.raises(ServiceUnavailableError):
            await sync_platform(ctx, github_conn.user_id, github_conn.id, "GITHUB")

        assert adapter.calls == 3
        job = await load(session_factory, SyncJob, job_id=ctx["job_id"])
        assert job.status is SyncJobStatus.FAILED
        assert job.attempts == 3
        conn = await load(session_factory, PlatformConnection, id=github_conn.id)
        assert conn.sync_status is SyncStatus.FAILED
        assert conn.is_active is True
        assert arq_pool.jobs == {}

    async def test_failed_attempt_writes_no_stats(self, make_ctx, github_conn, session_factory):
        class PartialAdapter(CommitsAdapter):
            async def sync_data(self, db, user_id, connection_id):
                await super().sync_data(db, user_id, connection_id)
                raise ServiceUnavailableError("second call failed")

        with pytest.raises(Retry):
            await sync_platform(make_ctx(PartialAdapter(), github_conn), github_conn.user_id, github_conn.id, "GITHUB")
        assert await stat_count(session_factory) == 0

    async def test_timeout_surfaces_as_failure(self, make_ctx, github_conn, session_factory, settings):
        fast = settings.model_copy(update={"sync_timeout_seconds": 0.05})
        ctx = make_ctx(SlowAdapter(), github_conn, settings=fast)
        with pytest.raises(Retry):
            await sync_platform(ctx, github_conn.user_id, github_conn.id, "GITHUB")
        job = await load(session_factory, SyncJob, job_id=ctx["job_id"])
        assert job.status is SyncJobStatus.FAILED
        assert "timed out" in job.error_message

    async def test_unexpected_exception_is_recorded(self, make_ctx, github_conn, session_factory):
        ctx = make_ctx(FailingAdapter(KeyError("items")), github_conn)
        with pytest.raises(Retry):
            await sync_platform(ctx, github_conn.user_id, github_conn.id, "GITHUB")
        conn = await load(session_factory, PlatformConnection, id=github_conn.id)
        assert conn.sync_status is SyncStatus.FAILED


class TestInvalidCredential:
    async def test_deactivates_and_cancels_schedule(self, make_ctx, github_conn, session_factory, scheduler):
        await scheduler.schedule(github_conn.user_id, github_conn.id, Platform.GITHUB, "0 * * * *")
        ctx = make_ctx(FailingAdapter(InvalidCredentialError("token revoked")), github_conn)

        with pytest.raises(InvalidCredentialError):
            await sync_platform(ctx, github_conn.user_id, github_conn.id, "GITHUB")

        conn = await load(session_factory, PlatformConnection, id=github_conn.id)
        assert conn.is_active is False
        assert conn.sync_status is SyncStatus.FAILED
        assert await scheduler.get(github_conn.id, Platform.GITHUB) is None

    async def test_plain_text_credential_with_real_adapter(
        self, make_user, make_connection, session_factory, settings, cipher, job_queue, scheduler
    ):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no remote call expected")

        conn = await make_connection(await make_user(), Platform.GITHUB, credential="ghp_not_encrypted")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            ctx = {
                "settings": settings,
                "session_factory": session_factory,
                "registry": build_registry(settings, http, cipher),
                "queue": job_queue,
                "scheduler": scheduler,
                "job_id": "sync:GITHUB:plain:0",
                "job_try": 1,
            }
            with pytest.raises(InvalidCredentialError):
                await sync_platform(ctx, conn.user_id, conn.id, "GITHUB")

        stored = await load(session_factory, PlatformConnection, id=conn.id)
        assert stored.is_active is False
        assert "ghp_not_encrypted" not in stored.meta["last_error"]


class TestSkippedSyncs:
    async def test_missing_connection(self, make_ctx, scheduler):
        await scheduler.schedule(1, 999, Platform.GITHUB, "0 * * * *")
        ctx = make_ctx(CommitsAdapter(), 999)
        with pytest.raises(NotFoundError):
            await sync_platform(ctx, 1, 999, "GITHUB")
        assert await scheduler.get(999, Platform.GITHUB) is None

    async def test_inactive_connection_cancelled(self, make_ctx, make_user, make_connection, session_factory):
        conn = await make_connection(await make_user(), Platform.GITHUB, is_active=False)
        adapter = CommitsAdapter()
        ctx = make_ctx(adapter, conn)
        assert await sync_platform(ctx, conn.user_id, conn.id, "GITHUB") == "CANCELLED"
        assert adapter.calls == 0
        job = await load(session_factory, SyncJob, job_id=ctx["job_id"])
        assert job.status is SyncJobStatus.CANCELLED

    async def test_connection_already_syncing_is_coalesced(self, make_ctx, make_user, make_connection, session_factory):
        conn = await make_connection(
            await make_user(), Platform.GITHUB, sync_status=SyncStatus.SYNCING, sync_started_at=utcnow()
        )
        adapter = CommitsAdapter()
        ctx = make_ctx(adapter, conn)
        assert await sync_platform(ctx, conn.user_id, conn.id, "GITHUB") == "CANCELLED"
        assert adapter.calls == 0
        job = await load(session_factory, SyncJob, job_id=ctx["job_id"])
        assert job.error_message.startswith("Coalesced")
        stored = await load(session_factory, PlatformConnection, id=conn.id)
        assert stored.sync_status is SyncStatus.SYNCING

    async def test_job_cancelled_by_user_is_skipped(self, make_ctx, github_conn, db_session, session_factory):
        adapter = CommitsAdapter()
        ctx = make_ctx(adapter, github_conn)
        db_session.add(
            SyncJob(
                job_id=ctx["job_id"],
                user_id=github_conn.user_id,
                connection_id=github_conn.id,
                platform=Platform.GITHUB,
                status=SyncJobStatus.QUEUED,
            )
        )
        await db_session.commit()
        await cancel_pending_syncs(db_session, github_conn.user_id)

        assert await sync_platform(ctx, github_conn.user_id, github_conn.id, "GITHUB") == "CANCELLED"
        assert adapter.calls == 0
        assert await stat_count(session_factory) == 0
        job = await load(session_factory, SyncJob, job_id=ctx["job_id"])
        assert job.error_message == "Cancelled by user"


class TestLateResultDiscard:
    async def test_disconnect_mid_sync_discards_results(self, make_ctx, github_conn, session_factory, arq_pool):
        ctx = make_ctx(DisconnectedMidSyncAdapter(session_factory), github_conn)

        assert await sync_platform(ctx, github_conn.user_id, github_conn.id, "GITHUB") == "CANCELLED"

        assert await stat_count(session_factory) == 0
        conn = await load(session_factory, PlatformConnection, id=github_conn.id)
        assert conn.is_active is False
        assert conn.sync_status is SyncStatus.FAILED
        assert conn.last_synced is None
        job = await load(session_factory, SyncJob, job_id=ctx["job_id"])
        assert job.status is SyncJobStatus.CANCELLED
        assert arq_pool.jobs == {}


class TestRunSync:
    async def test_outcome_for_success(self, github_conn, session_factory, settings):
        registry = IntegrationRegistry({Platform.GITHUB: CommitsAdapter})
        outcome = await run_sync(
            session_factory,
            registry,
            settings,
            user_id=github_conn.user_id,
            connection_id=github_conn.id,
            platform=Platform.GITHUB,
            job_id="manual-1",
        )
        assert outcome.status is SyncJobStatus.COMPLETED
        assert outcome.error is None


class TestPruneHistory:
    async def test_only_old_finished_jobs_deleted(self, github_conn, db_session, session_factory, settings):
        old = utcnow() - timedelta(days=settings.sync_history_retention_days + 1)
        for job_id, status, created in [
            ("old-done", SyncJobStatus.COMPLETED, old),
            ("old-failed", SyncJobStatus.FAILED, old),
            ("old-queued", SyncJobStatus.QUEUED, old),
            ("new-done", SyncJobStatus.COMPLETED, utcnow()),
        ]:
            db_session.add(
                SyncJob(
                    job_id=job_id,
                    user_id=github_conn.user_id,
                    connection_id=github_conn.id,
                    platform=Platform.GITHUB,
                    status=status,
                    created_at=created,
                )
            )
        await db_session.commit()

        deleted = await prune_sync_history({"settings": settings, "session_factory": session_factory})

        assert deleted == 2
        async with session_factory() as db:
            remaining = set((await db.execute(select(SyncJob.job_id))).scalars())
        assert remaining == {"old-queued", "new-done"}
