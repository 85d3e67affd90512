"""Sync-and-scoring core schema.

Creates users, platform_connections, platform_stats, tasks, activity_heatmap,
missions, user_missions, leaderboard_entries and sync_jobs.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

from alembic import op

revision: str = "001_initial_schema"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

PLATFORMS = "'GITHUB','LEETCODE','CODEFORCES','GOOGLE_CALENDAR','MS_CALENDAR','OPENPROJECT','SLACK'"


def upgrade() -> None:
    # --- Users ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id BIGSERIAL PRIMARY KEY,
            username VARCHAR(64) NOT NULL UNIQUE,
            email VARCHAR(320) UNIQUE,
            avatar_url TEXT,
            is_active BOOLEAN NOT NULL DEFAULT true,
            total_points INTEGER NOT NULL DEFAULT 0,
            current_streak INTEGER NOT NULL DEFAULT 0,
            longest_streak INTEGER NOT NULL DEFAULT 0,
            last_activity_date DATE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ
        )
    """)

    # --- Platform Connections ---
    op.execute(f"""
        CREATE TABLE IF NOT EXISTS platform_connections (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            platform VARCHAR(16) NOT NULL CONSTRAINT platform CHECK (platform IN ({PLATFORMS})),
            external_username VARCHAR(128) NOT NULL,
            external_id VARCHAR(128),
            credential TEXT,
            is_active BOOLEAN NOT NULL DEFAULT true,
            sync_status VARCHAR(16) NOT NULL DEFAULT 'PENDING'
                CONSTRAINT sync_status CHECK (sync_status IN ('PENDING','SYNCING','COMPLETED','FAILED')),
            sync_started_at TIMESTAMPTZ,
            last_synced TIMESTAMPTZ,
            metadata JSONB NOT NULL DEFAULT '{{}}',
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ
        )
    """)
    op.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS uq_platform_connections_active_account
        ON platform_connections(user_id, platform, external_username)
        WHERE is_active
    """)

    # --- Platform Stats ---
    op.execute(f"""
        CREATE TABLE IF NOT EXISTS platform_stats (
            id BIGSERIAL PRIMARY KEY,
            connection_id BIGINT NOT NULL REFERENCES platform_connections(id) ON DELETE CASCADE,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            platform VARCHAR(16) NOT NULL CONSTRAINT platform CHECK (platform IN ({PLATFORMS})),
            date DATE NOT NULL,
            commits INTEGER NOT NULL DEFAULT 0,
            pull_requests INTEGER NOT NULL DEFAULT 0,
            issues INTEGER NOT NULL DEFAULT 0,
            reviews INTEGER NOT NULL DEFAULT 0,
            problems_solved INTEGER NOT NULL DEFAULT 0,
            easy_solved INTEGER NOT NULL DEFAULT 0,
            medium_solved INTEGER NOT NULL DEFAULT 0,
            hard_solved INTEGER NOT NULL DEFAULT 0,
            contests_participated INTEGER NOT NULL DEFAULT 0,
            calendar_events INTEGER NOT NULL DEFAULT 0,
            rating INTEGER,
            detail JSONB NOT NULL DEFAULT '{{}}',
            is_baseline BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ,
            CONSTRAINT uq_platform_stats_connection_date UNIQUE (connection_id, date)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_platform_stats_user_date
        ON platform_stats(user_id, date)
    """)

    # --- Tasks ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS tasks (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            source VARCHAR(16) NOT NULL
                CONSTRAINT task_source CHECK (source IN ('OPENPROJECT','GOOGLE_CALENDAR','MS_CALENDAR','SLACK','MANUAL')),
            source_id VARCHAR(128),
            title VARCHAR(512) NOT NULL,
            status VARCHAR(16) NOT NULL DEFAULT 'TODO'
                CONSTRAINT task_status CHECK (status IN ('TODO','IN_PROGRESS','COMPLETED','CANCELLED')),
            completed_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ,
            CONSTRAINT uq_tasks_user_source_id UNIQUE (user_id, source, source_id)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_tasks_user_completed
        ON tasks(user_id, completed_at)
    """)

    # --- Activity Heatmap ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS activity_heatmap (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            date DATE NOT NULL,
            activity_score INTEGER NOT NULL DEFAULT 0,
            commits INTEGER NOT NULL DEFAULT 0,
            problems_solved INTEGER NOT NULL DEFAULT 0,
            tasks_completed INTEGER NOT NULL DEFAULT 0,
            calendar_events INTEGER NOT NULL DEFAULT 0,
            total_activities INTEGER NOT NULL DEFAULT 0,
            updated_at TIMESTAMPTZ,
            CONSTRAINT uq_activity_heatmap_user_date UNIQUE (user_id, date)
        )
    """)

    # --- Missions ---
    op.execute("""
        CREATE TABLE IF NOT EXISTS missions (
            id BIGSERIAL PRIMARY KEY,
            title VARCHAR(256) NOT NULL,
            description TEXT,
            type VARCHAR(16) NOT NULL CONSTRAINT mission_type CHECK (type IN ('DAILY','WEEKLY')),
            points INTEGER NOT NULL DEFAULT 0,
            is_active BOOLEAN NOT NULL DEFAULT true,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        )
    """)
    op.execute("""
        CREATE TABLE IF NOT EXISTS user_missions (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            mission_id BIGINT NOT NULL REFERENCES missions(id) ON DELETE CASCADE,
            status VARCHAR(16) NOT NULL DEFAULT 'ASSIGNED'
                CONSTRAINT user_mission_status CHECK (status IN ('ASSIGNED','IN_PROGRESS','COMPLETED','FAILED')),
            completed_at TIMESTAMPTZ,
            points_earned INTEGER NOT NULL DEFAULT 0,
            assigned_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            CONSTRAINT uq_user_missions_user_mission UNIQUE (user_id, mission_id)
        )
    """)

    # --- Leaderboard Entries ---
    op.execute(f"""
        CREATE TABLE IF NOT EXISTS leaderboard_entries (
            id BIGSERIAL PRIMARY KEY,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            period VARCHAR(16) NOT NULL
                CONSTRAINT leaderboard_period CHECK (period IN ('DAILY','WEEKLY','MONTHLY','ALL_TIME')),
            platform VARCHAR(16) CONSTRAINT platform CHECK (platform IN ({PLATFORMS})),
            rank INTEGER NOT NULL,
            score INTEGER NOT NULL DEFAULT 0,
            commits_count INTEGER NOT NULL DEFAULT 0,
            problems_solved INTEGER NOT NULL DEFAULT 0,
            tasks_completed INTEGER NOT NULL DEFAULT 0,
            missions_completed INTEGER NOT NULL DEFAULT 0,
            streak_days INTEGER NOT NULL DEFAULT 0,
            calculated_at TIMESTAMPTZ NOT NULL,
            CONSTRAINT uq_leaderboard_entry_generation UNIQUE (user_id, period, platform, calculated_at)
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_leaderboard_period_platform_calc
        ON leaderboard_entries(period, platform, calculated_at)
    """)

    # --- Sync Jobs (audit log) ---
    op.execute(f"""
        CREATE TABLE IF NOT EXISTS sync_jobs (
            id BIGSERIAL PRIMARY KEY,
            job_id VARCHAR(160) NOT NULL UNIQUE,
            user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            connection_id BIGINT REFERENCES platform_connections(id) ON DELETE SET NULL,
            platform VARCHAR(16) NOT NULL CONSTRAINT platform CHECK (platform IN ({PLATFORMS})),
            job_type VARCHAR(32) NOT NULL DEFAULT 'FULL_SYNC',
            status VARCHAR(16) NOT NULL DEFAULT 'QUEUED'
                CONSTRAINT sync_job_status CHECK (status IN ('QUEUED','PROCESSING','COMPLETED','FAILED','CANCELLED')),
            attempts INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            started_at TIMESTAMPTZ,
            completed_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            metadata JSONB NOT NULL DEFAULT '{{}}'
        )
    """)
    op.execute("""
        CREATE INDEX IF NOT EXISTS ix_sync_jobs_user_created
        ON sync_jobs(user_id, created_at)
    """)


def downgrade() -> None:
    for table in [
        "sync_jobs",
        "leaderboard_entries",
        "user_missions",
        "missions",
        "activity_heatmap",
        "tasks",
        "platform_stats",
        "platform_connections",
        "users",
    ]:
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE")
