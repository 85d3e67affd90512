"""ORM models for the sync-and-scoring core.

All core writes are upserts keyed by the natural composite keys declared here
(see ``prism.db.upsert``). Enumerated columns are non-native enums with CHECK
constraints so an invalid state string cannot be persisted.
"""

from __future__ import annotations

import enum
import datetime as dt
from typing import Any

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from prism.db.base import Base, BigIntId, JSONType
from prism.db.enums import (
    LeaderboardPeriod,
    MissionType,
    Platform,
    SyncJobStatus,
    SyncStatus,
    TaskSource,
    TaskStatus,
    UserMissionStatus,
)


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _enum(enum_cls: type[enum.Enum], name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        native_enum=False,
        length=16,
        create_constraint=True,
        validate_strings=True,
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class User(Base):
    """User with cached aggregate fields (points, streaks)."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), unique=True, nullable=True)
    avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    total_points: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    current_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    longest_streak: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_activity_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, onupdate=_utcnow)


# ---------------------------------------------------------------------------
# Platform connections and raw stats
# ---------------------------------------------------------------------------


class PlatformConnection(Base):
    """A (user, platform, external account) link.

    ``sync_status``/``last_synced``/``sync_started_at`` are written only by
    ``prism.sync.status_tracker``. Disconnect is a soft delete (``is_active=False``).
    """

    __tablename__ = "platform_connections"
    __table_args__ = (
        Index(
            "uq_platform_connections_active_account",
            "user_id",
            "platform",
            "external_username",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    platform: Mapped[Platform] = mapped_column(_enum(Platform, "platform"), nullable=False)
    external_username: Mapped[str] = mapped_column(String(128), nullable=False)
    external_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    credential: Mapped[str | None] = mapped_column(Text, nullable=True)  # opaque, encrypted
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    sync_status: Mapped[SyncStatus] = mapped_column(
        _enum(SyncStatus, "sync_status"), nullable=False, default=SyncStatus.PENDING, server_default="PENDING"
    )
    sync_started_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_synced: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, onupdate=_utcnow)


class PlatformStat(Base):
    """Per-connection, per-day counters. Upserted by adapters, never deleted."""

    __tablename__ = "platform_stats"
    __table_args__ = (
        UniqueConstraint("connection_id", "date", name="uq_platform_stats_connection_date"),
        Index("ix_platform_stats_user_date", "user_id", "date"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    connection_id: Mapped[int] = mapped_column(
        BigIntId, ForeignKey("platform_connections.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    platform: Mapped[Platform] = mapped_column(_enum(Platform, "platform"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    commits: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    pull_requests: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    issues: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    reviews: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    problems_solved: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    easy_solved: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    medium_solved: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    hard_solved: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    contests_participated: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    calendar_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    rating: Mapped[int | None] = mapped_column(Integer, nullable=True)
    detail: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    # first snapshot of a lifetime-total platform; counts toward lifetime sums only
    is_baseline: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Task(Base):
    """Project-tracker task; completed tasks feed the heatmap and points."""

    __tablename__ = "tasks"
    __table_args__ = (
        UniqueConstraint("user_id", "source", "source_id", name="uq_tasks_user_source_id"),
        Index("ix_tasks_user_completed", "user_id", "completed_at"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    source: Mapped[TaskSource] = mapped_column(_enum(TaskSource, "task_source"), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    status: Mapped[TaskStatus] = mapped_column(
        _enum(TaskStatus, "task_status"), nullable=False, default=TaskStatus.TODO, server_default="TODO"
    )
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


# ---------------------------------------------------------------------------
# Derived projections
# ---------------------------------------------------------------------------


class ActivityHeatmapEntry(Base):
    """One rolled-up row per (user, date). Recomputed from source tables, never hand-edited."""

    __tablename__ = "activity_heatmap"
    __table_args__ = (UniqueConstraint("user_id", "date", name="uq_activity_heatmap_user_date"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    activity_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    commits: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    problems_solved: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    tasks_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    calendar_events: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    total_activities: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    updated_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class LeaderboardEntry(Base):
    """Cached ranking row. One generation per calculation; only the newest is read."""

    __tablename__ = "leaderboard_entries"
    __table_args__ = (
        UniqueConstraint("user_id", "period", "platform", "calculated_at", name="uq_leaderboard_entry_generation"),
        Index("ix_leaderboard_period_platform_calc", "period", "platform", "calculated_at"),
    )

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    period: Mapped[LeaderboardPeriod] = mapped_column(_enum(LeaderboardPeriod, "leaderboard_period"), nullable=False)
    platform: Mapped[Platform | None] = mapped_column(_enum(Platform, "platform"), nullable=True)
    rank: Mapped[int] = mapped_column(Integer, nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    commits_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    problems_solved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tasks_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    missions_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    streak_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    calculated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


# ---------------------------------------------------------------------------
# Missions (read-only for the core)
# ---------------------------------------------------------------------------


class Mission(Base):
    """Static mission definition."""

    __tablename__ = "missions"

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[MissionType] = mapped_column(_enum(MissionType, "mission_type"), nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class UserMission(Base):
    """Per-user mission progress."""

    __tablename__ = "user_missions"
    __table_args__ = (UniqueConstraint("user_id", "mission_id", name="uq_user_missions_user_mission"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    mission_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("missions.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[UserMissionStatus] = mapped_column(
        _enum(UserMissionStatus, "user_mission_status"),
        nullable=False,
        default=UserMissionStatus.ASSIGNED,
        server_default="ASSIGNED",
    )
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    points_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    assigned_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


# ---------------------------------------------------------------------------
# Sync audit log
# ---------------------------------------------------------------------------


class SyncJob(Base):
    """Historical record of one queued synchronization (distinct from the arq queue entry)."""

    __tablename__ = "sync_jobs"
    __table_args__ = (Index("ix_sync_jobs_user_created", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(BigIntId, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(160), unique=True, nullable=False)
    user_id: Mapped[int] = mapped_column(BigIntId, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    connection_id: Mapped[int | None] = mapped_column(
        BigIntId, ForeignKey("platform_connections.id", ondelete="SET NULL"), nullable=True
    )
    platform: Mapped[Platform] = mapped_column(_enum(Platform, "platform"), nullable=False)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False, default="FULL_SYNC")
    status: Mapped[SyncJobStatus] = mapped_column(
        _enum(SyncJobStatus, "sync_job_status"), nullable=False, default=SyncJobStatus.QUEUED, server_default="QUEUED"
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    meta: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
