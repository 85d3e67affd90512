"""Closed enumerations persisted by the core."""

from __future__ import annotations

import enum

from prism.errors import ValidationError


class Platform(str, enum.Enum):
    GITHUB = "GITHUB"
    LEETCODE = "LEETCODE"
    CODEFORCES = "CODEFORCES"
    GOOGLE_CALENDAR = "GOOGLE_CALENDAR"
    MS_CALENDAR = "MS_CALENDAR"
    OPENPROJECT = "OPENPROJECT"
    SLACK = "SLACK"


class SyncStatus(str, enum.Enum):
    PENDING = "PENDING"
    SYNCING = "SYNCING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SyncJobStatus(str, enum.Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class TaskStatus(str, enum.Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class TaskSource(str, enum.Enum):
    OPENPROJECT = "OPENPROJECT"
    GOOGLE_CALENDAR = "GOOGLE_CALENDAR"
    MS_CALENDAR = "MS_CALENDAR"
    SLACK = "SLACK"
    MANUAL = "MANUAL"


class MissionType(str, enum.Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"


class UserMissionStatus(str, enum.Enum):
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class LeaderboardPeriod(str, enum.Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    ALL_TIME = "ALL_TIME"


def parse_platform(value: str | Platform) -> Platform:
    """Parse a platform identifier, raising ValidationError for unknown values."""
    if isinstance(value, Platform):
        return value
    try:
        return Platform(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown platform: {value!r}") from None


def parse_period(value: str | LeaderboardPeriod) -> LeaderboardPeriod:
    """Parse a leaderboard period, raising ValidationError for unknown values."""
    if isinstance(value, LeaderboardPeriod):
        return value
    try:
        return LeaderboardPeriod(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Unknown leaderboard period: {value!r}") from None
