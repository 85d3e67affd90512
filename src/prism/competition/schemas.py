"""Pydantic response models for leaderboards."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from prism.db.enums import LeaderboardPeriod, Platform


class LeaderboardRow(BaseModel):
    rank: int
    user_id: int
    username: str
    avatar_url: str | None = None
    score: int
    commits_count: int = 0
    problems_solved: int = 0
    tasks_completed: int = 0
    missions_completed: int = 0
    streak_days: int = 0


class LeaderboardResponse(BaseModel):
    period: LeaderboardPeriod
    platform: Platform | None = None
    calculated_at: datetime
    cached: bool = False
    entries: list[LeaderboardRow]
