"""Pydantic models returned by the analytics operations."""

from __future__ import annotations

import datetime as dt

from pydantic import BaseModel


# --- Heatmap ---


class HeatmapDay(BaseModel):
    date: dt.date
    activity_score: int
    commits: int
    problems_solved: int
    tasks_completed: int
    calendar_events: int
    total_activities: int


class ActivitySummary(BaseModel):
    days: int
    total_activity_score: int
    average_activity_score: float
    total_commits: int
    total_problems_solved: int
    total_tasks_completed: int
    total_calendar_events: int
    total_activities: int
    active_days: int


class ActivityHeatmapResponse(BaseModel):
    user_id: int
    days: int
    entries: list[HeatmapDay]
    summary: ActivitySummary


# --- Streaks ---


class StreakStats(BaseModel):
    current_streak: int
    longest_streak: int
    last_activity_date: dt.date | None = None
    is_active_today: bool = False
    streak_status: str = "broken"  # "active" | "broken"


# --- Points ---


class PointsBreakdown(BaseModel):
    github: int = 0
    problems: int = 0
    tasks: int = 0
    missions: int = 0
    streak_bonus: int = 0
    total: int = 0


class UserStats(BaseModel):
    user_id: int
    username: str
    total_points: int
    points: PointsBreakdown
    streaks: StreakStats
    summary: ActivitySummary
    rank: int | None = None
