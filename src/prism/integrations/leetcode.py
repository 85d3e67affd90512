"""LeetCode adapter: solved-problem totals from the public GraphQL endpoint."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from prism.config import Settings
from prism.db.enums import Platform
from prism.errors import NotFoundError
from prism.integrations.base import PlatformUser, load_connection
from prism.integrations.http import request_json
from prism.security.credentials import CredentialCipher
from prism.stats.store import record_cumulative_snapshot
from prism.timeutils import local_today

logger = logging.getLogger(__name__)

PROFILE_QUERY = """
query userProfile($username: String!) {
  matchedUser(username: $username) {
    username
    profile { realName ranking userAvatar }
    submitStatsGlobal { acSubmissionNum { difficulty count } }
  }
  userContestRanking(username: $username) { attendedContestsCount rating }
}
"""


def solved_totals(matched_user: dict[str, Any]) -> dict[str, int]:
    """Lifetime accepted counts keyed by stat column."""
    by_difficulty = {
        item["difficulty"]: int(item.get("count", 0))
        for item in matched_user.get("submitStatsGlobal", {}).get("acSubmissionNum", [])
    }
    return {
        "problems_solved": by_difficulty.get("All", 0),
        "easy_solved": by_difficulty.get("Easy", 0),
        "medium_solved": by_difficulty.get("Medium", 0),
        "hard_solved": by_difficulty.get("Hard", 0),
    }


class LeetCodeAdapter:
    platform = Platform.LEETCODE

    def __init__(self, http: httpx.AsyncClient, settings: Settings, cipher: CredentialCipher | None = None) -> None:
        self._http = http
        self._settings = settings
        self._cipher = cipher

    async def _query_profile(self, username: str) -> dict[str, Any]:
        data = await request_json(
            self._http,
            "POST",
            self._settings.leetcode_api_url,
            json={"query": PROFILE_QUERY, "variables": {"username": username}},
            headers={"Content-Type": "application/json", "Referer": "https://leetcode.com"},
        )
        payload = data.get("data") or {}
        if not payload.get("matchedUser"):
            raise NotFoundError(f"LeetCode user {username!r} not found")
        return payload

    async def fetch_user_data(self, db: AsyncSession, connection_id: int) -> PlatformUser:
        conn = await load_connection(db, connection_id, self.platform)
        payload = await self._query_profile(conn.external_username)
        user = payload["matchedUser"]
        profile = user.get("profile") or {}
        return PlatformUser(
            platform=self.platform,
            username=user["username"],
            display_name=profile.get("realName") or None,
            profile_url=f"https://leetcode.com/u/{user['username']}/",
            extra={"ranking": profile.get("ranking")},
        )

    async def sync_data(self, db: AsyncSession, user_id: int, connection_id: int) -> None:
        conn = await load_connection(db, connection_id, self.platform)
        payload = await self._query_profile(conn.external_username)
        totals = solved_totals(payload["matchedUser"])
        contest = payload.get("userContestRanking") or {}
        totals["contests_participated"] = int(contest.get("attendedContestsCount") or 0)
        rating = contest.get("rating")

        day = local_today(self._settings.timezone)
        stat = await record_cumulative_snapshot(
            db,
            connection_id,
            day,
            totals,
            rating=round(rating) if rating is not None else None,
            detail={"ranking": (payload["matchedUser"].get("profile") or {}).get("ranking")},
        )
        if stat is not None:
            logger.info(
                "LeetCode sync for connection %d: %d solved today", connection_id, stat.problems_solved
            )
