"""Codeforces adapter: accepted problems bucketed by problem rating."""

from __future__ import annotations

import logging
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from prism.config import Settings
from prism.db.enums import Platform
from prism.errors import NotFoundError, ServiceUnavailableError
from prism.integrations.base import PlatformUser, load_connection
from prism.integrations.http import request_json
from prism.security.credentials import CredentialCipher
from prism.stats.store import record_cumulative_snapshot
from prism.timeutils import local_today

logger = logging.getLogger(__name__)

EASY_MAX_RATING = 1200  # exclusive
MEDIUM_MAX_RATING = 1900  # inclusive
SUBMISSION_PAGE = 1000


def difficulty_bucket(rating: int | None) -> str:
    """Map a problem rating to easy/medium/hard. Unrated problems count as easy."""
    rating = rating or 0
    if rating < EASY_MAX_RATING:
        return "easy"
    if rating <= MEDIUM_MAX_RATING:
        return "medium"
    return "hard"


def solved_totals(submissions: list[dict[str, Any]]) -> dict[str, int]:
    """Unique accepted problems, lifetime, by difficulty."""
    seen: dict[str, str] = {}
    for sub in submissions:
        if sub.get("verdict") != "OK":
            continue
        problem = sub.get("problem") or {}
        key = f"{problem.get('contestId')}_{problem.get('index')}"
        if key not in seen:
            seen[key] = difficulty_bucket(problem.get("rating"))
    buckets = list(seen.values())
    return {
        "problems_solved": len(buckets),
        "easy_solved": buckets.count("easy"),
        "medium_solved": buckets.count("medium"),
        "hard_solved": buckets.count("hard"),
    }


class CodeforcesAdapter:
    platform = Platform.CODEFORCES

    def __init__(self, http: httpx.AsyncClient, settings: Settings, cipher: CredentialCipher | None = None) -> None:
        self._http = http
        self._settings = settings
        self._cipher = cipher
        self._base_url = settings.codeforces_api_url.rstrip("/")

    async def _call(self, method: str, params: dict[str, Any]) -> Any:
        # unknown handles come back as 400 with status FAILED in the body
        data = await request_json(
            self._http, "GET", f"{self._base_url}/{method}", params=params, accept_status=(400,)
        )
        if data.get("status") != "OK":
            comment = str(data.get("comment", ""))
            if "not found" in comment.lower():
                raise NotFoundError(f"Codeforces: {comment}")
            raise ServiceUnavailableError(f"Codeforces {method} failed: {comment}")
        return data.get("result")

    async def _submissions(self, handle: str) -> list[dict[str, Any]]:
        """The handle's whole submission history, fetched page by page."""
        submissions: list[dict[str, Any]] = []
        start = 1
        while True:
            page = await self._call("user.status", {"handle": handle, "from": start, "count": SUBMISSION_PAGE}) or []
            submissions.extend(page)
            if len(page) < SUBMISSION_PAGE:
                return submissions
            start += SUBMISSION_PAGE

    async def fetch_user_data(self, db: AsyncSession, connection_id: int) -> PlatformUser:
        conn = await load_connection(db, connection_id, self.platform)
        result = await self._call("user.info", {"handles": conn.external_username})
        info = result[0]
        return PlatformUser(
            platform=self.platform,
            username=info["handle"],
            display_name=" ".join(filter(None, [info.get("firstName"), info.get("lastName")])) or None,
            profile_url=f"https://codeforces.com/profile/{info['handle']}",
            extra={
                "rating": info.get("rating"),
                "max_rating": info.get("maxRating"),
                "rank": info.get("rank"),
            },
        )

    async def sync_data(self, db: AsyncSession, user_id: int, connection_id: int) -> None:
        conn = await load_connection(db, connection_id, self.platform)
        handle = conn.external_username
        profile = await self.fetch_user_data(db, connection_id)
        submissions = await self._submissions(handle)
        contests = await self._call("user.rating", {"handle": handle})

        totals = solved_totals(submissions)
        totals["contests_participated"] = len(contests or [])
        day = local_today(self._settings.timezone)
        stat = await record_cumulative_snapshot(
            db,
            connection_id,
            day,
            totals,
            rating=profile.extra.get("rating"),
            detail={"max_rating": profile.extra.get("max_rating"), "rank": profile.extra.get("rank")},
        )
        if stat is not None:
            logger.info(
                "Codeforces sync for connection %d: %d solved today", connection_id, stat.problems_solved
            )
