"""GitHub adapter: daily commit, pull request, issue and review counts via the search API."""

from __future__ import annotations

import logging
from datetime import date

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from prism.config import Settings
from prism.db.enums import Platform
from prism.integrations.base import PlatformUser, decrypt_credential, load_connection
from prism.integrations.http import request_json
from prism.security.credentials import CredentialCipher
from prism.stats.store import upsert_platform_stat
from prism.timeutils import local_today

logger = logging.getLogger(__name__)


class GitHubAdapter:
    platform = Platform.GITHUB

    def __init__(self, http: httpx.AsyncClient, settings: Settings, cipher: CredentialCipher | None = None) -> None:
        self._http = http
        self._settings = settings
        self._cipher = cipher
        self._base_url = settings.github_api_url.rstrip("/")

    def _headers(self, token: str | None) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _search_count(self, kind: str, query: str, token: str | None) -> int:
        data = await request_json(
            self._http,
            "GET",
            f"{self._base_url}/search/{kind}",
            headers=self._headers(token),
            params={"q": query, "per_page": 1},
        )
        return int(data.get("total_count", 0))

    async def fetch_user_data(self, db: AsyncSession, connection_id: int) -> PlatformUser:
        conn = await load_connection(db, connection_id, self.platform)
        token = decrypt_credential(self._cipher, conn, required=False)
        data = await request_json(
            self._http,
            "GET",
            f"{self._base_url}/users/{conn.external_username}",
            headers=self._headers(token),
        )
        return PlatformUser(
            platform=self.platform,
            external_id=str(data["id"]) if data.get("id") is not None else None,
            username=data.get("login", conn.external_username),
            display_name=data.get("name"),
            profile_url=data.get("html_url"),
            extra={
                "public_repos": data.get("public_repos", 0),
                "followers": data.get("followers", 0),
            },
        )

    async def fetch_daily_counts(self, username: str, day: date, token: str | None) -> dict[str, int]:
        """Commits, PRs, issues and reviews authored by ``username`` on ``day``."""
        day_iso = day.isoformat()
        return {
            "commits": await self._search_count("commits", f"author:{username} author-date:{day_iso}", token),
            "pull_requests": await self._search_count(
                "issues", f"author:{username} type:pr created:{day_iso}", token
            ),
            "issues": await self._search_count("issues", f"author:{username} type:issue created:{day_iso}", token),
            "reviews": await self._search_count(
                "issues", f"reviewed-by:{username} -author:{username} type:pr updated:{day_iso}", token
            ),
        }

    async def sync_data(self, db: AsyncSession, user_id: int, connection_id: int) -> None:
        conn = await load_connection(db, connection_id, self.platform)
        token = decrypt_credential(self._cipher, conn, required=False)
        day = local_today(self._settings.timezone)
        counts = await self.fetch_daily_counts(conn.external_username, day, token)
        profile = await self.fetch_user_data(db, connection_id)

        await upsert_platform_stat(
            db,
            connection_id,
            day,
            counts,
            detail={"public_repos": profile.extra.get("public_repos", 0)},
        )
        logger.info("GitHub sync for connection %d: %s", connection_id, counts)
