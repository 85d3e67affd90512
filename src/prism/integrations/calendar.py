"""Google Calendar and Microsoft Outlook adapters: count of the day's events."""

from __future__ import annotations

import logging
from datetime import datetime

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from prism.config import Settings
from prism.db.enums import Platform
from prism.integrations.base import PlatformUser, decrypt_credential, load_connection
from prism.integrations.http import request_json
from prism.security.credentials import CredentialCipher
from prism.stats.store import upsert_platform_stat
from prism.timeutils import day_bounds, local_today

logger = logging.getLogger(__name__)


def _rfc3339(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


class GoogleCalendarAdapter:
    platform = Platform.GOOGLE_CALENDAR

    def __init__(self, http: httpx.AsyncClient, settings: Settings, cipher: CredentialCipher | None = None) -> None:
        self._http = http
        self._settings = settings
        self._cipher = cipher
        self._base_url = settings.google_calendar_api_url.rstrip("/")

    async def fetch_user_data(self, db: AsyncSession, connection_id: int) -> PlatformUser:
        conn = await load_connection(db, connection_id, self.platform)
        token = decrypt_credential(self._cipher, conn, required=True)
        data = await request_json(
            self._http,
            "GET",
            f"{self._base_url}/calendars/primary",
            headers={"Authorization": f"Bearer {token}"},
        )
        return PlatformUser(
            platform=self.platform,
            external_id=data.get("id"),
            username=conn.external_username,
            display_name=data.get("summary"),
            extra={"time_zone": data.get("timeZone")},
        )

    async def count_events(self, token: str, start: datetime, end: datetime) -> int:
        count = 0
        page_token: str | None = None
        while True:
            params = {
                "timeMin": _rfc3339(start),
                "timeMax": _rfc3339(end),
                "singleEvents": "true",
                "maxResults": 250,
            }
            if page_token:
                params["pageToken"] = page_token
            data = await request_json(
                self._http,
                "GET",
                f"{self._base_url}/calendars/primary/events",
                headers={"Authorization": f"Bearer {token}"},
                params=params,
            )
            count += sum(1 for item in data.get("items", []) if item.get("status") != "cancelled")
            page_token = data.get("nextPageToken")
            if not page_token:
                return count

    async def sync_data(self, db: AsyncSession, user_id: int, connection_id: int) -> None:
        conn = await load_connection(db, connection_id, self.platform)
        token = decrypt_credential(self._cipher, conn, required=True)
        day = local_today(self._settings.timezone)
        start, end = day_bounds(day, self._settings.timezone)
        events = await self.count_events(token, start, end)
        await upsert_platform_stat(db, connection_id, day, {"calendar_events": events})
        logger.info("Google Calendar sync for connection %d: %d events", connection_id, events)


class MicrosoftCalendarAdapter:
    platform = Platform.MS_CALENDAR

    def __init__(self, http: httpx.AsyncClient, settings: Settings, cipher: CredentialCipher | None = None) -> None:
        self._http = http
        self._settings = settings
        self._cipher = cipher
        self._base_url = settings.ms_graph_api_url.rstrip("/")

    async def fetch_user_data(self, db: AsyncSession, connection_id: int) -> PlatformUser:
        conn = await load_connection(db, connection_id, self.platform)
        token = decrypt_credential(self._cipher, conn, required=True)
        data = await request_json(
            self._http,
            "GET",
            f"{self._base_url}/me",
            headers={"Authorization": f"Bearer {token}"},
        )
        return PlatformUser(
            platform=self.platform,
            external_id=data.get("id"),
            username=data.get("userPrincipalName") or conn.external_username,
            display_name=data.get("displayName"),
        )

    async def count_events(self, token: str, start: datetime, end: datetime) -> int:
        count = 0
        url: str | None = f"{self._base_url}/me/calendarView"
        params: dict | None = {
            "startDateTime": _rfc3339(start),
            "endDateTime": _rfc3339(end),
            "$select": "id,isCancelled",
            "$top": 100,
        }
        while url:
            data = await request_json(
                self._http, "GET", url, headers={"Authorization": f"Bearer {token}"}, params=params
            )
            count += sum(1 for item in data.get("value", []) if not item.get("isCancelled"))
            # nextLink already carries the query string
            url = data.get("@odata.nextLink")
            params = None
        return count

    async def sync_data(self, db: AsyncSession, user_id: int, connection_id: int) -> None:
        conn = await load_connection(db, connection_id, self.platform)
        token = decrypt_credential(self._cipher, conn, required=True)
        day = local_today(self._settings.timezone)
        start, end = day_bounds(day, self._settings.timezone)
        events = await self.count_events(token, start, end)
        await upsert_platform_stat(db, connection_id, day, {"calendar_events": events})
        logger.info("Microsoft Calendar sync for connection %d: %d events", connection_id, events)
