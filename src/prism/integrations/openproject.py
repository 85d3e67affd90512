"""OpenProject adapter: work packages assigned to the user become tasks."""

from __future__ import annotations

import base64
import json
import logging
from datetime import datetime
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from prism.config import Settings
from prism.db.enums import Platform, TaskSource, TaskStatus
from prism.integrations.base import PlatformUser, decrypt_credential, load_connection
from prism.integrations.http import request_json
from prism.security.credentials import CredentialCipher
from prism.stats.store import upsert_task

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


def task_status(work_package: dict[str, Any]) -> TaskStatus:
    """Map a work package's embedded status to a task status."""
    status = (work_package.get("_embedded") or {}).get("status") or {}
    if status.get("isClosed"):
        name = str(status.get("name", "")).lower()
        return TaskStatus.CANCELLED if "reject" in name or "cancel" in name else TaskStatus.COMPLETED
    if status.get("name", "").lower() in ("new", "to do", "open"):
        return TaskStatus.TODO
    return TaskStatus.IN_PROGRESS


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class OpenProjectAdapter:
    platform = Platform.OPENPROJECT

    def __init__(self, http: httpx.AsyncClient, settings: Settings, cipher: CredentialCipher | None = None) -> None:
        self._http = http
        self._settings = settings
        self._cipher = cipher
        self._base_url = settings.openproject_api_url.rstrip("/")

    async def _get(self, path: str, api_key: str, params: dict[str, Any] | None = None) -> Any:
        token = base64.b64encode(f"apikey:{api_key}".encode()).decode("ascii")
        auth_header = f"Basic {token}"
        return await request_json(
            self._http, "GET", f"{self._base_url}{path}", headers={"Authorization": auth_header}, params=params
        )

    async def fetch_user_data(self, db: AsyncSession, connection_id: int) -> PlatformUser:
        conn = await load_connection(db, connection_id, self.platform)
        api_key = decrypt_credential(self._cipher, conn, required=True)
        data = await self._get("/users/me", api_key)
        return PlatformUser(
            platform=self.platform,
            external_id=str(data.get("id")) if data.get("id") is not None else None,
            username=data.get("login") or conn.external_username,
            display_name=data.get("name"),
        )

    async def fetch_work_packages(self, api_key: str) -> list[dict[str, Any]]:
        filters = json.dumps([{"assignee": {"operator": "=", "values": ["me"]}}])
        packages: list[dict[str, Any]] = []
        offset = 1
        while True:
            data = await self._get(
                "/work_packages",
                api_key,
                params={"filters": filters, "pageSize": PAGE_SIZE, "offset": offset},
            )
            elements = (data.get("_embedded") or {}).get("elements", [])
            packages.extend(elements)
            if len(packages) >= int(data.get("total", 0)) or not elements:
                return packages
            offset += 1

    async def sync_data(self, db: AsyncSession, user_id: int, connection_id: int) -> None:
        conn = await load_connection(db, connection_id, self.platform)
        api_key = decrypt_credential(self._cipher, conn, required=True)
        packages = await self.fetch_work_packages(api_key)

        written = 0
        for wp in packages:
            status = task_status(wp)
            kept = await upsert_task(
                db,
                connection_id,
                TaskSource.OPENPROJECT,
                str(wp["id"]),
                wp.get("subject") or f"Work package {wp['id']}",
                status,
                completed_at=_parse_timestamp(wp.get("updatedAt")) if status is TaskStatus.COMPLETED else None,
            )
            if not kept:
                return
            written += 1
        logger.info("OpenProject sync for connection %d: %d work packages", connection_id, written)
