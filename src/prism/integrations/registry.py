"""Platform identifier -> adapter lookup.

Built once per process by :func:`build_registry` and handed to workers through
the arq context; adapters are constructed lazily, one instance per platform.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from functools import partial

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prism.config import Settings
from prism.db.enums import Platform, parse_platform
from prism.db.models import PlatformConnection
from prism.errors import ConfigurationError, PrismError, classify_error
from prism.integrations.base import PlatformAdapter
from prism.integrations.calendar import GoogleCalendarAdapter, MicrosoftCalendarAdapter
from prism.integrations.codeforces import CodeforcesAdapter
from prism.integrations.github import GitHubAdapter
from prism.integrations.leetcode import LeetCodeAdapter
from prism.integrations.openproject import OpenProjectAdapter
from prism.security.credentials import CredentialCipher

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[], PlatformAdapter]


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one connection in a fan-out sync."""

    connection_id: int
    platform: Platform
    error: PrismError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class IntegrationRegistry:
    def __init__(self, factories: Mapping[Platform, AdapterFactory]) -> None:
        self._factories = dict(factories)
        self._adapters: dict[Platform, PlatformAdapter] = {}

    @property
    def supported_platforms(self) -> frozenset[Platform]:
        return frozenset(self._factories)

    def get_adapter(self, platform: str | Platform) -> PlatformAdapter:
        """Cached adapter for ``platform``.

        Raises ValidationError for an unknown identifier and ConfigurationError
        for a known platform with no adapter, before any I/O.
        """
        platform = parse_platform(platform)
        adapter = self._adapters.get(platform)
        if adapter is None:
            factory = self._factories.get(platform)
            if factory is None:
                raise ConfigurationError(f"No adapter configured for {platform.value}")
            adapter = factory()
            self._adapters[platform] = adapter
        return adapter

    async def sync_platform(
        self, db: AsyncSession, user_id: int, connection_id: int, platform: str | Platform
    ) -> None:
        adapter = self.get_adapter(platform)
        await adapter.sync_data(db, user_id, connection_id)

    async def sync_all_platforms(
        self, session_factory: async_sessionmaker[AsyncSession], user_id: int
    ) -> list[SyncResult]:
        """Sync every active connection of a user concurrently.

        Each connection gets its own session and transaction; one failing
        platform never aborts the others. Returns one result per connection.
        """
        async with session_factory() as db:
            result = await db.execute(
                select(PlatformConnection.id, PlatformConnection.platform).where(
                    PlatformConnection.user_id == user_id,
                    PlatformConnection.is_active.is_(True),
                )
            )
            targets = [(row.id, row.platform) for row in result]

        async def _one(connection_id: int, platform: Platform) -> None:
            async with session_factory() as db:
                try:
                    await self.sync_platform(db, user_id, connection_id, platform)
                    await db.commit()
                except BaseException:
                    await db.rollback()
                    raise

        outcomes = await asyncio.gather(*(_one(cid, p) for cid, p in targets), return_exceptions=True)

        results = []
        for (connection_id, platform), outcome in zip(targets, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            error = classify_error(outcome) if isinstance(outcome, BaseException) else None
            if error is not None:
                logger.warning(
                    "Sync of connection %d (%s) failed: %s", connection_id, platform.value, error.message
                )
            results.append(SyncResult(connection_id=connection_id, platform=platform, error=error))
        return results


def build_registry(
    settings: Settings, http: httpx.AsyncClient, cipher: CredentialCipher | None = None
) -> IntegrationRegistry:
    """Registry with every shipped adapter. Slack has no adapter."""
    factories: dict[Platform, AdapterFactory] = {
        Platform.GITHUB: partial(GitHubAdapter, http, settings, cipher),
        Platform.LEETCODE: partial(LeetCodeAdapter, http, settings, cipher),
        Platform.CODEFORCES: partial(CodeforcesAdapter, http, settings, cipher),
        Platform.GOOGLE_CALENDAR: partial(GoogleCalendarAdapter, http, settings, cipher),
        Platform.MS_CALENDAR: partial(MicrosoftCalendarAdapter, http, settings, cipher),
        Platform.OPENPROJECT: partial(OpenProjectAdapter, http, settings, cipher),
    }
    return IntegrationRegistry(factories)
