"""Adapter interface shared by all platform integrations."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from prism.db.enums import Platform
from prism.db.models import PlatformConnection
from prism.errors import InvalidCredentialError, NotFoundError
from prism.security.credentials import CredentialCipher


class PlatformUser(BaseModel):
    """Account profile as reported by the remote platform."""

    platform: Platform
    external_id: str | None = None
    username: str
    display_name: str | None = None
    profile_url: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class PlatformAdapter(Protocol):
    """One implementation per platform.

    ``sync_data`` either returns after upserting the day's stat rows through
    ``prism.stats.store`` or raises a ``PrismError``. Adapters never touch the
    connection's sync state and never commit; the sync worker owns both.
    """

    platform: Platform

    async def fetch_user_data(self, db: AsyncSession, connection_id: int) -> PlatformUser: ...

    async def sync_data(self, db: AsyncSession, user_id: int, connection_id: int) -> None: ...


async def load_connection(db: AsyncSession, connection_id: int, platform: Platform) -> PlatformConnection:
    """Fetch a connection and check it belongs to ``platform``."""
    conn = await db.get(PlatformConnection, connection_id)
    if conn is None or conn.platform is not platform:
        raise NotFoundError(f"{platform.value} connection {connection_id} not found")
    return conn


def decrypt_credential(cipher: CredentialCipher | None, conn: PlatformConnection, *, required: bool) -> str | None:
    """Decrypt the connection's credential.

    Public-profile platforms may run without one. A credential that is present
    but cannot be decrypted is always fatal for the connection.
    """
    if not conn.credential:
        if required:
            raise InvalidCredentialError(f"{conn.platform.value} connection {conn.id} has no credential")
        return None
    if cipher is None:
        raise InvalidCredentialError("No credential cipher configured")
    return cipher.decrypt(conn.credential)
