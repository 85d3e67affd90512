"""Pydantic models returned by the sync operations.

None of them carry raw error text; failures surface as the generic message.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from prism.db.enums import Platform, SyncJobStatus, SyncStatus


class ConnectionStatus(BaseModel):
    connection_id: int
    platform: Platform
    external_username: str
    is_active: bool
    sync_status: SyncStatus
    last_synced: datetime | None = None
    message: str


class SyncTriggerResult(BaseModel):
    connection_id: int
    platform: Platform
    status: str  # "queued" | "coalesced" | "unsupported"
    job_id: str | None = None
    message: str


class SyncJobRecord(BaseModel):
    job_id: str
    platform: Platform
    status: SyncJobStatus
    attempts: int
    created_at: datetime
    started_at: datetime | None = None
    completed_at: datetime | None = None
