# models/api/integration_response.py
from datetime import datetime

from pydantic import BaseModel

from app.models.domain.sync_domain import SyncLogEntry, SyncQueueItem


class IntegrationResponse(BaseModel):
    id: str
    owner_id: str
    platform: str
    on_behalf_of: str | None = None
    sync_enabled: bool
    sync_roles: bool
    sync_candidates: bool
    sync_applications: bool
    last_synced_at: datetime | None = None
    last_sync_error: str | None = None
    created_at: datetime
    updated_at: datetime


class TriggerSyncResponse(BaseModel):
    queued: list[SyncQueueItem]


class SyncLogListResponse(BaseModel):
    logs: list[SyncLogEntry]
    limit: int
    offset: int


class PushCandidateResponse(BaseModel):
    success: bool
    external_id: str | None = None
    error: str | None = None
