# models/domain/sync_domain.py
"""
ATS synchronization domain models: integrations, queue items, the entity
map and the sync log.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ATSPlatform(str, Enum):
    GREENHOUSE = "greenhouse"
    LEVER = "lever"


class EntityType(str, Enum):
    ROLE = "role"
    CANDIDATE = "candidate"
    APPLICATION = "application"


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class SyncDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class SyncStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"


class SyncErrorType(str, Enum):
    TRANSIENT = "transient"
    AUTH = "auth"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


# Retrying cannot help these; the item fails on the first attempt
NON_RETRYABLE_ERRORS = frozenset(
    {SyncErrorType.AUTH, SyncErrorType.VALIDATION, SyncErrorType.NOT_FOUND}
)


# Roles before candidates before applications: an application references both
CATEGORY_PRIORITIES: dict[EntityType, int] = {
    EntityType.ROLE: 1,
    EntityType.CANDIDATE: 2,
    EntityType.APPLICATION: 3,
}


class IntegrationSettings(BaseModel):
    sync_enabled: bool = True
    sync_roles: bool = True
    sync_candidates: bool = True
    sync_applications: bool = False


class ATSIntegration(BaseModel):
    """A company's link to one ATS account (API key decrypted)."""

    id: str
    owner_id: str
    platform: ATSPlatform
    api_key: str
    on_behalf_of: str | None = None
    sync_enabled: bool = True
    sync_roles: bool = True
    sync_candidates: bool = True
    sync_applications: bool = False
    last_synced_at: datetime | None = None
    last_sync_error: str | None = None
    created_at: datetime
    updated_at: datetime

    def enabled_categories(self) -> list[EntityType]:
        flags = {
            EntityType.ROLE: self.sync_roles,
            EntityType.CANDIDATE: self.sync_candidates,
            EntityType.APPLICATION: self.sync_applications,
        }
        return [entity_type for entity_type in CATEGORY_PRIORITIES if flags[entity_type]]

    def to_public_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude={"api_key"}, mode="json")


class NewSyncItem(BaseModel):
    """
    Work to enqueue.

    entity_id is the internal id for outbound items and the external id for
    inbound items. None means every record of the entity type.
    """

    integration_id: str
    entity_type: EntityType
    entity_id: str | None = None
    action: SyncAction
    direction: SyncDirection
    priority: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    max_retries: int | None = None
    scheduled_at: datetime | None = None

    @property
    def effective_priority(self) -> int:
        if self.priority is not None:
            return self.priority
        return CATEGORY_PRIORITIES[self.entity_type]


class SyncQueueItem(BaseModel):
    id: str
    integration_id: str
    entity_type: EntityType
    entity_id: str | None = None
    action: SyncAction
    direction: SyncDirection
    priority: int
    payload: dict[str, Any] = Field(default_factory=dict)
    status: SyncStatus
    retry_count: int = 0
    max_retries: int = 3
    last_error: str | None = None
    scheduled_at: datetime
    processed_at: datetime | None = None
    lease_expires_at: datetime | None = None
    created_at: datetime

    @property
    def retries_exhausted(self) -> bool:
        """One more failure makes this item terminal."""
        return self.retry_count >= self.max_retries


class EntityMapping(BaseModel):
    id: str
    integration_id: str
    entity_type: EntityType
    internal_id: str
    external_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_synced_at: datetime
    created_at: datetime
    updated_at: datetime


class SyncLogEntry(BaseModel):
    id: str
    integration_id: str
    entity_type: EntityType
    entity_id: str | None = None
    external_id: str | None = None
    action: SyncAction
    direction: SyncDirection
    status: SyncStatus
    error_type: SyncErrorType | None = None
    error_message: str | None = None
    request_payload: dict[str, Any] | None = None
    response_payload: dict[str, Any] | None = None
    duration_ms: int | None = None
    created_at: datetime


class SyncStats(BaseModel):
    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    pending_queue_depth: int = 0
    last_synced_at: datetime | None = None


class SyncOutcome(BaseModel):
    """Result of processing one queue item."""

    item_id: str
    status: SyncStatus
    action: SyncAction
    external_id: str | None = None
    records: int = 0
    error: str | None = None
    error_type: SyncErrorType | None = None
