# models/domain/outbox_domain.py
"""
Outbox event domain model and the event types this service emits.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# Connection lifecycle
CONNECTION_CREATED = "connection.created"
CONNECTION_REVOKED = "connection.revoked"
TOKEN_REFRESHED = "token_refreshed"
TOKEN_EXPIRED = "token_expired"

# ATS synchronization
ATS_SYNC_FAILED = "ats.sync.failed"


def ats_entity_synced(entity_type: str) -> str:
    """Event type for an inbound ATS record landing on an internal id."""
    return f"ats.{entity_type}.synced"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DELIVERED = "delivered"


class OutboxEvent(BaseModel):
    id: str
    sequence: int
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    created_at: datetime
    next_attempt_at: datetime | None = None
    claimed_by: str | None = None
    lease_expires_at: datetime | None = None
    delivered_at: datetime | None = None

    @property
    def ordering_key(self) -> tuple[datetime, int]:
        return (self.created_at, self.sequence)
