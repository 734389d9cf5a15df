"""
Outbox publisher.

Callers hand events to publish() inside the same transaction as the state
change that produced them. Nothing here talks to the broker; delivery is the
outbox worker's job, so a broker outage can never fail a local write.
"""

from typing import Any

import psycopg

from app.infrastructure.observability.logging import get_logger
from app.models.domain.outbox_domain import OutboxEvent
from app.repositories.outbox_repository import OutboxRepository, outbox_repository

logger = get_logger(__name__)


class OutboxService:
    def __init__(self, repository: OutboxRepository = outbox_repository):
        self.repository = repository

    async def publish(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> OutboxEvent:
        """
        Durably queue a domain event.

        Args:
            event_type: Dotted event name, e.g. "connection.created"
            payload: JSON-serializable body; include aggregate ids so consumers
                can order per aggregate
            connection: The caller's transaction. Without it the event is
                written in its own autocommit statement.
        """
        event = await self.repository.insert(event_type, payload, connection=connection)

        logger.info(
            "Outbox event queued",
            event_id=event.id,
            event_type=event_type,
            in_transaction=connection is not None,
        )
        return event

    async def pending_count(self) -> int:
        return await self.repository.count_undelivered()


outbox_service = OutboxService()
