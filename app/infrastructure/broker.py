"""
Message broker used by the outbox worker.

Events go to a Redis stream; consumers read it with consumer groups
(XREADGROUP), which gives them their own at-least-once acknowledgement.
"""

import json
from abc import ABC, abstractmethod

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.outbox_domain import OutboxEvent
from app.services.infrastructure.redis_client import FastRedisClient, fast_redis

logger = get_logger(__name__)


class BrokerError(Exception):
    """The broker did not accept an event."""


class EventBroker(ABC):
    @abstractmethod
    async def publish(self, event: OutboxEvent) -> str:
        """Hand one event to the broker and return the broker-side message id."""


class RedisStreamBroker(EventBroker):
    def __init__(
        self,
        client: FastRedisClient = fast_redis,
        stream: str | None = None,
        maxlen: int | None = None,
    ):
        self.client = client
        self.stream = stream or settings.EVENT_STREAM_NAME
        self.maxlen = maxlen or settings.EVENT_STREAM_MAXLEN

    async def publish(self, event: OutboxEvent) -> str:
        fields = {
            "event_id": event.id,
            "event_type": event.event_type,
            "sequence": str(event.sequence),
            "created_at": event.created_at.isoformat(),
            "payload": json.dumps(event.payload, default=str),
        }
        try:
            message_id = await self.client.stream_add(self.stream, fields, maxlen=self.maxlen)
        except Exception as e:
            raise BrokerError(f"Stream append failed: {type(e).__name__}: {e}") from e

        logger.debug(
            "Event published",
            event_id=event.id,
            event_type=event.event_type,
            stream=self.stream,
            message_id=message_id,
        )
        return message_id
