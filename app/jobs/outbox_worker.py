"""
Outbox Worker.
Drains pending outbox rows to the broker on its own polling schedule.

Several instances may run at once (rolling deploys, replicas). Row claims
with leases keep two workers from processing the same row; the broker may
still see an event twice, which consumers must tolerate.
"""

import asyncio
import random
import socket
import uuid
from datetime import UTC, datetime, timedelta

from app.config import settings
from app.infrastructure.broker import BrokerError, EventBroker, RedisStreamBroker
from app.infrastructure.observability.logging import get_logger, log_job_cycle
from app.jobs.lifecycle import run_until_signalled
from app.repositories.outbox_repository import OutboxRepository, outbox_repository

logger = get_logger(__name__)

ERROR_PAUSE_SECONDS = 5.0


class OutboxMetrics:
    """Counters for one worker instance."""

    def __init__(self):
        self.started_at = datetime.now(UTC)
        self.batches = 0
        self.delivered = 0
        self.failed = 0
        self.released = 0
        self.lost_claims = 0
        self.last_batch_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "batches": self.batches,
            "delivered": self.delivered,
            "failed": self.failed,
            "released": self.released,
            "lost_claims": self.lost_claims,
            "last_batch_at": self.last_batch_at.isoformat() if self.last_batch_at else None,
        }


def retry_delay_seconds(attempts: int) -> float:
    """Capped exponential backoff with +/-20% jitter."""
    base = settings.OUTBOX_BASE_BACKOFF_SECONDS * (2**attempts)
    capped = min(base, settings.OUTBOX_MAX_BACKOFF_SECONDS)
    return capped * random.uniform(0.8, 1.2)


class OutboxWorker:
    def __init__(
        self,
        repository: OutboxRepository = outbox_repository,
        broker: EventBroker | None = None,
        *,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        lease_seconds: int | None = None,
        worker_id: str | None = None,
    ):
        self.repository = repository
        self.broker = broker or RedisStreamBroker()
        self.batch_size = batch_size or settings.OUTBOX_BATCH_SIZE
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.OUTBOX_POLL_INTERVAL_SECONDS
        )
        self.lease_seconds = lease_seconds or settings.OUTBOX_LEASE_SECONDS
        self.worker_id = worker_id or f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"
        self.metrics = OutboxMetrics()

        self._stopping = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self.is_running = False

    async def run_once(self) -> dict:
        """
        Claim one batch and publish it in creation order.

        The first broker failure ends the batch: that row is rescheduled with
        backoff and the rows behind it are released untouched, so a later
        event is never delivered ahead of an earlier one from the same batch.
        """
        self._idle.clear()
        try:
            events = await self.repository.claim_batch(
                self.worker_id, self.batch_size, self.lease_seconds
            )
            result = {"claimed": len(events), "delivered": 0, "failed": 0, "released": 0}

            for index, event in enumerate(events):
                try:
                    await self.broker.publish(event)
                except BrokerError as e:
                    next_attempt_at = datetime.now(UTC) + timedelta(
                        seconds=retry_delay_seconds(event.attempts)
                    )
                    await self.repository.mark_failed(
                        event.id, self.worker_id, str(e), next_attempt_at
                    )
                    remaining = [pending.id for pending in events[index + 1 :]]
                    released = await self.repository.release(remaining, self.worker_id)

                    result["failed"] += 1
                    result["released"] += released
                    logger.warning(
                        "Outbox delivery failed",
                        event_id=event.id,
                        event_type=event.event_type,
                        attempts=event.attempts + 1,
                        next_attempt_at=next_attempt_at.isoformat(),
                        released=released,
                        error=str(e),
                    )
                    break

                if await self.repository.mark_delivered(event.id, self.worker_id):
                    result["delivered"] += 1
                else:
                    # Lease lapsed and another worker re-claimed the row
                    self.metrics.lost_claims += 1
                    logger.warning(
                        "Outbox claim lost before marking delivered",
                        event_id=event.id,
                        worker_id=self.worker_id,
                    )

            self.metrics.batches += 1
            self.metrics.delivered += result["delivered"]
            self.metrics.failed += result["failed"]
            self.metrics.released += result["released"]
            self.metrics.last_batch_at = datetime.now(UTC)

            if events:
                logger.debug("Outbox batch processed", worker_id=self.worker_id, **result)

            return result
        finally:
            self._idle.set()

    async def run(self) -> None:
        """Poll until stop() is called. Stop is only honoured between batches."""
        self.is_running = True
        self._stopping.clear()
        logger.info(
            "Outbox worker started",
            worker_id=self.worker_id,
            batch_size=self.batch_size,
            poll_interval=self.poll_interval,
        )

        try:
            while not self._stopping.is_set():
                pause = self.poll_interval + random.uniform(0, self.poll_interval / 2)
                try:
                    result = await self.run_once()
                    if result["claimed"] == self.batch_size and not result["failed"]:
                        # Backlog: go straight to the next batch
                        pause = 0
                except Exception as e:
                    logger.error(
                        "Outbox worker iteration failed",
                        worker_id=self.worker_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    pause = ERROR_PAUSE_SECONDS

                if pause:
                    try:
                        await asyncio.wait_for(self._stopping.wait(), timeout=pause)
                    except TimeoutError:
                        pass
        finally:
            self.is_running = False
            log_job_cycle("outbox_publisher", self.metrics.to_dict())
            logger.info("Outbox worker stopped", worker_id=self.worker_id)

    async def stop(self) -> None:
        """Request shutdown and wait for an in-flight batch to finish."""
        self._stopping.set()
        await self._idle.wait()

    def health_check(self) -> dict:
        return {
            "healthy": self.is_running,
            "service": "outbox_worker",
            "worker_id": self.worker_id,
            "metrics": self.metrics.to_dict(),
        }


async def start_outbox_worker() -> None:
    """Worker-process entrypoint."""
    await run_until_signalled(OutboxWorker())
