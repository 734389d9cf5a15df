"""
Sync Worker.
Drains the ATS sync queue for every sync-enabled integration.

Items are claimed with a lease, so replicas can share the queue; an item
left in `processing` by a crashed worker is picked up again once its lease
runs out.
"""

import asyncio
import random
from datetime import UTC, datetime

from app.config import settings
from app.infrastructure.observability.logging import get_logger, log_job_cycle
from app.jobs.lifecycle import run_until_signalled
from app.repositories.integration_repository import IntegrationRepository, integration_repository
from app.services.ats.sync_service import SyncService, sync_service

logger = get_logger(__name__)

ERROR_PAUSE_SECONDS = 30.0


class SyncWorker:
    def __init__(
        self,
        service: SyncService = sync_service,
        integrations: IntegrationRepository = integration_repository,
        *,
        batch_size: int | None = None,
        poll_interval: float | None = None,
    ):
        self.service = service
        self.integrations = integrations
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.SYNC_POLL_INTERVAL_SECONDS
        )
        self.totals = {"passes": 0, "claimed": 0, "succeeded": 0, "retried": 0, "failed": 0}
        self.last_pass_at: datetime | None = None

        self._stopping = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self.is_running = False

    async def run_once(self) -> dict:
        """One pass over all sync-enabled integrations."""
        self._idle.clear()
        try:
            summary = {"integrations": 0, "claimed": 0, "succeeded": 0, "retried": 0, "failed": 0}

            for integration in await self.integrations.list_sync_enabled():
                if self._stopping.is_set():
                    break
                try:
                    result = await self.service.process_pending(integration.id, self.batch_size)
                except Exception as e:
                    logger.error(
                        "Sync pass failed for integration",
                        integration_id=integration.id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    continue

                summary["integrations"] += 1
                for key in ("claimed", "succeeded", "retried", "failed"):
                    summary[key] += result[key]

            self.totals["passes"] += 1
            for key in ("claimed", "succeeded", "retried", "failed"):
                self.totals[key] += summary[key]
            self.last_pass_at = datetime.now(UTC)

            if summary["claimed"]:
                logger.info("Sync pass processed items", **summary)
            return summary
        finally:
            self._idle.set()

    async def run(self) -> None:
        """Poll until stop() is called."""
        self.is_running = True
        self._stopping.clear()
        logger.info(
            "Sync worker started", batch_size=self.batch_size, poll_interval=self.poll_interval
        )

        try:
            while not self._stopping.is_set():
                pause = self.poll_interval + random.uniform(0, self.poll_interval / 2)
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error(
                        "Sync worker iteration failed", error=str(e), error_type=type(e).__name__
                    )
                    pause = ERROR_PAUSE_SECONDS

                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=pause)
                except TimeoutError:
                    pass
        finally:
            self.is_running = False
            log_job_cycle("sync_queue", dict(self.totals))
            logger.info("Sync worker stopped")

    async def stop(self) -> None:
        """Request shutdown and wait for the in-flight pass to finish."""
        self._stopping.set()
        await self._idle.wait()

    def health_check(self) -> dict:
        return {
            "healthy": self.is_running,
            "service": "sync_worker",
            "last_pass_at": self.last_pass_at.isoformat() if self.last_pass_at else None,
            "totals": dict(self.totals),
        }


async def start_sync_worker() -> None:
    """Worker-process entrypoint."""
    await run_until_signalled(SyncWorker())
