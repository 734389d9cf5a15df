"""
Data Cleanup Background Job - retention enforcement for the work tables.

Runs daily at CLEANUP_SCHEDULE_HOUR (UTC) to:
1. Delete delivered outbox events older than OUTBOX_RETENTION_DAYS
2. Delete finished (success/failed) sync queue items older than
   SYNC_QUEUE_RETENTION_DAYS

Connections, the entity map and the sync log are audit history and are
never touched here. Pending or in-flight rows are never deleted.
"""

import asyncio
from datetime import UTC, datetime, timedelta

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.repositories.outbox_repository import OutboxRepository, outbox_repository
from app.repositories.sync_repository import SyncRepository, sync_repository

logger = get_logger(__name__)


class DataCleanupJob:
    """Background job for automatic data retention enforcement."""

    def __init__(
        self,
        outbox: OutboxRepository = outbox_repository,
        sync: SyncRepository = sync_repository,
    ):
        self.outbox = outbox
        self.sync = sync
        self.is_running = False

    async def run_cleanup(self) -> dict:
        """
        Run one cleanup pass. Each step runs even if the previous one failed.

        Returns:
            dict: {
                "success": bool,
                "deleted_outbox_events": int,
                "deleted_sync_items": int,
                "errors": list,
            }
        """
        if self.is_running:
            logger.warning("Cleanup job already running, skipping")
            return {"success": False, "error": "Already running"}

        self.is_running = True
        start_time = datetime.now(UTC)
        retention = settings.get_data_retention_config()

        result = {
            "success": True,
            "deleted_outbox_events": 0,
            "deleted_sync_items": 0,
            "errors": [],
        }

        try:
            try:
                cutoff = start_time - timedelta(days=retention["outbox_retention_days"])
                result["deleted_outbox_events"] = await self.outbox.delete_delivered_before(cutoff)
            except Exception as e:
                error_msg = f"Failed to delete delivered outbox events: {e}"
                logger.error(error_msg)
                result["errors"].append(error_msg)

            try:
                cutoff = start_time - timedelta(days=retention["sync_queue_retention_days"])
                result["deleted_sync_items"] = await self.sync.delete_finished_before(cutoff)
            except Exception as e:
                error_msg = f"Failed to delete finished sync items: {e}"
                logger.error(error_msg)
                result["errors"].append(error_msg)

            result["success"] = not result["errors"]

        finally:
            self.is_running = False

        logger.info(
            "Data cleanup job completed",
            duration_seconds=(datetime.now(UTC) - start_time).total_seconds(),
            deleted_outbox_events=result["deleted_outbox_events"],
            deleted_sync_items=result["deleted_sync_items"],
            errors=len(result["errors"]),
        )
        return result


def seconds_until(hour: int, now: datetime | None = None) -> float:
    """Seconds from now until the next occurrence of `hour`:00 UTC."""
    now = now or datetime.now(UTC)
    next_run = now.replace(hour=hour, minute=0, second=0, microsecond=0)
    if now >= next_run:
        next_run += timedelta(days=1)
    return (next_run - now).total_seconds()


async def start_data_cleanup_scheduler():
    """Run the cleanup job daily at the configured hour until cancelled."""
    cleanup_job = DataCleanupJob()
    retention_config = settings.get_data_retention_config()

    if not retention_config["cleanup_enabled"]:
        logger.info("Data cleanup scheduler disabled", environment=settings.environment)
        return

    schedule_hour = retention_config["cleanup_schedule_hour"]
    logger.info("Data cleanup scheduler started", schedule_hour=schedule_hour)

    while True:
        try:
            sleep_seconds = seconds_until(schedule_hour)
            logger.info("Data cleanup job scheduled", sleep_seconds=round(sleep_seconds))
            await asyncio.sleep(sleep_seconds)

            await cleanup_job.run_cleanup()

        except asyncio.CancelledError:
            logger.info("Data cleanup scheduler cancelled")
            raise
        except Exception as e:
            logger.error("Error in cleanup scheduler, will retry", error=str(e))
            await asyncio.sleep(3600)
