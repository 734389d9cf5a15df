"""
ATS Sync Service.
Queues, runs and records synchronization between internal records and an
ATS account.

Identity: the entity map ties (integration, entity_type, internal_id) to the
vendor's id. A queued create whose mapping already exists is sent as an
update, which keeps retries from creating duplicates on the vendor side.

Retries: each failed attempt counts against max_retries. When an item that
has used all its retries fails again it becomes terminal `failed` and only
requeue_failed() brings it back.

Audit: every attempt, success or failure, appends exactly one sync_log row.
"""

import random
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.outbox_domain import ATS_SYNC_FAILED, ats_entity_synced
from app.models.domain.sync_domain import (
    NON_RETRYABLE_ERRORS,
    ATSIntegration,
    ATSPlatform,
    EntityType,
    IntegrationSettings,
    NewSyncItem,
    SyncAction,
    SyncDirection,
    SyncErrorType,
    SyncLogEntry,
    SyncOutcome,
    SyncQueueItem,
    SyncStats,
    SyncStatus,
)
from app.repositories.integration_repository import IntegrationRepository, integration_repository
from app.repositories.sync_repository import SyncRepository, sync_repository
from app.services.ats.adapters.base import ATSAdapter, ATSAdapterError, ATSRecord
from app.services.ats.adapters.registry import build_adapter, resolve_platform
from app.services.outbox_service import OutboxService, outbox_service

logger = get_logger(__name__)

AdapterFactory = Callable[[ATSPlatform, str, str | None], ATSAdapter]


class SyncServiceError(Exception):
    """Base exception for sync operations."""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(message)
        self.recoverable = recoverable


class IntegrationNotFoundError(SyncServiceError):
    """Integration missing, or not owned by the caller."""


class IntegrationValidationError(SyncServiceError):
    """Setup parameters were rejected (e.g. the API key failed the live probe)."""


class SyncItemNotFoundError(SyncServiceError):
    pass


class SyncItemStateError(SyncServiceError):
    """Operation not allowed in the item's current status."""


def retry_delay_seconds(retry_count: int) -> float:
    """Capped exponential backoff with up to 10% jitter."""
    base = settings.SYNC_RETRY_BASE_SECONDS * (2**retry_count)
    capped = min(base, settings.SYNC_RETRY_MAX_SECONDS)
    return capped + random.uniform(0, capped * 0.1)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class SyncService:
    def __init__(
        self,
        integrations: IntegrationRepository = integration_repository,
        repository: SyncRepository = sync_repository,
        outbox: OutboxService = outbox_service,
        adapter_factory: AdapterFactory = build_adapter,
    ):
        self.integrations = integrations
        self.repository = repository
        self.outbox = outbox
        self.adapter_factory = adapter_factory

    def _adapter(self, integration: ATSIntegration) -> ATSAdapter:
        return self.adapter_factory(
            integration.platform, integration.api_key, integration.on_behalf_of
        )

    async def _get_owned(self, owner_id: str, integration_id: str) -> ATSIntegration:
        integration = await self.integrations.get_for_owner(owner_id, integration_id)
        if integration is None:
            raise IntegrationNotFoundError(f"Integration {integration_id} not found")
        return integration

    # Integrations

    async def create_integration(
        self,
        owner_id: str,
        platform: str | ATSPlatform,
        api_key: str,
        *,
        on_behalf_of: str | None = None,
        integration_settings: IntegrationSettings | None = None,
    ) -> ATSIntegration:
        """
        Probe the API key against the vendor, then store the integration.

        Nothing is persisted when the probe fails.

        Raises:
            UnsupportedPlatformError: Unknown platform slug
            IntegrationValidationError: Key rejected or vendor unreachable
        """
        resolved = resolve_platform(platform)
        if not api_key:
            raise IntegrationValidationError("API key is required")

        adapter = self.adapter_factory(resolved, api_key, on_behalf_of)
        try:
            await adapter.validate_credentials()
        except ATSAdapterError as e:
            logger.warning(
                "ATS credential probe failed",
                owner_id=owner_id,
                platform=resolved.value,
                status_code=e.status_code,
                error_type=e.error_type.value,
            )
            raise IntegrationValidationError(
                f"Could not validate {resolved.value} API key: {e}",
                recoverable=e.error_type == SyncErrorType.TRANSIENT,
            ) from e

        integration = await self.integrations.create(
            owner_id,
            resolved,
            api_key,
            integration_settings or IntegrationSettings(),
            on_behalf_of=on_behalf_of,
        )
        logger.info(
            "ATS integration saved",
            owner_id=owner_id,
            integration_id=integration.id,
            platform=resolved.value,
        )
        return integration

    async def list_integrations(self, owner_id: str) -> list[ATSIntegration]:
        return await self.integrations.list_for_owner(owner_id)

    async def update_settings(
        self, owner_id: str, integration_id: str, integration_settings: IntegrationSettings
    ) -> ATSIntegration:
        updated = await self.integrations.update_settings(
            owner_id, integration_id, integration_settings
        )
        if updated is None:
            raise IntegrationNotFoundError(f"Integration {integration_id} not found")
        return updated

    # Queue

    async def enqueue(self, item: NewSyncItem) -> SyncQueueItem:
        queued = await self.repository.enqueue(item)
        logger.debug(
            "Sync item enqueued",
            item_id=queued.id,
            integration_id=queued.integration_id,
            entity_type=queued.entity_type.value,
            direction=queued.direction.value,
            priority=queued.priority,
        )
        return queued

    async def dequeue_pending(self, integration_id: str, limit: int) -> list[SyncQueueItem]:
        """Claim up to `limit` due items ordered by (priority, scheduled_at)."""
        return await self.repository.claim_pending(
            integration_id, limit, settings.SYNC_LEASE_SECONDS
        )

    async def trigger_sync(self, owner_id: str, integration_id: str) -> list[SyncQueueItem]:
        """Queue one inbound full sync per enabled category."""
        integration = await self._get_owned(owner_id, integration_id)
        if not integration.sync_enabled:
            logger.info("Sync requested for disabled integration", integration_id=integration_id)
            return []

        items = [
            await self.enqueue(
                NewSyncItem(
                    integration_id=integration.id,
                    entity_type=entity_type,
                    action=SyncAction.UPDATE,
                    direction=SyncDirection.INBOUND,
                )
            )
            for entity_type in integration.enabled_categories()
        ]
        logger.info(
            "Sync triggered",
            integration_id=integration_id,
            categories=[item.entity_type.value for item in items],
        )
        return items

    async def requeue_failed(self, owner_id: str, item_id: str) -> SyncQueueItem:
        """Put a copy of a terminal item back on the queue with a fresh retry budget."""
        item = await self.repository.get_item(item_id)
        if item is None:
            raise SyncItemNotFoundError(f"Sync item {item_id} not found")
        await self._get_owned(owner_id, item.integration_id)
        if item.status != SyncStatus.FAILED:
            raise SyncItemStateError(f"Sync item {item_id} is {item.status.value}, not failed")

        return await self.enqueue(
            NewSyncItem(
                integration_id=item.integration_id,
                entity_type=item.entity_type,
                entity_id=item.entity_id,
                action=item.action,
                direction=item.direction,
                priority=item.priority,
                payload=item.payload,
                max_retries=item.max_retries,
            )
        )

    # Processing

    async def process_pending(self, integration_id: str, limit: int | None = None) -> dict:
        """Claim and process due items for one integration."""
        summary = {"claimed": 0, "succeeded": 0, "retried": 0, "failed": 0}

        integration = await self.integrations.get(integration_id)
        if integration is None or not integration.sync_enabled:
            return summary

        items = await self.dequeue_pending(integration_id, limit or settings.SYNC_BATCH_SIZE)
        summary["claimed"] = len(items)

        for item in items:
            outcome = await self.process_item(item, integration=integration)
            if outcome.status == SyncStatus.SUCCESS:
                summary["succeeded"] += 1
            elif outcome.status == SyncStatus.FAILED:
                summary["failed"] += 1
            else:
                summary["retried"] += 1

        return summary

    async def process_item(
        self, item: SyncQueueItem, *, integration: ATSIntegration | None = None
    ) -> SyncOutcome:
        """Run one claimed item and record the attempt."""
        integration = integration or await self.integrations.get(item.integration_id)
        if integration is None:
            raise IntegrationNotFoundError(f"Integration {item.integration_id} not found")

        adapter = self._adapter(integration)
        started = time.monotonic()

        try:
            if item.direction == SyncDirection.OUTBOUND:
                outcome, response = await self._process_outbound(item, adapter)
            else:
                outcome, response = await self._process_inbound(item, adapter)

        except Exception as e:
            error_type = e.error_type if isinstance(e, ATSAdapterError) else SyncErrorType.UNKNOWN
            return await self._record_failure(item, integration, e, error_type, started)

        await self.repository.insert_log(
            integration_id=item.integration_id,
            entity_type=item.entity_type,
            entity_id=item.entity_id,
            external_id=outcome.external_id,
            action=outcome.action,
            direction=item.direction,
            status=SyncStatus.SUCCESS,
            request_payload=item.payload or None,
            response_payload=response,
            duration_ms=_elapsed_ms(started),
        )
        await self.repository.mark_success(item.id)
        await self.integrations.mark_synced(item.integration_id)

        logger.info(
            "Sync item processed",
            item_id=item.id,
            integration_id=item.integration_id,
            entity_type=item.entity_type.value,
            direction=item.direction.value,
            action=outcome.action.value,
            records=outcome.records,
        )
        return outcome

    async def _process_outbound(
        self, item: SyncQueueItem, adapter: ATSAdapter
    ) -> tuple[SyncOutcome, dict[str, Any]]:
        if not item.entity_id:
            raise ATSAdapterError(
                "Outbound sync needs an internal entity id", error_type=SyncErrorType.VALIDATION
            )

        mapping = await self.repository.get_mapping(
            item.integration_id, item.entity_type, item.entity_id
        )

        if item.action == SyncAction.DELETE:
            if mapping is None:
                # Never reached the ATS; nothing to remove
                outcome = SyncOutcome(
                    item_id=item.id, status=SyncStatus.SUCCESS, action=SyncAction.DELETE
                )
                return outcome, {}
            await adapter.delete_record(item.entity_type, mapping.external_id)
            await self.repository.upsert_mapping(
                item.integration_id,
                item.entity_type,
                item.entity_id,
                mapping.external_id,
                {"deleted": True},
            )
            return (
                SyncOutcome(
                    item_id=item.id,
                    status=SyncStatus.SUCCESS,
                    action=SyncAction.DELETE,
                    external_id=mapping.external_id,
                    records=1,
                ),
                {},
            )

        record, action = await self._create_or_update(
            adapter, item.entity_type, mapping.external_id if mapping else None, item.payload
        )
        await self.repository.upsert_mapping(
            item.integration_id, item.entity_type, item.entity_id, record.external_id
        )
        return (
            SyncOutcome(
                item_id=item.id,
                status=SyncStatus.SUCCESS,
                action=action,
                external_id=record.external_id,
                records=1,
            ),
            record.raw,
        )

    async def _process_inbound(
        self, item: SyncQueueItem, adapter: ATSAdapter
    ) -> tuple[SyncOutcome, dict[str, Any]]:
        if item.entity_id:
            records = [await adapter.get_record(item.entity_type, item.entity_id)]
        else:
            records = await adapter.list_records(item.entity_type)

        created = 0
        for record in records:
            if await self._land_inbound_record(item.integration_id, record):
                created += 1

        all_new = created and created == len(records)
        return (
            SyncOutcome(
                item_id=item.id,
                status=SyncStatus.SUCCESS,
                action=SyncAction.CREATE if all_new else SyncAction.UPDATE,
                external_id=item.entity_id,
                records=len(records),
            ),
            {"records": len(records), "created": created, "updated": len(records) - created},
        )

    async def _land_inbound_record(self, integration_id: str, record: ATSRecord) -> bool:
        """Map a vendor record to an internal id and announce it. True if the id is new."""
        mapping = await self.repository.get_mapping_by_external(
            integration_id, record.entity_type, record.external_id
        )
        is_new = mapping is None
        internal_id = str(uuid.uuid4()) if is_new else mapping.internal_id

        async with self.repository.transaction() as tx:
            await self.repository.upsert_mapping(
                integration_id,
                record.entity_type,
                internal_id,
                record.external_id,
                connection=tx,
            )
            await self.outbox.publish(
                ats_entity_synced(record.entity_type.value),
                {
                    "integration_id": integration_id,
                    "entity_type": record.entity_type.value,
                    "internal_id": internal_id,
                    "external_id": record.external_id,
                    "is_new": is_new,
                    "record": record.data,
                    "occurred_at": datetime.now(UTC),
                },
                connection=tx,
            )
        return is_new

    async def _record_failure(
        self,
        item: SyncQueueItem,
        integration: ATSIntegration,
        error: Exception,
        error_type: SyncErrorType,
        started: float,
    ) -> SyncOutcome:
        message = str(error) or type(error).__name__

        await self.repository.insert_log(
            integration_id=item.integration_id,
            entity_type=item.entity_type,
            entity_id=item.entity_id,
            action=item.action,
            direction=item.direction,
            status=SyncStatus.FAILED,
            error_type=error_type,
            error_message=message,
            request_payload=item.payload or None,
            response_payload=error.response_data if isinstance(error, ATSAdapterError) else None,
            duration_ms=_elapsed_ms(started),
        )

        if item.retries_exhausted or error_type in NON_RETRYABLE_ERRORS:
            await self.repository.mark_failed(item.id, message)
            await self.integrations.record_sync_error(integration.id, message)
            await self.outbox.publish(
                ATS_SYNC_FAILED,
                {
                    "integration_id": integration.id,
                    "owner_id": integration.owner_id,
                    "item_id": item.id,
                    "entity_type": item.entity_type.value,
                    "entity_id": item.entity_id,
                    "direction": item.direction.value,
                    "error_type": error_type.value,
                    "error": message,
                    "occurred_at": datetime.now(UTC),
                },
            )
            logger.error(
                "Sync item failed permanently",
                item_id=item.id,
                integration_id=item.integration_id,
                retry_count=item.retry_count,
                max_retries=item.max_retries,
                error_type=error_type.value,
                error=message,
            )
            status = SyncStatus.FAILED
        else:
            scheduled_at = datetime.now(UTC) + timedelta(
                seconds=retry_delay_seconds(item.retry_count)
            )
            await self.repository.mark_retry(item.id, message, scheduled_at)
            logger.warning(
                "Sync item failed, will retry",
                item_id=item.id,
                integration_id=item.integration_id,
                retry_count=item.retry_count + 1,
                max_retries=item.max_retries,
                scheduled_at=scheduled_at.isoformat(),
                error_type=error_type.value,
                error=message,
            )
            status = SyncStatus.PENDING

        return SyncOutcome(
            item_id=item.id,
            status=status,
            action=item.action,
            error=message,
            error_type=error_type,
        )

    async def _create_or_update(
        self,
        adapter: ATSAdapter,
        entity_type: EntityType,
        external_id: str | None,
        payload: dict[str, Any],
    ) -> tuple[ATSRecord, SyncAction]:
        if external_id:
            return await adapter.update_record(entity_type, external_id, payload), SyncAction.UPDATE
        return await adapter.create_record(entity_type, payload), SyncAction.CREATE

    # Direct push

    async def push_candidate(
        self, owner_id: str, integration_id: str, candidate_id: str, candidate: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Send one candidate to the ATS right away, bypassing the queue.

        Returns {"success": True, "external_id": ...} or
        {"success": False, "error": ...}; either way one sync_log row is written.
        """
        integration = await self._get_owned(owner_id, integration_id)
        adapter = self._adapter(integration)
        mapping = await self.repository.get_mapping(
            integration.id, EntityType.CANDIDATE, candidate_id
        )
        action = SyncAction.UPDATE if mapping else SyncAction.CREATE
        started = time.monotonic()

        try:
            record, action = await self._create_or_update(
                adapter, EntityType.CANDIDATE, mapping.external_id if mapping else None, candidate
            )
        except ATSAdapterError as e:
            await self.repository.insert_log(
                integration_id=integration.id,
                entity_type=EntityType.CANDIDATE,
                entity_id=candidate_id,
                external_id=mapping.external_id if mapping else None,
                action=action,
                direction=SyncDirection.OUTBOUND,
                status=SyncStatus.FAILED,
                error_type=e.error_type,
                error_message=str(e),
                request_payload=candidate,
                response_payload=e.response_data or None,
                duration_ms=_elapsed_ms(started),
            )
            logger.warning(
                "Candidate push failed",
                integration_id=integration.id,
                candidate_id=candidate_id,
                error_type=e.error_type.value,
                error=str(e),
            )
            return {"success": False, "error": str(e)}

        await self.repository.upsert_mapping(
            integration.id, EntityType.CANDIDATE, candidate_id, record.external_id
        )
        await self.repository.insert_log(
            integration_id=integration.id,
            entity_type=EntityType.CANDIDATE,
            entity_id=candidate_id,
            external_id=record.external_id,
            action=action,
            direction=SyncDirection.OUTBOUND,
            status=SyncStatus.SUCCESS,
            request_payload=candidate,
            response_payload=record.raw,
            duration_ms=_elapsed_ms(started),
        )
        logger.info(
            "Candidate pushed",
            integration_id=integration.id,
            candidate_id=candidate_id,
            external_id=record.external_id,
            action=action.value,
        )
        return {"success": True, "external_id": record.external_id}

    # Reporting

    async def get_logs(
        self,
        owner_id: str,
        integration_id: str,
        limit: int = 50,
        offset: int = 0,
        status: SyncStatus | None = None,
    ) -> list[SyncLogEntry]:
        await self._get_owned(owner_id, integration_id)
        return await self.repository.list_logs(integration_id, limit, offset, status)

    async def get_stats(self, owner_id: str, integration_id: str) -> SyncStats:
        integration = await self._get_owned(owner_id, integration_id)
        counts = await self.repository.log_counts(integration_id)
        return SyncStats(
            **counts,
            pending_queue_depth=await self.repository.pending_depth(integration_id),
            last_synced_at=integration.last_synced_at,
        )


sync_service = SyncService()
