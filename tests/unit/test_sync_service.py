"""
Tests for the ATS sync queue: priorities, retries, entity map, sync log.
"""

from datetime import UTC, datetime, timedelta

import pytest

from app.models.domain.outbox_domain import ATS_SYNC_FAILED, ats_entity_synced
from app.models.domain.sync_domain import (
    EntityType,
    IntegrationSettings,
    NewSyncItem,
    SyncAction,
    SyncDirection,
    SyncErrorType,
    SyncStatus,
)
from app.services.ats.adapters.base import ATSAdapterError, ATSRecord
from app.services.ats.sync_service import (
    IntegrationNotFoundError,
    IntegrationValidationError,
    SyncItemStateError,
    SyncService,
    retry_delay_seconds,
)
from tests.fakes import make_integration


@pytest.fixture
def service(fake_integrations, fake_sync_repository, fake_outbox, fake_adapter):
    return SyncService(
        integrations=fake_integrations,
        repository=fake_sync_repository,
        outbox=fake_outbox,
        adapter_factory=lambda platform, api_key, on_behalf_of: fake_adapter,
    )


def _outbound(integration_id, entity_id="cand-1", action=SyncAction.CREATE, **overrides):
    return NewSyncItem(
        integration_id=integration_id,
        entity_type=EntityType.CANDIDATE,
        entity_id=entity_id,
        action=action,
        direction=SyncDirection.OUTBOUND,
        payload={"first_name": "Ada", "last_name": "Lovelace"},
        **overrides,
    )


def _transient():
    return ATSAdapterError("HTTP 503", status_code=503, error_type=SyncErrorType.TRANSIENT)


@pytest.mark.asyncio
async def test_trigger_sync_queues_enabled_categories_by_priority(service, fake_integrations):
    integration = fake_integrations.add(make_integration())

    items = await service.trigger_sync("user-123", integration.id)

    assert [(i.entity_type, i.priority) for i in items] == [
        (EntityType.ROLE, 1),
        (EntityType.CANDIDATE, 2),
    ]
    assert all(i.direction == SyncDirection.INBOUND for i in items)
    assert all(i.entity_id is None for i in items)


@pytest.mark.asyncio
async def test_trigger_sync_on_disabled_integration_queues_nothing(service, fake_integrations):
    integration = fake_integrations.add(make_integration(sync_enabled=False))

    assert await service.trigger_sync("user-123", integration.id) == []


@pytest.mark.asyncio
async def test_trigger_sync_for_other_owner_not_found(service, fake_integrations):
    integration = fake_integrations.add(make_integration(owner_id="another-company"))

    with pytest.raises(IntegrationNotFoundError):
        await service.trigger_sync("user-123", integration.id)


@pytest.mark.asyncio
async def test_dequeue_orders_by_priority_then_schedule(service, fake_integrations):
    integration = fake_integrations.add(make_integration())
    earlier = datetime.now(UTC) - timedelta(minutes=5)
    await service.enqueue(_outbound(integration.id, "cand-late"))
    await service.enqueue(_outbound(integration.id, "cand-early", scheduled_at=earlier))
    await service.enqueue(
        NewSyncItem(
            integration_id=integration.id,
            entity_type=EntityType.ROLE,
            action=SyncAction.UPDATE,
            direction=SyncDirection.INBOUND,
        )
    )

    claimed = await service.dequeue_pending(integration.id, 10)

    assert [i.entity_id for i in claimed] == [None, "cand-early", "cand-late"]
    assert all(i.status == SyncStatus.PROCESSING for i in claimed)


@pytest.mark.asyncio
async def test_item_abandoned_by_crashed_worker_is_reclaimed_after_lease(
    service, fake_integrations, fake_sync_repository
):
    integration = fake_integrations.add(make_integration())
    queued = await service.enqueue(_outbound(integration.id))
    [claimed] = await service.dequeue_pending(integration.id, 10)

    # Lease still held: nobody else may take it
    assert await service.dequeue_pending(integration.id, 10) == []

    fake_sync_repository._update(
        queued.id, lease_expires_at=datetime.now(UTC) - timedelta(seconds=1)
    )
    [reclaimed] = await service.dequeue_pending(integration.id, 10)

    assert reclaimed.id == claimed.id
    assert reclaimed.status == SyncStatus.PROCESSING
    assert reclaimed.lease_expires_at > datetime.now(UTC)


@pytest.mark.asyncio
async def test_retried_create_becomes_update(
    service, fake_integrations, fake_sync_repository, fake_adapter
):
    integration = fake_integrations.add(make_integration())
    first = await service.enqueue(_outbound(integration.id))
    [claimed] = await service.dequeue_pending(integration.id, 10)

    outcome = await service.process_item(claimed)
    assert outcome.action == SyncAction.CREATE
    external_id = outcome.external_id

    # Same internal entity queued again with action=create
    second = await service.enqueue(_outbound(integration.id))
    [claimed] = await service.dequeue_pending(integration.id, 10)
    outcome = await service.process_item(claimed)

    assert outcome.action == SyncAction.UPDATE
    assert outcome.external_id == external_id
    assert [call[0] for call in fake_adapter.calls] == ["create", "update"]
    mapping = await fake_sync_repository.get_mapping(
        integration.id, EntityType.CANDIDATE, "cand-1"
    )
    assert mapping.external_id == external_id
    assert fake_sync_repository.items[first.id].status == SyncStatus.SUCCESS
    assert fake_sync_repository.items[second.id].status == SyncStatus.SUCCESS


@pytest.mark.asyncio
async def test_failure_schedules_retry_with_backoff(
    service, fake_integrations, fake_sync_repository, fake_adapter
):
    integration = fake_integrations.add(make_integration())
    queued = await service.enqueue(_outbound(integration.id))
    fake_adapter.failures.append(_transient())
    [claimed] = await service.dequeue_pending(integration.id, 10)

    before = datetime.now(UTC)
    outcome = await service.process_item(claimed)

    assert outcome.status == SyncStatus.PENDING
    stored = fake_sync_repository.items[queued.id]
    assert stored.status == SyncStatus.PENDING
    assert stored.retry_count == 1
    assert stored.scheduled_at > before
    assert [log.status for log in fake_sync_repository.logs] == [SyncStatus.FAILED]
    assert fake_sync_repository.logs[0].error_type == SyncErrorType.TRANSIENT

    # Not due yet
    assert await service.dequeue_pending(integration.id, 10) == []


@pytest.mark.asyncio
async def test_exhausted_item_fails_and_is_never_dequeued(
    service, fake_integrations, fake_sync_repository, fake_adapter, fake_outbox
):
    integration = fake_integrations.add(make_integration())
    queued = await service.enqueue(_outbound(integration.id, max_retries=1))

    for _ in range(2):
        fake_adapter.failures.append(_transient())
        # Make the retry due immediately
        fake_sync_repository._update(queued.id, scheduled_at=datetime.now(UTC))
        [claimed] = await service.dequeue_pending(integration.id, 10)
        outcome = await service.process_item(claimed)

    assert outcome.status == SyncStatus.FAILED
    stored = fake_sync_repository.items[queued.id]
    assert stored.status == SyncStatus.FAILED
    assert stored.retry_count == stored.max_retries == 1
    assert len(fake_sync_repository.logs) == 2
    assert fake_outbox.types() == [ATS_SYNC_FAILED]
    assert fake_integrations.sync_errors == [(integration.id, "HTTP 503")]

    fake_sync_repository._update(queued.id, scheduled_at=datetime.now(UTC) - timedelta(days=1))
    assert await service.dequeue_pending(integration.id, 10) == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error_type", [SyncErrorType.VALIDATION, SyncErrorType.AUTH, SyncErrorType.NOT_FOUND]
)
async def test_non_retryable_error_fails_on_first_attempt(
    service, fake_integrations, fake_sync_repository, fake_adapter, fake_outbox, error_type
):
    integration = fake_integrations.add(make_integration())
    queued = await service.enqueue(_outbound(integration.id))
    fake_adapter.failures.append(
        ATSAdapterError("template_job_id is required", status_code=None, error_type=error_type)
    )
    [claimed] = await service.dequeue_pending(integration.id, 10)

    outcome = await service.process_item(claimed)

    assert outcome.status == SyncStatus.FAILED
    assert outcome.error_type == error_type
    stored = fake_sync_repository.items[queued.id]
    assert stored.status == SyncStatus.FAILED
    assert fake_outbox.types() == [ATS_SYNC_FAILED]
    assert len(fake_sync_repository.logs) == 1

    fake_sync_repository._update(queued.id, scheduled_at=datetime.now(UTC) - timedelta(days=1))
    assert await service.dequeue_pending(integration.id, 10) == []


@pytest.mark.asyncio
async def test_requeue_failed_item(service, fake_integrations, fake_sync_repository):
    integration = fake_integrations.add(make_integration())
    queued = await service.enqueue(_outbound(integration.id))
    await fake_sync_repository.mark_failed(queued.id, "boom")

    requeued = await service.requeue_failed("user-123", queued.id)

    assert requeued.id != queued.id
    assert requeued.status == SyncStatus.PENDING
    assert requeued.retry_count == 0
    assert requeued.entity_id == queued.entity_id

    with pytest.raises(SyncItemStateError):
        await service.requeue_failed("user-123", requeued.id)


@pytest.mark.asyncio
async def test_inbound_records_land_with_internal_ids(
    service, fake_integrations, fake_sync_repository, fake_adapter, fake_outbox
):
    integration = fake_integrations.add(make_integration())
    fake_adapter.records = [
        ATSRecord(entity_type=EntityType.ROLE, external_id="j-1", data={"title": "Engineer"}),
        ATSRecord(entity_type=EntityType.ROLE, external_id="j-2", data={"title": "Designer"}),
    ]
    await service.trigger_sync("user-123", integration.id)

    summary = await service.process_pending(integration.id)

    assert summary == {"claimed": 2, "succeeded": 2, "retried": 0, "failed": 0}
    role_mapping = await fake_sync_repository.get_mapping_by_external(
        integration.id, EntityType.ROLE, "j-1"
    )
    assert role_mapping is not None
    assert fake_outbox.types().count(ats_entity_synced("role")) == 2

    # Second pass maps onto the same internal ids
    await service.trigger_sync("user-123", integration.id)
    await service.process_pending(integration.id)
    again = await fake_sync_repository.get_mapping_by_external(
        integration.id, EntityType.ROLE, "j-1"
    )
    assert again.internal_id == role_mapping.internal_id
    _, payload, _ = fake_outbox.events[-2]
    assert payload["is_new"] is False


@pytest.mark.asyncio
async def test_outbound_delete_without_mapping_skips_ats(
    service, fake_integrations, fake_adapter
):
    integration = fake_integrations.add(make_integration())
    await service.enqueue(_outbound(integration.id, action=SyncAction.DELETE))
    [claimed] = await service.dequeue_pending(integration.id, 10)

    outcome = await service.process_item(claimed)

    assert outcome.status == SyncStatus.SUCCESS
    assert fake_adapter.calls == []


@pytest.mark.asyncio
async def test_create_integration_probes_credentials(
    service, fake_integrations, fake_adapter
):
    integration = await service.create_integration(
        "user-123",
        "greenhouse",
        "gh-key",
        on_behalf_of="4080",
        integration_settings=IntegrationSettings(sync_applications=True),
    )

    assert fake_adapter.calls == [("validate",)]
    assert integration.sync_applications is True
    assert "api_key" not in integration.to_public_dict()


@pytest.mark.asyncio
async def test_create_integration_with_bad_key_persists_nothing(
    service, fake_integrations, fake_adapter
):
    fake_adapter.failures.append(
        ATSAdapterError("HTTP 401", status_code=401, error_type=SyncErrorType.AUTH)
    )

    with pytest.raises(IntegrationValidationError):
        await service.create_integration("user-123", "greenhouse", "bad-key")

    assert fake_integrations.rows == {}


@pytest.mark.asyncio
async def test_stats_count_logs_and_queue(service, fake_integrations, fake_adapter):
    integration = fake_integrations.add(make_integration())
    await service.push_candidate("user-123", integration.id, "cand-1", {"first_name": "Ada"})
    fake_adapter.failures.append(_transient())
    await service.push_candidate("user-123", integration.id, "cand-2", {"first_name": "Grace"})
    await service.enqueue(_outbound(integration.id, "cand-3"))

    stats = await service.get_stats("user-123", integration.id)

    assert stats.total_syncs == 2
    assert stats.successful_syncs == 1
    assert stats.failed_syncs == 1
    assert stats.pending_queue_depth == 1

    failed_logs = await service.get_logs("user-123", integration.id, status=SyncStatus.FAILED)
    assert [log.entity_id for log in failed_logs] == ["cand-2"]


def test_retry_delay_doubles_within_jitter(monkeypatch):
    monkeypatch.setattr("app.services.ats.sync_service.settings.SYNC_RETRY_BASE_SECONDS", 30.0)
    monkeypatch.setattr("app.services.ats.sync_service.settings.SYNC_RETRY_MAX_SECONDS", 3600.0)

    assert 30.0 <= retry_delay_seconds(0) <= 33.0
    assert 120.0 <= retry_delay_seconds(2) <= 132.0
    assert 3600.0 <= retry_delay_seconds(20) <= 3960.0
