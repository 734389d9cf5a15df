"""
Repository tests with the DB helpers patched out: what SQL runs, on which
connection, with which parameters.
"""

from datetime import UTC, datetime, timedelta

import pytest

from app.models.domain.sync_domain import EntityType, NewSyncItem, SyncAction, SyncDirection
from app.repositories.outbox_repository import OutboxRepository
from app.repositories.sync_repository import SyncRepository
from app.services.outbox_service import OutboxService


class RecordingQuery:
    def __init__(self, result):
        self.result = result
        self.calls = []

    async def __call__(self, query, params=(), *, connection=None):
        self.calls.append({"query": query, "params": params, "connection": connection})
        return self.result


def _outbox_row(sequence, seconds):
    return {
        "id": f"evt-{sequence}",
        "sequence": sequence,
        "event_type": "token_refreshed",
        "payload": {},
        "status": "processing",
        "attempts": 0,
        "last_error": None,
        "created_at": datetime(2026, 1, 1, tzinfo=UTC) + timedelta(seconds=seconds),
        "next_attempt_at": None,
        "claimed_by": "w1",
        "lease_expires_at": None,
        "delivered_at": None,
    }


@pytest.mark.asyncio
async def test_publish_writes_on_callers_transaction(monkeypatch):
    fetch_one = RecordingQuery(_outbox_row(1, 0))
    monkeypatch.setattr("app.repositories.outbox_repository.fetch_one", fetch_one)
    service = OutboxService(repository=OutboxRepository())
    tx = object()

    event = await service.publish("token_refreshed", {"connection_id": "c1"}, connection=tx)

    assert event.id == "evt-1"
    [call] = fetch_one.calls
    assert call["connection"] is tx
    assert "INSERT INTO outbox_events" in call["query"]
    assert call["params"][0] == "token_refreshed"
    assert call["params"][1].obj == {"connection_id": "c1"}


@pytest.mark.asyncio
async def test_claim_batch_uses_skip_locked_and_returns_creation_order(monkeypatch):
    fetch_all = RecordingQuery([_outbox_row(2, 5), _outbox_row(1, 1)])
    monkeypatch.setattr("app.repositories.outbox_repository.fetch_all", fetch_all)

    events = await OutboxRepository().claim_batch("w1", limit=10, lease_seconds=60)

    assert [e.id for e in events] == ["evt-1", "evt-2"]
    query = fetch_all.calls[0]["query"]
    assert "FOR UPDATE SKIP LOCKED" in query
    assert "ORDER BY created_at, sequence" in query
    assert fetch_all.calls[0]["params"] == (10, "w1", 60)


@pytest.mark.asyncio
async def test_release_with_no_ids_skips_the_database(monkeypatch):
    execute_query = RecordingQuery(0)
    monkeypatch.setattr("app.repositories.outbox_repository.execute_query", execute_query)

    assert await OutboxRepository().release([], "w1") == 0
    assert execute_query.calls == []


@pytest.mark.asyncio
async def test_enqueue_applies_category_priority_and_default_retries(monkeypatch):
    now = datetime.now(UTC)
    fetch_one = RecordingQuery(
        {
            "id": "item-1",
            "integration_id": "int-1",
            "entity_type": "application",
            "entity_id": None,
            "action": "update",
            "direction": "inbound",
            "priority": 3,
            "payload": {},
            "status": "pending",
            "retry_count": 0,
            "max_retries": 3,
            "last_error": None,
            "scheduled_at": now,
            "processed_at": None,
            "lease_expires_at": None,
            "created_at": now,
        }
    )
    monkeypatch.setattr("app.repositories.sync_repository.fetch_one", fetch_one)
    monkeypatch.setattr("app.repositories.sync_repository.settings.SYNC_DEFAULT_MAX_RETRIES", 3)

    item = await SyncRepository().enqueue(
        NewSyncItem(
            integration_id="int-1",
            entity_type=EntityType.APPLICATION,
            action=SyncAction.UPDATE,
            direction=SyncDirection.INBOUND,
        )
    )

    assert item.priority == 3
    params = fetch_one.calls[0]["params"]
    assert params[5] == 3  # priority
    assert params[7] == 3  # max_retries


@pytest.mark.asyncio
async def test_mark_retry_is_guarded_by_retry_budget(monkeypatch):
    execute_query = RecordingQuery(0)
    monkeypatch.setattr("app.repositories.sync_repository.execute_query", execute_query)

    changed = await SyncRepository().mark_retry("item-1", "HTTP 503", datetime.now(UTC))

    assert changed is False
    assert "retry_count < max_retries" in execute_query.calls[0]["query"]


@pytest.mark.asyncio
async def test_outbox_claim_takes_back_rows_with_lapsed_lease(monkeypatch):
    fetch_all = RecordingQuery([])
    monkeypatch.setattr("app.repositories.outbox_repository.fetch_all", fetch_all)

    await OutboxRepository().claim_batch("w1", limit=10, lease_seconds=60)

    query = " ".join(fetch_all.calls[0]["query"].split())
    assert "status = 'processing' AND lease_expires_at < NOW()" in query


@pytest.mark.asyncio
async def test_sync_claim_takes_back_items_with_lapsed_lease(monkeypatch):
    fetch_all = RecordingQuery([])
    monkeypatch.setattr("app.repositories.sync_repository.fetch_all", fetch_all)

    await SyncRepository().claim_pending("int-1", limit=5, lease_seconds=300)

    query = " ".join(fetch_all.calls[0]["query"].split())
    assert "status = 'processing' AND lease_expires_at < NOW()" in query
    assert "ORDER BY priority, scheduled_at" in query
    assert fetch_all.calls[0]["params"] == ("int-1", 5, 300)
