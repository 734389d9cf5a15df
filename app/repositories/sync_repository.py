"""
Sync queue, entity map and sync log persistence.

Queue rows are claimed like outbox rows (SKIP LOCKED plus a lease) so several
sync workers can share one integration. The sync log is insert-only.
"""

from datetime import datetime
from typing import Any

import psycopg

from app.config import settings
from app.db.helpers import execute_query, fetch_all, fetch_one, fetch_val, to_jsonb, with_db_retry
from app.models.domain.sync_domain import (
    EntityMapping,
    EntityType,
    NewSyncItem,
    SyncAction,
    SyncDirection,
    SyncErrorType,
    SyncLogEntry,
    SyncQueueItem,
    SyncStatus,
)
from app.repositories.base import BaseRepository

_ITEM_COLUMNS = """
    id::text AS id, integration_id::text AS integration_id, entity_type, entity_id,
    action, direction, priority, payload, status, retry_count, max_retries,
    last_error, scheduled_at, processed_at, lease_expires_at, created_at
"""

_CLAIM_COLUMNS = """
    q.id::text AS id, q.integration_id::text AS integration_id, q.entity_type, q.entity_id,
    q.action, q.direction, q.priority, q.payload, q.status, q.retry_count, q.max_retries,
    q.last_error, q.scheduled_at, q.processed_at, q.lease_expires_at, q.created_at
"""

_MAPPING_COLUMNS = """
    id::text AS id, integration_id::text AS integration_id, entity_type, internal_id,
    external_id, metadata, last_synced_at, created_at, updated_at
"""

_LOG_COLUMNS = """
    id::text AS id, integration_id::text AS integration_id, entity_type, entity_id,
    external_id, action, direction, status, error_type, error_message,
    request_payload, response_payload, duration_ms, created_at
"""


class SyncRepository(BaseRepository):
    # Queue

    async def enqueue(
        self, item: NewSyncItem, *, connection: psycopg.AsyncConnection | None = None
    ) -> SyncQueueItem:
        row = await fetch_one(
            f"""
            INSERT INTO sync_queue_items (
                integration_id, entity_type, entity_id, action, direction,
                priority, payload, max_retries, scheduled_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, NOW()))
            RETURNING {_ITEM_COLUMNS}
            """,
            (
                item.integration_id,
                item.entity_type.value,
                item.entity_id,
                item.action.value,
                item.direction.value,
                item.effective_priority,
                to_jsonb(item.payload),
                item.max_retries if item.max_retries is not None else settings.SYNC_DEFAULT_MAX_RETRIES,
                item.scheduled_at,
            ),
            connection=connection,
        )
        return SyncQueueItem(**row)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_item(self, item_id: str) -> SyncQueueItem | None:
        row = await fetch_one(
            f"SELECT {_ITEM_COLUMNS} FROM sync_queue_items WHERE id = %s", (item_id,)
        )
        return SyncQueueItem(**row) if row else None

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def claim_pending(
        self, integration_id: str, limit: int, lease_seconds: int
    ) -> list[SyncQueueItem]:
        """
        Claim up to `limit` due items, lowest priority number first, then oldest.

        Due means pending with scheduled_at reached, or processing with a
        lapsed lease. Terminal rows are never returned.
        """
        rows = await fetch_all(
            f"""
            WITH candidates AS (
                SELECT id
                FROM sync_queue_items
                WHERE integration_id = %s
                  AND ((status = 'pending' AND scheduled_at <= NOW())
                       OR (status = 'processing' AND lease_expires_at < NOW()))
                ORDER BY priority, scheduled_at
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            UPDATE sync_queue_items q
            SET status = 'processing',
                lease_expires_at = NOW() + %s * INTERVAL '1 second'
            FROM candidates c
            WHERE q.id = c.id
            RETURNING {_CLAIM_COLUMNS}
            """,
            (integration_id, limit, lease_seconds),
        )
        items = [SyncQueueItem(**row) for row in rows]
        return sorted(items, key=lambda i: (i.priority, i.scheduled_at))

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_success(self, item_id: str) -> bool:
        affected = await execute_query(
            """
            UPDATE sync_queue_items
            SET status = 'success', processed_at = NOW(), lease_expires_at = NULL,
                last_error = NULL
            WHERE id = %s AND status = 'processing'
            """,
            (item_id,),
        )
        return affected > 0

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_retry(self, item_id: str, error: str, scheduled_at: datetime) -> bool:
        """Count one failed attempt and put the item back for a later try."""
        affected = await execute_query(
            """
            UPDATE sync_queue_items
            SET status = 'pending', retry_count = retry_count + 1, last_error = %s,
                scheduled_at = %s, lease_expires_at = NULL
            WHERE id = %s AND status = 'processing' AND retry_count < max_retries
            """,
            (error[:2000], scheduled_at, item_id),
        )
        return affected > 0

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_failed(self, item_id: str, error: str) -> bool:
        """Terminal failure; the stored retry count stays capped at max_retries."""
        affected = await execute_query(
            """
            UPDATE sync_queue_items
            SET status = 'failed', retry_count = max_retries, last_error = %s,
                processed_at = NOW(), lease_expires_at = NULL
            WHERE id = %s AND status = 'processing'
            """,
            (error[:2000], item_id),
        )
        return affected > 0

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def pending_depth(self, integration_id: str) -> int:
        return (
            await fetch_val(
                """
                SELECT COUNT(*) FROM sync_queue_items
                WHERE integration_id = %s AND status IN ('pending', 'processing')
                """,
                (integration_id,),
            )
            or 0
        )

    async def delete_finished_before(self, cutoff: datetime) -> int:
        return await execute_query(
            """
            DELETE FROM sync_queue_items
            WHERE status IN ('success', 'failed') AND processed_at < %s
            """,
            (cutoff,),
        )

    # Entity map

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_mapping(
        self, integration_id: str, entity_type: EntityType, internal_id: str
    ) -> EntityMapping | None:
        row = await fetch_one(
            f"""
            SELECT {_MAPPING_COLUMNS} FROM entity_map
            WHERE integration_id = %s AND entity_type = %s AND internal_id = %s
            """,
            (integration_id, entity_type.value, internal_id),
        )
        return EntityMapping(**row) if row else None

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_mapping_by_external(
        self, integration_id: str, entity_type: EntityType, external_id: str
    ) -> EntityMapping | None:
        row = await fetch_one(
            f"""
            SELECT {_MAPPING_COLUMNS} FROM entity_map
            WHERE integration_id = %s AND entity_type = %s AND external_id = %s
            """,
            (integration_id, entity_type.value, external_id),
        )
        return EntityMapping(**row) if row else None

    async def upsert_mapping(
        self,
        integration_id: str,
        entity_type: EntityType,
        internal_id: str,
        external_id: str,
        metadata: dict[str, Any] | None = None,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> EntityMapping:
        row = await fetch_one(
            f"""
            INSERT INTO entity_map (integration_id, entity_type, internal_id, external_id, metadata)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (integration_id, entity_type, internal_id) DO UPDATE SET
                external_id = EXCLUDED.external_id,
                metadata = entity_map.metadata || EXCLUDED.metadata,
                last_synced_at = NOW(),
                updated_at = NOW()
            RETURNING {_MAPPING_COLUMNS}
            """,
            (integration_id, entity_type.value, internal_id, external_id, to_jsonb(metadata or {})),
            connection=connection,
        )
        return EntityMapping(**row)

    # Sync log

    async def insert_log(
        self,
        *,
        integration_id: str,
        entity_type: EntityType,
        action: SyncAction,
        direction: SyncDirection,
        status: SyncStatus,
        entity_id: str | None = None,
        external_id: str | None = None,
        error_type: SyncErrorType | None = None,
        error_message: str | None = None,
        request_payload: dict[str, Any] | None = None,
        response_payload: dict[str, Any] | None = None,
        duration_ms: int | None = None,
    ) -> SyncLogEntry:
        row = await fetch_one(
            f"""
            INSERT INTO sync_log (
                integration_id, entity_type, entity_id, external_id, action,
                direction, status, error_type, error_message, request_payload,
                response_payload, duration_ms
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_LOG_COLUMNS}
            """,
            (
                integration_id,
                entity_type.value,
                entity_id,
                external_id,
                action.value,
                direction.value,
                status.value,
                error_type.value if error_type else None,
                error_message[:2000] if error_message else None,
                to_jsonb(request_payload) if request_payload is not None else None,
                to_jsonb(response_payload) if response_payload is not None else None,
                duration_ms,
            ),
        )
        return SyncLogEntry(**row)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_logs(
        self,
        integration_id: str,
        limit: int = 50,
        offset: int = 0,
        status: SyncStatus | None = None,
    ) -> list[SyncLogEntry]:
        if status is None:
            rows = await fetch_all(
                f"""
                SELECT {_LOG_COLUMNS} FROM sync_log
                WHERE integration_id = %s
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                (integration_id, limit, offset),
            )
        else:
            rows = await fetch_all(
                f"""
                SELECT {_LOG_COLUMNS} FROM sync_log
                WHERE integration_id = %s AND status = %s
                ORDER BY created_at DESC
                LIMIT %s OFFSET %s
                """,
                (integration_id, status.value, limit, offset),
            )
        return [SyncLogEntry(**row) for row in rows]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def log_counts(self, integration_id: str) -> dict[str, int]:
        row = await fetch_one(
            """
            SELECT COUNT(*) AS total_syncs,
                   COUNT(*) FILTER (WHERE status = 'success') AS successful_syncs,
                   COUNT(*) FILTER (WHERE status = 'failed') AS failed_syncs
            FROM sync_log
            WHERE integration_id = %s
            """,
            (integration_id,),
        )
        return dict(row) if row else {"total_syncs": 0, "successful_syncs": 0, "failed_syncs": 0}


sync_repository = SyncRepository()
