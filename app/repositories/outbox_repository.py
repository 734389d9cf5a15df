"""
Outbox persistence.

Rows are claimed with FOR UPDATE SKIP LOCKED plus a lease, so any number of
worker processes can poll the same table: a row is owned by one worker at a
time, and a crashed worker's rows come back once the lease runs out.
"""

from datetime import datetime
from typing import Any

import psycopg

from app.db.helpers import execute_query, fetch_all, fetch_one, fetch_val, to_jsonb, with_db_retry
from app.models.domain.outbox_domain import OutboxEvent
from app.repositories.base import BaseRepository

_COLUMNS = """
    id::text AS id, sequence, event_type, payload, status, attempts, last_error,
    created_at, next_attempt_at, claimed_by, lease_expires_at, delivered_at
"""

# Same list, qualified for the UPDATE ... FROM claim statement
_CLAIM_COLUMNS = """
    o.id::text AS id, o.sequence, o.event_type, o.payload, o.status, o.attempts, o.last_error,
    o.created_at, o.next_attempt_at, o.claimed_by, o.lease_expires_at, o.delivered_at
"""


def _to_event(row: dict[str, Any]) -> OutboxEvent:
    return OutboxEvent(**row)


class OutboxRepository(BaseRepository):
    async def insert(
        self,
        event_type: str,
        payload: dict[str, Any],
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> OutboxEvent:
        """Insert a pending event, inside the caller's transaction when one is given."""
        row = await fetch_one(
            f"""
            INSERT INTO outbox_events (event_type, payload)
            VALUES (%s, %s)
            RETURNING {_COLUMNS}
            """,
            (event_type, to_jsonb(payload)),
            connection=connection,
        )
        return _to_event(row)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def claim_batch(self, worker_id: str, limit: int, lease_seconds: int) -> list[OutboxEvent]:
        """
        Claim up to `limit` deliverable rows in creation order.

        Deliverable means pending and due, or processing with a lapsed lease.
        """
        rows = await fetch_all(
            f"""
            WITH candidates AS (
                SELECT id
                FROM outbox_events
                WHERE (status = 'pending' AND next_attempt_at <= NOW())
                   OR (status = 'processing' AND lease_expires_at < NOW())
                ORDER BY created_at, sequence
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            UPDATE outbox_events o
            SET status = 'processing',
                claimed_by = %s,
                lease_expires_at = NOW() + %s * INTERVAL '1 second'
            FROM candidates c
            WHERE o.id = c.id
            RETURNING {_CLAIM_COLUMNS}
            """,
            (limit, worker_id, lease_seconds),
        )
        return sorted((_to_event(row) for row in rows), key=lambda e: e.ordering_key)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_delivered(self, event_id: str, worker_id: str) -> bool:
        """Mark delivered only if this worker still holds the claim."""
        affected = await execute_query(
            """
            UPDATE outbox_events
            SET status = 'delivered', delivered_at = NOW(), attempts = attempts + 1,
                claimed_by = NULL, lease_expires_at = NULL, last_error = NULL
            WHERE id = %s AND claimed_by = %s AND status = 'processing'
            """,
            (event_id, worker_id),
        )
        return affected > 0

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_failed(
        self, event_id: str, worker_id: str, error: str, next_attempt_at: datetime
    ) -> bool:
        """Return a claimed row to pending with one more attempt recorded."""
        affected = await execute_query(
            """
            UPDATE outbox_events
            SET status = 'pending', attempts = attempts + 1, last_error = %s,
                next_attempt_at = %s, claimed_by = NULL, lease_expires_at = NULL
            WHERE id = %s AND claimed_by = %s AND status = 'processing'
            """,
            (error[:2000], next_attempt_at, event_id, worker_id),
        )
        return affected > 0

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def release(self, event_ids: list[str], worker_id: str) -> int:
        """Give back claimed rows untouched (no attempt is counted)."""
        if not event_ids:
            return 0
        return await execute_query(
            """
            UPDATE outbox_events
            SET status = 'pending', claimed_by = NULL, lease_expires_at = NULL
            WHERE id = ANY(%s::uuid[]) AND claimed_by = %s AND status = 'processing'
            """,
            (event_ids, worker_id),
        )

    async def count_undelivered(self) -> int:
        return await fetch_val("SELECT COUNT(*) FROM outbox_events WHERE status <> 'delivered'") or 0

    async def delete_delivered_before(self, cutoff: datetime) -> int:
        return await execute_query(
            "DELETE FROM outbox_events WHERE status = 'delivered' AND delivered_at < %s",
            (cutoff,),
        )


outbox_repository = OutboxRepository()
