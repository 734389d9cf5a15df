"""
Connection persistence.

Tokens are encrypted on the way in and decrypted on the way out, so nothing
above this layer ever sees ciphertext and nothing below it sees plaintext.
Rows are never deleted; every lifecycle change is a status transition
guarded by the current status.
"""

from datetime import datetime
from typing import Any

import psycopg

from app.db.helpers import execute_query, fetch_all, fetch_one, to_jsonb, with_db_retry
from app.models.domain.connection_domain import (
    Connection,
    ConnectionStatus,
    ProviderAccount,
    TokenGrant,
)
from app.repositories.base import BaseRepository
from app.services.infrastructure.encryption_service import (
    decrypt_oauth_tokens,
    encrypt_oauth_tokens,
)
from app.services.oauth.provider_registry import Provider

_COLUMNS = """
    id::text AS id, user_id, provider, status, access_token, refresh_token,
    token_expires_at, scopes, provider_account_id, provider_account_name,
    metadata, last_sync_at, last_error, last_error_at, created_at, updated_at
"""


def _to_connection(row: dict[str, Any]) -> Connection:
    access_token, refresh_token = decrypt_oauth_tokens(row["access_token"], row["refresh_token"])
    return Connection(
        **{
            **row,
            "access_token": access_token,
            "refresh_token": refresh_token,
            "scopes": row.get("scopes") or [],
            "metadata": row.get("metadata") or {},
        }
    )


class ConnectionRepository(BaseRepository):
    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get(
        self, connection_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> Connection | None:
        row = await fetch_one(
            f"SELECT {_COLUMNS} FROM connections WHERE id = %s",
            (connection_id,),
            connection=connection,
        )
        return _to_connection(row) if row else None

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_for_user(self, user_id: str, connection_id: str) -> Connection | None:
        """Fetch a connection only if it belongs to the user."""
        row = await fetch_one(
            f"SELECT {_COLUMNS} FROM connections WHERE id = %s AND user_id = %s",
            (connection_id, user_id),
        )
        return _to_connection(row) if row else None

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_for_user(self, user_id: str) -> list[Connection]:
        rows = await fetch_all(
            f"""
            SELECT {_COLUMNS} FROM connections
            WHERE user_id = %s
            ORDER BY created_at DESC
            """,
            (user_id,),
        )
        return [_to_connection(row) for row in rows]

    async def create(
        self,
        user_id: str,
        provider: Provider,
        grant: TokenGrant,
        account: ProviderAccount,
        *,
        connection: psycopg.AsyncConnection,
    ) -> tuple[Connection, list[str]]:
        """
        Revoke any active grant for (user, provider), then insert the new one.

        Must run inside the caller's transaction. Returns the new connection
        and the ids of the rows it superseded.
        """
        revoked = await fetch_all(
            """
            UPDATE connections
            SET status = 'revoked', access_token = NULL, refresh_token = NULL,
                updated_at = NOW()
            WHERE user_id = %s AND provider = %s AND status = 'active'
            RETURNING id::text AS id
            """,
            (user_id, provider.value),
            connection=connection,
        )

        encrypted_access, encrypted_refresh = encrypt_oauth_tokens(
            grant.access_token, grant.refresh_token
        )
        metadata = {"email": account.email} if account.email else {}

        row = await fetch_one(
            f"""
            INSERT INTO connections (
                user_id, provider, status, access_token, refresh_token,
                token_expires_at, scopes, provider_account_id,
                provider_account_name, metadata
            ) VALUES (%s, %s, 'active', %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_COLUMNS}
            """,
            (
                user_id,
                provider.value,
                encrypted_access,
                encrypted_refresh,
                grant.expires_at,
                grant.scopes,
                account.account_id,
                account.account_name,
                to_jsonb(metadata),
            ),
            connection=connection,
        )
        return _to_connection(row), [r["id"] for r in revoked]

    async def update_tokens(
        self,
        connection_id: str,
        grant: TokenGrant,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> Connection | None:
        """Store a refreshed grant. No-op (None) unless the row is still active."""
        encrypted_access, encrypted_refresh = encrypt_oauth_tokens(
            grant.access_token, grant.refresh_token
        )
        row = await fetch_one(
            f"""
            UPDATE connections
            SET access_token = %s,
                refresh_token = COALESCE(%s, refresh_token),
                token_expires_at = %s,
                last_error = NULL,
                last_error_at = NULL,
                updated_at = NOW()
            WHERE id = %s AND status = 'active'
            RETURNING {_COLUMNS}
            """,
            (encrypted_access, encrypted_refresh, grant.expires_at, connection_id),
            connection=connection,
        )
        return _to_connection(row) if row else None

    async def mark_expired(
        self,
        connection_id: str,
        error: str,
        *,
        connection: psycopg.AsyncConnection | None = None,
    ) -> bool:
        """active -> expired. Tokens are kept for audit; they are no longer usable."""
        affected = await execute_query(
            """
            UPDATE connections
            SET status = 'expired', last_error = %s, last_error_at = NOW(), updated_at = NOW()
            WHERE id = %s AND status = 'active'
            """,
            (error[:2000], connection_id),
            connection=connection,
        )
        return affected > 0

    async def mark_revoked(
        self, connection_id: str, *, connection: psycopg.AsyncConnection | None = None
    ) -> bool:
        """Any non-revoked state -> revoked, with both tokens nulled."""
        affected = await execute_query(
            """
            UPDATE connections
            SET status = 'revoked', access_token = NULL, refresh_token = NULL,
                updated_at = NOW()
            WHERE id = %s AND status <> 'revoked'
            """,
            (connection_id,),
            connection=connection,
        )
        return affected > 0

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def record_sync(self, connection_id: str) -> bool:
        affected = await execute_query(
            """
            UPDATE connections
            SET last_sync_at = NOW(), last_error = NULL, last_error_at = NULL, updated_at = NOW()
            WHERE id = %s
            """,
            (connection_id,),
        )
        return affected > 0

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def record_error(self, connection_id: str, error: str) -> bool:
        affected = await execute_query(
            """
            UPDATE connections
            SET last_error = %s, last_error_at = NOW(), updated_at = NOW()
            WHERE id = %s
            """,
            (error[:2000], connection_id),
        )
        return affected > 0

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_expiring(self, before: datetime, limit: int = 100) -> list[str]:
        """Ids of active, refreshable connections whose token expires before `before`."""
        rows = await fetch_all(
            """
            SELECT id::text AS id FROM connections
            WHERE status = 'active'
              AND refresh_token IS NOT NULL
              AND token_expires_at IS NOT NULL
              AND token_expires_at < %s
            ORDER BY token_expires_at
            LIMIT %s
            """,
            (before, limit),
        )
        return [row["id"] for row in rows]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def count_by_status(self) -> dict[str, int]:
        rows = await fetch_all("SELECT status, COUNT(*) AS count FROM connections GROUP BY status")
        counts = {status.value: 0 for status in ConnectionStatus}
        counts.update({row["status"]: row["count"] for row in rows})
        return counts


connection_repository = ConnectionRepository()
