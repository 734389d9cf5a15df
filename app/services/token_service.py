"""
Token Service for OAuth token lifecycle management.
Hands callers a live access token, refreshing it when it is about to expire
and demoting the connection to `expired` when the grant is gone for good.

Refreshes are single-flight per connection: an asyncio.Lock serializes
callers inside this process and, when Redis is up, a Redis lock serializes
replicas. Some providers rotate the refresh token on every use, so a second
concurrent refresh could invalidate the first.
"""

import asyncio
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from redis.exceptions import RedisError

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.connection_domain import Connection
from app.models.domain.outbox_domain import TOKEN_EXPIRED, TOKEN_REFRESHED
from app.repositories.connection_repository import ConnectionRepository, connection_repository
from app.services.infrastructure.redis_client import FastRedisClient, fast_redis
from app.services.oauth.oauth_client import (
    ProviderOAuthClient,
    ProviderOAuthError,
    oauth_client_for,
)
from app.services.oauth.provider_registry import Provider
from app.services.outbox_service import OutboxService, outbox_service

logger = get_logger(__name__)

REFRESH_LOCK_PREFIX = "token_refresh_lock"


class TokenServiceError(Exception):
    """Base exception for token service operations."""

    error_code = "token_error"

    def __init__(self, message: str, connection_id: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.connection_id = connection_id
        self.recoverable = recoverable


class ConnectionNotFoundError(TokenServiceError):
    error_code = "connection_not_found"

    def __init__(self, connection_id: str):
        super().__init__(f"Connection {connection_id} not found", connection_id, recoverable=False)


class ReconnectRequiredError(TokenServiceError):
    """The user must go through the OAuth flow again."""

    error_code = "reconnect_required"

    def __init__(self, message: str, connection_id: str | None = None):
        super().__init__(message, connection_id, recoverable=False)


class ConnectionNotActiveError(ReconnectRequiredError):
    pass


class TokenExpiredError(ReconnectRequiredError):
    pass


class TokenRefreshError(TokenServiceError):
    """Refresh failed for a reason that may clear up (5xx, timeout, lock contention)."""

    error_code = "token_refresh_failed"


class TokenService:
    def __init__(
        self,
        repository: ConnectionRepository = connection_repository,
        outbox: OutboxService = outbox_service,
        oauth_client_factory: Callable[[Provider], ProviderOAuthClient] = oauth_client_for,
        lock_store: FastRedisClient = fast_redis,
        refresh_window_minutes: int | None = None,
    ):
        self.repository = repository
        self.outbox = outbox
        self.oauth_client_factory = oauth_client_factory
        self.lock_store = lock_store
        self.refresh_window_minutes = (
            refresh_window_minutes
            if refresh_window_minutes is not None
            else settings.TOKEN_REFRESH_WINDOW_MINUTES
        )
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def get_valid_token(
        self, connection_id: str, *, refresh_within_minutes: int | None = None
    ) -> str:
        """
        Return a usable access token for the connection.

        refresh_within_minutes widens the refresh window for this call; the
        proactive refresh job uses it to renew tokens ahead of request traffic.

        Raises:
            ConnectionNotFoundError: No such connection
            ConnectionNotActiveError: Connection is expired or revoked
            TokenExpiredError: Grant can no longer be refreshed
            TokenRefreshError: Refresh failed transiently; connection unchanged
            ProviderConfigError: Client credentials for the provider are missing
        """
        window = max(self.refresh_window_minutes, refresh_within_minutes or 0)
        conn = await self._load_active(connection_id)
        if not conn.needs_refresh(window):
            return conn.access_token

        async with self._single_flight(connection_id):
            # Whoever held the lock before us may have refreshed already
            conn = await self._load_active(connection_id)
            if not conn.needs_refresh(window):
                logger.debug("Token already refreshed by another caller", connection_id=connection_id)
                return conn.access_token

            return await self._refresh(conn)

    async def _load_active(self, connection_id: str) -> Connection:
        conn = await self.repository.get(connection_id)
        if conn is None:
            raise ConnectionNotFoundError(connection_id)
        if not conn.is_active:
            raise ConnectionNotActiveError(
                f"Connection {connection_id} is {conn.status.value}", connection_id
            )
        return conn

    async def _refresh(self, conn: Connection) -> str:
        if not conn.refresh_token:
            await self._expire(conn, "No refresh token available")
            raise TokenExpiredError("Access token expired and no refresh token is stored", conn.id)

        client = self.oauth_client_factory(conn.provider)
        try:
            grant = await client.refresh(conn.refresh_token)
        except ProviderOAuthError as e:
            if e.is_auth_failure:
                await self._expire(conn, f"Refresh rejected ({e.status_code}): {e.error_code or e}")
                raise TokenExpiredError("Refresh token was rejected by the provider", conn.id) from e

            logger.warning(
                "Token refresh failed, connection left unchanged",
                connection_id=conn.id,
                provider=conn.provider.value,
                status_code=e.status_code,
                error=str(e),
            )
            raise TokenRefreshError(f"Token refresh failed: {e}", conn.id) from e

        async with self.repository.transaction() as tx:
            updated = await self.repository.update_tokens(conn.id, grant, connection=tx)
            if updated is not None:
                await self.outbox.publish(
                    TOKEN_REFRESHED,
                    {
                        "connection_id": conn.id,
                        "user_id": conn.user_id,
                        "provider": conn.provider.value,
                        "token_expires_at": updated.token_expires_at,
                        "occurred_at": datetime.now(UTC),
                    },
                    connection=tx,
                )

        if updated is None:
            # Disconnected while the refresh was in flight
            raise ConnectionNotActiveError(f"Connection {conn.id} is no longer active", conn.id)

        logger.info(
            "Access token refreshed",
            connection_id=conn.id,
            provider=conn.provider.value,
            expires_at=updated.token_expires_at.isoformat() if updated.token_expires_at else None,
        )
        return updated.access_token

    async def _expire(self, conn: Connection, reason: str) -> None:
        """active -> expired plus a token_expired event, in one transaction."""
        async with self.repository.transaction() as tx:
            changed = await self.repository.mark_expired(conn.id, reason, connection=tx)
            if changed:
                await self.outbox.publish(
                    TOKEN_EXPIRED,
                    {
                        "connection_id": conn.id,
                        "user_id": conn.user_id,
                        "provider": conn.provider.value,
                        "reason": reason,
                        "occurred_at": datetime.now(UTC),
                    },
                    connection=tx,
                )

        logger.warning(
            "Connection expired",
            connection_id=conn.id,
            user_id=conn.user_id,
            provider=conn.provider.value,
            reason=reason,
        )

    @asynccontextmanager
    async def _single_flight(self, connection_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(connection_id, asyncio.Lock())
        self._lock_users[connection_id] = self._lock_users.get(connection_id, 0) + 1
        try:
            async with lock:
                async with self._replica_lock(connection_id):
                    yield
        finally:
            self._lock_users[connection_id] -= 1
            if not self._lock_users[connection_id]:
                del self._lock_users[connection_id]
                del self._locks[connection_id]

    @asynccontextmanager
    async def _replica_lock(self, connection_id: str) -> AsyncIterator[None]:
        held = None
        if self.lock_store.is_initialized:
            lock = self.lock_store.lock(
                f"{REFRESH_LOCK_PREFIX}:{connection_id}",
                timeout=settings.TOKEN_REFRESH_LOCK_TIMEOUT_SECONDS,
                blocking_timeout=settings.TOKEN_REFRESH_LOCK_TIMEOUT_SECONDS,
            )
            try:
                acquired = await lock.acquire()
            except RedisError as e:
                logger.warning(
                    "Refresh lock unavailable, serializing in-process only",
                    connection_id=connection_id,
                    error=str(e),
                )
            else:
                if not acquired:
                    raise TokenRefreshError("Timed out waiting for refresh lock", connection_id)
                held = lock

        try:
            yield
        finally:
            if held is not None:
                try:
                    await held.release()
                except RedisError as e:
                    logger.warning(
                        "Refresh lock expired before release",
                        connection_id=connection_id,
                        error=str(e),
                    )

    async def health_check(self) -> dict:
        counts = await self.repository.count_by_status()
        return {
            "healthy": True,
            "service": "token_service",
            "refresh_window_minutes": self.refresh_window_minutes,
            "connections": counts,
        }


# Singleton instance for application use
token_service = TokenService()
