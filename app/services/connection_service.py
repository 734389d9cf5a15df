"""
Connection Service.
Owns the connection lifecycle: authorize, callback, list, disconnect.

    (none) --callback--> active --refresh rejected--> expired
                           |
                           +------disconnect------> revoked

expired and revoked are terminal. Reconnecting creates a new row and
revokes whatever active row the user still had for that provider.
"""

from collections.abc import Callable
from datetime import UTC, datetime

import psycopg

from app.db.helpers import DatabaseError
from app.infrastructure.observability.logging import get_logger
from app.models.domain.connection_domain import Connection
from app.models.domain.outbox_domain import CONNECTION_CREATED, CONNECTION_REVOKED
from app.repositories.connection_repository import ConnectionRepository, connection_repository
from app.services.oauth.oauth_client import ProviderOAuthClient, oauth_client_for
from app.services.oauth.provider_registry import Provider, resolve_provider
from app.services.oauth_state_service import OAuthStateError, OAuthStateService, oauth_state_service
from app.services.outbox_service import OutboxService, outbox_service
from app.services.token_service import ConnectionNotFoundError

logger = get_logger(__name__)


class ConnectionConflictError(Exception):
    """Another callback for the same user and provider committed first."""


class ConnectionService:
    def __init__(
        self,
        repository: ConnectionRepository = connection_repository,
        outbox: OutboxService = outbox_service,
        state_service: OAuthStateService = oauth_state_service,
        oauth_client_factory: Callable[[Provider], ProviderOAuthClient] = oauth_client_for,
    ):
        self.repository = repository
        self.outbox = outbox
        self.state_service = state_service
        self.oauth_client_factory = oauth_client_factory

    async def start_authorization(
        self, user_id: str, provider: str | Provider, redirect_after: str | None = None
    ) -> tuple[str, str]:
        """
        Begin the OAuth flow.

        Returns:
            (authorize_url, state)

        Raises:
            UnknownProviderError: Provider slug not in the registry
            ProviderConfigError: Client credentials for the family are missing
            OAuthStateError: State could not be stored
        """
        resolved = resolve_provider(provider)
        client = self.oauth_client_factory(resolved)

        state = await self.state_service.generate_state(user_id, resolved, redirect_after)
        url = client.build_authorize_url(state)

        logger.info("OAuth authorization started", user_id=user_id, provider=resolved.value)
        return url, state

    async def complete_authorization(self, state: str, code: str) -> tuple[Connection, str | None]:
        """
        Finish the OAuth flow from the provider callback.

        Returns:
            (connection, redirect_after)

        Raises:
            OAuthStateError: Unknown, expired or reused state, or missing code
            ProviderOAuthError: Code exchange or account lookup failed
            ConnectionConflictError: A concurrent callback created the connection first
        """
        if not code:
            raise OAuthStateError("Missing authorization code")

        pending = await self.state_service.consume_state(state)
        client = self.oauth_client_factory(pending.provider)

        grant = await client.exchange_code(code)
        account = await client.fetch_account(grant.access_token)

        try:
            async with self.repository.transaction() as tx:
                connection, superseded = await self.repository.create(
                    pending.user_id, pending.provider, grant, account, connection=tx
                )
                for old_id in superseded:
                    await self.outbox.publish(
                        CONNECTION_REVOKED,
                        {
                            "connection_id": old_id,
                            "user_id": pending.user_id,
                            "provider": pending.provider.value,
                            "reason": "superseded",
                            "occurred_at": datetime.now(UTC),
                        },
                        connection=tx,
                    )
                await self.outbox.publish(
                    CONNECTION_CREATED,
                    {
                        "connection_id": connection.id,
                        "user_id": connection.user_id,
                        "provider": connection.provider.value,
                        "provider_account_id": connection.provider_account_id,
                        "scopes": connection.scopes,
                        "occurred_at": datetime.now(UTC),
                    },
                    connection=tx,
                )
        except DatabaseError as e:
            if isinstance(e.__cause__, psycopg.errors.UniqueViolation):
                logger.warning(
                    "Concurrent OAuth callback lost the race",
                    user_id=pending.user_id,
                    provider=pending.provider.value,
                )
                raise ConnectionConflictError(
                    f"A {pending.provider.value} connection was created concurrently"
                ) from e
            raise

        logger.info(
            "Connection created",
            connection_id=connection.id,
            user_id=connection.user_id,
            provider=connection.provider.value,
            superseded=len(superseded),
        )
        return connection, pending.redirect_after

    async def disconnect(self, user_id: str, connection_id: str) -> Connection:
        """
        Revoke a connection the user owns.

        Provider-side revocation is best effort; the local row is revoked
        whether or not the provider accepted it.
        """
        conn = await self.repository.get_for_user(user_id, connection_id)
        if conn is None:
            raise ConnectionNotFoundError(connection_id)

        if conn.is_active:
            token = conn.refresh_token or conn.access_token
            if token:
                revoked_remotely = await self.oauth_client_factory(conn.provider).revoke(token)
                if not revoked_remotely:
                    logger.warning(
                        "Provider-side revocation did not succeed",
                        connection_id=connection_id,
                        provider=conn.provider.value,
                    )

        async with self.repository.transaction() as tx:
            changed = await self.repository.mark_revoked(connection_id, connection=tx)
            if changed:
                await self.outbox.publish(
                    CONNECTION_REVOKED,
                    {
                        "connection_id": connection_id,
                        "user_id": user_id,
                        "provider": conn.provider.value,
                        "reason": "user_disconnect",
                        "occurred_at": datetime.now(UTC),
                    },
                    connection=tx,
                )

        logger.info(
            "Connection disconnected",
            connection_id=connection_id,
            user_id=user_id,
            provider=conn.provider.value,
            already_revoked=not changed,
        )
        return await self.repository.get(connection_id)

    async def list_connections(self, user_id: str) -> list[Connection]:
        return await self.repository.list_for_user(user_id)

    async def get_connection(self, user_id: str, connection_id: str) -> Connection:
        conn = await self.repository.get_for_user(user_id, connection_id)
        if conn is None:
            raise ConnectionNotFoundError(connection_id)
        return conn

    async def record_sync(self, connection_id: str) -> None:
        """Note a successful provider call made with this connection."""
        if not await self.repository.record_sync(connection_id):
            raise ConnectionNotFoundError(connection_id)

    async def record_error(self, connection_id: str, message: str) -> None:
        """Note a failed provider call without changing the connection status."""
        if not await self.repository.record_error(connection_id, message):
            raise ConnectionNotFoundError(connection_id)
        logger.warning("Connection error recorded", connection_id=connection_id, error=message)


connection_service = ConnectionService()
