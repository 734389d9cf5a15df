"""
OAuth State Service for secure OAuth flow management.
Handles state parameter generation, storage, and single-use consumption for
CSRF protection.

State lives in Redis rather than process memory: the provider callback may
land on a different replica than the one that issued the authorize redirect.
"""

import json
import secrets
from dataclasses import dataclass

from app.config import settings
from app.infrastructure.observability.logging import get_logger, preview
from app.services.infrastructure.redis_client import FastRedisClient, fast_redis
from app.services.oauth.provider_registry import Provider, resolve_provider

logger = get_logger(__name__)

STATE_KEY_PREFIX = "oauth_state"
STATE_LENGTH = 32  # bytes for cryptographically secure state


class OAuthStateError(Exception):
    """State is missing, expired, already used, or could not be stored."""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(message)
        self.recoverable = recoverable


@dataclass(frozen=True)
class PendingAuthorization:
    """What the authorize step remembers for the callback."""

    user_id: str
    provider: Provider
    redirect_after: str | None = None


class OAuthStateService:
    """
    Service for managing OAuth state parameters with a Redis backend.

    Each state maps to the user and provider that started the flow and
    expires after OAUTH_STATE_TTL_SECONDS. Consumption uses GETDEL so a
    state can be redeemed exactly once across all replicas.
    """

    def __init__(self, store: FastRedisClient = fast_redis, ttl_seconds: int | None = None):
        self.store = store
        self.ttl_seconds = ttl_seconds or settings.OAUTH_STATE_TTL_SECONDS

    def _redis_key(self, state: str) -> str:
        return f"{STATE_KEY_PREFIX}:{state}"

    async def generate_state(
        self, user_id: str, provider: Provider, redirect_after: str | None = None
    ) -> str:
        """
        Generate a state parameter and store the pending authorization.

        Raises:
            OAuthStateError: If the state could not be stored
        """
        state = secrets.token_urlsafe(STATE_LENGTH)
        value = json.dumps(
            {"user_id": user_id, "provider": provider.value, "redirect_after": redirect_after}
        )

        stored = await self.store.set_with_ttl(self._redis_key(state), value, self.ttl_seconds)
        if not stored:
            logger.error("Failed to store OAuth state", user_id=user_id, provider=provider.value)
            raise OAuthStateError("Failed to store OAuth state", recoverable=True)

        logger.info(
            "OAuth state generated",
            user_id=user_id,
            provider=provider.value,
            ttl_seconds=self.ttl_seconds,
        )
        return state

    async def consume_state(self, state: str) -> PendingAuthorization:
        """
        Redeem a state parameter. A second call with the same state fails.

        Raises:
            OAuthStateError: Unknown, expired, reused, or malformed state
        """
        if not state:
            raise OAuthStateError("Missing OAuth state")

        raw = await self.store.pop(self._redis_key(state))
        if raw is None:
            logger.warning("OAuth state not found or already used", state_preview=preview(state))
            raise OAuthStateError("Invalid or expired OAuth state")

        try:
            data = json.loads(raw)
            pending = PendingAuthorization(
                user_id=data["user_id"],
                provider=resolve_provider(data["provider"]),
                redirect_after=data.get("redirect_after"),
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.error("Malformed OAuth state payload", state_preview=preview(state), error=str(e))
            raise OAuthStateError("Malformed OAuth state") from e

        logger.info(
            "OAuth state consumed",
            user_id=pending.user_id,
            provider=pending.provider.value,
            state_preview=preview(state),
        )
        return pending

    async def health_check(self) -> dict:
        return {
            "healthy": await self.store.ping(),
            "service": "oauth_state",
            "state_ttl_seconds": self.ttl_seconds,
        }


# Singleton instance for application use
oauth_state_service = OAuthStateService()
