# models/domain/connection_domain.py
"""
Connection domain model: one OAuth grant linking a user to a provider.
"""

from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from app.services.oauth.provider_registry import Provider


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class Connection(BaseModel):
    """Domain model for a stored OAuth grant (tokens decrypted)."""

    id: str
    user_id: str
    provider: Provider
    status: ConnectionStatus
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    scopes: list[str] = Field(default_factory=list)
    provider_account_id: str | None = None
    provider_account_name: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    last_sync_at: datetime | None = None
    last_error: str | None = None
    last_error_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE

    def needs_refresh(self, window_minutes: int = 5) -> bool:
        """True when the access token expires within the refresh window."""
        if not self.token_expires_at:
            return False
        expires_at = self.token_expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return datetime.now(UTC) + timedelta(minutes=window_minutes) >= expires_at

    def to_public_dict(self) -> dict[str, Any]:
        """Connection fields that are safe to return to API callers."""
        return self.model_dump(exclude={"access_token", "refresh_token"}, mode="json")


class TokenGrant(BaseModel):
    """Normalized token endpoint response (authorization_code or refresh_token grant)."""

    access_token: str
    refresh_token: str | None = None
    token_type: str = "Bearer"
    expires_in: int | None = None
    scope: str = ""
    expires_at: datetime | None = None

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "TokenGrant":
        expires_in = data.get("expires_in")
        expires_at = (
            datetime.now(UTC) + timedelta(seconds=int(expires_in)) if expires_in else None
        )
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            token_type=data.get("token_type", "Bearer"),
            expires_in=int(expires_in) if expires_in else None,
            scope=data.get("scope", "") or "",
            expires_at=expires_at,
        )

    @property
    def scopes(self) -> list[str]:
        # Google and Microsoft separate with spaces, LinkedIn with commas
        return [s for s in self.scope.replace(",", " ").split() if s]


class ProviderAccount(BaseModel):
    """Identity of the account on the provider side."""

    account_id: str | None = None
    account_name: str | None = None
    email: str | None = None
