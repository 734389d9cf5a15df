# models/api/connection_response.py
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.models.domain.connection_domain import Connection


class AuthorizationURLResponse(BaseModel):
    auth_url: str = Field(..., description="Provider authorization URL")
    state: str = Field(..., description="OAuth state parameter")
    provider: str


class ConnectionResponse(BaseModel):
    """Connection as exposed to API callers; tokens are never included."""

    id: str
    provider: str
    status: str
    scopes: list[str] = Field(default_factory=list)
    provider_account_id: str | None = None
    provider_account_name: str | None = None
    token_expires_at: datetime | None = None
    last_sync_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_domain(cls, connection: Connection) -> "ConnectionResponse":
        return cls(**connection.to_public_dict())


class OAuthCallbackResponse(BaseModel):
    success: bool
    connection: ConnectionResponse
    redirect_after: str | None = None


class ConnectionListResponse(BaseModel):
    connections: list[ConnectionResponse]


class AccessTokenResponse(BaseModel):
    """Live access token for server-side callers of a provider API."""

    connection_id: str
    access_token: str
