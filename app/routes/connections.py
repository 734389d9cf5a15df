"""
OAuth connection routes: authorize, callback, list, disconnect, token.
"""

from fastapi import APIRouter, Depends, status

from app.auth.verify import current_user_id
from app.infrastructure.observability.logging import get_logger
from app.models.api.connection_request import OAuthCallbackRequest, StartAuthorizationRequest
from app.models.api.connection_response import (
    AccessTokenResponse,
    AuthorizationURLResponse,
    ConnectionListResponse,
    ConnectionResponse,
    OAuthCallbackResponse,
)
from app.services.connection_service import ConnectionService, connection_service
from app.services.token_service import TokenService, token_service

logger = get_logger(__name__)

router = APIRouter(prefix="/connections", tags=["connections"])


def get_connection_service() -> ConnectionService:
    return connection_service


def get_token_service() -> TokenService:
    return token_service


@router.post("/oauth/authorize", response_model=AuthorizationURLResponse)
async def start_authorization(
    body: StartAuthorizationRequest,
    user_id: str = Depends(current_user_id),
    service: ConnectionService = Depends(get_connection_service),
):
    """Generate the provider authorization URL the client should open."""
    auth_url, state = await service.start_authorization(user_id, body.provider, body.redirect_after)
    return AuthorizationURLResponse(auth_url=auth_url, state=state, provider=body.provider)


@router.post("/oauth/callback", response_model=OAuthCallbackResponse)
async def oauth_callback(
    body: OAuthCallbackRequest,
    service: ConnectionService = Depends(get_connection_service),
):
    """
    Complete the OAuth flow.

    Unauthenticated on purpose: the single-use state already identifies the
    user who started the flow, and it may be redeemed on any replica.
    """
    connection, redirect_after = await service.complete_authorization(body.state, body.code)
    return OAuthCallbackResponse(
        success=True,
        connection=ConnectionResponse.from_domain(connection),
        redirect_after=redirect_after,
    )


@router.get("", response_model=ConnectionListResponse)
async def list_connections(
    user_id: str = Depends(current_user_id),
    service: ConnectionService = Depends(get_connection_service),
):
    connections = await service.list_connections(user_id)
    return ConnectionListResponse(
        connections=[ConnectionResponse.from_domain(c) for c in connections]
    )


@router.get("/{connection_id}", response_model=ConnectionResponse)
async def get_connection(
    connection_id: str,
    user_id: str = Depends(current_user_id),
    service: ConnectionService = Depends(get_connection_service),
):
    return ConnectionResponse.from_domain(await service.get_connection(user_id, connection_id))


@router.delete("/{connection_id}", response_model=ConnectionResponse)
async def disconnect(
    connection_id: str,
    user_id: str = Depends(current_user_id),
    service: ConnectionService = Depends(get_connection_service),
):
    return ConnectionResponse.from_domain(await service.disconnect(user_id, connection_id))


@router.post(
    "/{connection_id}/token",
    response_model=AccessTokenResponse,
    status_code=status.HTTP_200_OK,
)
async def get_access_token(
    connection_id: str,
    user_id: str = Depends(current_user_id),
    service: ConnectionService = Depends(get_connection_service),
    tokens: TokenService = Depends(get_token_service),
):
    """Return a live access token, refreshing it first if it is about to expire."""
    # Ownership check before any refresh work
    await service.get_connection(user_id, connection_id)
    access_token = await tokens.get_valid_token(connection_id)
    return AccessTokenResponse(connection_id=connection_id, access_token=access_token)
