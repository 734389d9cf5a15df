"""
Maps service exceptions to HTTP responses.

Dead connections get a distinct 409 {"error": "reconnect_required"} so
clients can send the user back through the OAuth flow.
"""

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from app.infrastructure.observability.logging import get_logger
from app.services.ats.adapters.registry import UnsupportedPlatformError
from app.services.ats.sync_service import (
    IntegrationNotFoundError,
    IntegrationValidationError,
    SyncItemNotFoundError,
    SyncItemStateError,
)
from app.services.connection_service import ConnectionConflictError
from app.services.oauth.oauth_client import ProviderConfigError, ProviderOAuthError
from app.services.oauth.provider_registry import UnknownProviderError
from app.services.oauth_state_service import OAuthStateError
from app.services.token_service import (
    ConnectionNotFoundError,
    ReconnectRequiredError,
    TokenRefreshError,
)

logger = get_logger(__name__)


def _error(status_code: int, error: str, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "detail": message})


async def _reconnect_required(request: Request, exc: ReconnectRequiredError) -> JSONResponse:
    return _error(status.HTTP_409_CONFLICT, "reconnect_required", str(exc))


async def _not_found(request: Request, exc: Exception) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, "not_found", str(exc))


async def _validation(request: Request, exc: Exception) -> JSONResponse:
    return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, "validation_error", str(exc))


async def _conflict(request: Request, exc: Exception) -> JSONResponse:
    return _error(status.HTTP_409_CONFLICT, "invalid_state", str(exc))


async def _connection_conflict(request: Request, exc: ConnectionConflictError) -> JSONResponse:
    return _error(status.HTTP_409_CONFLICT, "connection_conflict", str(exc))


async def _oauth_state(request: Request, exc: OAuthStateError) -> JSONResponse:
    if exc.recoverable:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "oauth_state_unavailable", str(exc))
    return _error(status.HTTP_400_BAD_REQUEST, "invalid_oauth_state", str(exc))


async def _upstream(request: Request, exc: Exception) -> JSONResponse:
    logger.warning(
        "Upstream provider error",
        path=request.url.path,
        error=str(exc),
        error_type=type(exc).__name__,
    )
    return _error(status.HTTP_502_BAD_GATEWAY, "provider_error", str(exc))


async def _provider_config(request: Request, exc: ProviderConfigError) -> JSONResponse:
    logger.error("Provider credentials missing", family=exc.family)
    return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "provider_not_configured", str(exc))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ReconnectRequiredError, _reconnect_required)
    app.add_exception_handler(ConnectionNotFoundError, _not_found)
    app.add_exception_handler(IntegrationNotFoundError, _not_found)
    app.add_exception_handler(SyncItemNotFoundError, _not_found)
    app.add_exception_handler(IntegrationValidationError, _validation)
    app.add_exception_handler(UnknownProviderError, _validation)
    app.add_exception_handler(UnsupportedPlatformError, _validation)
    app.add_exception_handler(SyncItemStateError, _conflict)
    app.add_exception_handler(ConnectionConflictError, _connection_conflict)
    app.add_exception_handler(OAuthStateError, _oauth_state)
    app.add_exception_handler(TokenRefreshError, _upstream)
    app.add_exception_handler(ProviderOAuthError, _upstream)
    app.add_exception_handler(ProviderConfigError, _provider_config)
