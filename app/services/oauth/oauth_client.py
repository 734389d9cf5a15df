"""
Provider OAuth client.
Handles authorize URL generation, code exchange, token refresh, revocation
and account lookup against any provider in the registry.
"""

import asyncio
from urllib.parse import urlencode

import httpx

from app.config import settings
from app.infrastructure.observability.logging import get_logger, preview
from app.models.domain.connection_domain import ProviderAccount, TokenGrant
from app.services.oauth.provider_registry import (
    Provider,
    ProviderFamily,
    endpoints_for,
    scopes_for,
)

logger = get_logger(__name__)

REQUEST_TIMEOUT = 10  # seconds
BACKOFF_FACTOR = 2


class ProviderConfigError(Exception):
    """Client credentials for a provider family are missing."""

    def __init__(self, family: str):
        super().__init__(
            f"{family.upper()}_CLIENT_ID / {family.upper()}_CLIENT_SECRET not configured"
        )
        self.family = family


class ProviderOAuthError(Exception):
    """Error returned by (or while reaching) a provider OAuth endpoint."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code
        self.response_data = response_data or {}

    @property
    def is_auth_failure(self) -> bool:
        """400/401 from a token endpoint: the grant itself is no longer valid."""
        return self.status_code in (400, 401)


class ProviderOAuthClient:
    """
    OAuth 2.0 operations for a single provider.

    Credentials are resolved on first use so a missing family configuration
    only affects the providers that need it.
    """

    def __init__(self, provider: Provider, transport: httpx.AsyncBaseTransport | None = None):
        self.provider = provider
        self.family: ProviderFamily = provider.family
        self.endpoints = endpoints_for(provider)
        self.redirect_uri = settings.oauth_redirect_uri()
        self._transport = transport

    def _credentials(self) -> tuple[str, str]:
        client_id, client_secret = settings.client_credentials(self.family.value)
        if not client_id or not client_secret:
            raise ProviderConfigError(self.family.value)
        return client_id, client_secret

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=REQUEST_TIMEOUT, transport=self._transport)

    def build_authorize_url(self, state: str) -> str:
        """Authorization URL the user is redirected to."""
        client_id, _ = self._credentials()
        params = {
            "client_id": client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(scopes_for(self.provider)),
            "state": state,
            **self.endpoints.extra_authorize_params,
        }
        return f"{self.endpoints.authorize_url}?{urlencode(params)}"

    async def _post_form(
        self, url: str, data: dict, operation: str, max_attempts: int = 1
    ) -> httpx.Response:
        """
        POST a form body.

        Only network errors (the request never produced a response) are
        retried, and only when max_attempts allows it.
        """
        headers = {"Content-Type": "application/x-www-form-urlencoded", "Accept": "application/json"}

        async with self._client() as client:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await client.post(url, data=data, headers=headers)
                except httpx.RequestError as exc:
                    if attempt == max_attempts:
                        raise ProviderOAuthError(
                            f"Network error during {operation}: {exc}"
                        ) from exc

                    wait_time = BACKOFF_FACTOR**attempt
                    logger.warning(
                        "Provider OAuth request error, retrying",
                        provider=self.provider.value,
                        operation=operation,
                        attempt=attempt,
                        wait_time=wait_time,
                        error_type=type(exc).__name__,
                    )
                    await asyncio.sleep(wait_time)

        raise ProviderOAuthError(f"{operation} failed: no attempts made")

    def _parse_token_response(self, response: httpx.Response, operation: str) -> TokenGrant:
        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code != 200:
            error_code = body.get("error") if isinstance(body, dict) else None
            logger.warning(
                "Provider token endpoint rejected request",
                provider=self.provider.value,
                operation=operation,
                status_code=response.status_code,
                error_code=error_code,
            )
            raise ProviderOAuthError(
                f"{operation} failed with HTTP {response.status_code}",
                status_code=response.status_code,
                error_code=error_code,
                response_data=body if isinstance(body, dict) else {},
            )

        if not body.get("access_token"):
            raise ProviderOAuthError(
                f"{operation} response missing access_token", status_code=response.status_code
            )

        return TokenGrant.from_response(body)

    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code (grant_type=authorization_code)."""
        client_id, client_secret = self._credentials()
        data = {
            "client_id": client_id,
            "client_secret": client_secret,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": self.redirect_uri,
        }

        logger.info("Exchanging authorization code", provider=self.provider.value)
        response = await self._post_form(
            self.endpoints.token_url, data, operation="code_exchange", max_attempts=2
        )
        return self._parse_token_response(response, "code_exchange")

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """
        Refresh an access token (grant_type=refresh_token).

        Exactly one request is sent; some providers invalidate the previous
        refresh token on every use, so blind retries are unsafe.
        """
        client_id, client_secret = self._credentials()
        data = {
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if self.family == ProviderFamily.MICROSOFT:
            data["scope"] = " ".join(scopes_for(self.provider))

        logger.info(
            "Refreshing access token",
            provider=self.provider.value,
            refresh_token_preview=preview(refresh_token),
        )
        response = await self._post_form(self.endpoints.token_url, data, operation="token_refresh")
        grant = self._parse_token_response(response, "token_refresh")

        # Providers that do not rotate refresh tokens omit them on refresh
        if not grant.refresh_token:
            grant.refresh_token = refresh_token

        return grant

    async def revoke(self, token: str) -> bool:
        """Best-effort provider-side revocation. Never raises."""
        if not self.endpoints.revoke_url:
            logger.debug("Provider has no revocation endpoint", provider=self.provider.value)
            return False

        try:
            data = {"token": token}
            if self.family == ProviderFamily.LINKEDIN:
                client_id, client_secret = self._credentials()
                data.update({"client_id": client_id, "client_secret": client_secret})

            response = await self._post_form(
                self.endpoints.revoke_url, data, operation="token_revocation"
            )
            success = response.status_code == 200

            if not success:
                logger.warning(
                    "Token revocation failed",
                    provider=self.provider.value,
                    status_code=response.status_code,
                )
            return success

        except (ProviderOAuthError, ProviderConfigError) as e:
            logger.warning("Token revocation error", provider=self.provider.value, error=str(e))
            return False

    async def fetch_account(self, access_token: str) -> ProviderAccount:
        """Read the provider-side account identity for a fresh grant."""
        async with self._client() as client:
            try:
                response = await client.get(
                    self.endpoints.userinfo_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
            except httpx.RequestError as exc:
                raise ProviderOAuthError(f"Network error during account lookup: {exc}") from exc

        if response.status_code != 200:
            raise ProviderOAuthError(
                f"Account lookup failed with HTTP {response.status_code}",
                status_code=response.status_code,
            )

        body = response.json()

        if self.family == ProviderFamily.MICROSOFT:
            return ProviderAccount(
                account_id=body.get("id"),
                account_name=body.get("displayName"),
                email=body.get("mail") or body.get("userPrincipalName"),
            )

        # Google and LinkedIn both expose OpenID Connect userinfo
        return ProviderAccount(
            account_id=body.get("sub"),
            account_name=body.get("name"),
            email=body.get("email"),
        )


def oauth_client_for(provider: Provider) -> ProviderOAuthClient:
    """Default factory used by the services."""
    return ProviderOAuthClient(provider)
