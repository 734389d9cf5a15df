"""
Provider registry and OAuth client tests.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from app.services.oauth.oauth_client import (
    ProviderConfigError,
    ProviderOAuthClient,
    ProviderOAuthError,
)
from app.services.oauth.provider_registry import (
    PROVIDER_FAMILIES,
    PROVIDER_SCOPES,
    Provider,
    ProviderFamily,
    UnknownProviderError,
    endpoints_for,
    resolve_provider,
)


@pytest.fixture
def google_credentials(monkeypatch):
    monkeypatch.setattr("app.config.settings.GOOGLE_CLIENT_ID", "google-id")
    monkeypatch.setattr("app.config.settings.GOOGLE_CLIENT_SECRET", "google-secret")


def test_every_provider_has_family_endpoints_and_scopes():
    for provider in Provider:
        assert provider in PROVIDER_FAMILIES
        assert PROVIDER_SCOPES[provider]
        assert endpoints_for(provider).token_url.startswith("https://")


def test_provider_family_lookup():
    assert Provider.GOOGLE_GMAIL.family == ProviderFamily.GOOGLE
    assert Provider.MICROSOFT_MAIL.family == ProviderFamily.MICROSOFT
    assert resolve_provider("linkedin") == Provider.LINKEDIN

    with pytest.raises(UnknownProviderError):
        resolve_provider("google")


def test_authorize_url_carries_state_and_offline_access(google_credentials):
    client = ProviderOAuthClient(Provider.GOOGLE_CALENDAR)

    url = client.build_authorize_url("state-abc")

    params = parse_qs(urlparse(url).query)
    assert params["state"] == ["state-abc"]
    assert params["client_id"] == ["google-id"]
    assert params["access_type"] == ["offline"]
    assert "https://www.googleapis.com/auth/calendar.events" in params["scope"][0].split()
    assert params["redirect_uri"][0].endswith("/connections/oauth/callback")


def test_missing_credentials_raise_config_error(monkeypatch):
    monkeypatch.setattr("app.config.settings.LINKEDIN_CLIENT_ID", None)
    monkeypatch.setattr("app.config.settings.LINKEDIN_CLIENT_SECRET", None)
    monkeypatch.delenv("LINKEDIN_CLIENT_ID", raising=False)

    with pytest.raises(ProviderConfigError):
        ProviderOAuthClient(Provider.LINKEDIN).build_authorize_url("state")


@pytest.mark.asyncio
async def test_refresh_keeps_old_refresh_token_when_not_rotated(google_credentials):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(parse_qs(request.content.decode()))
        return httpx.Response(200, json={"access_token": "new-access", "expires_in": 3599})

    client = ProviderOAuthClient(Provider.GOOGLE_GMAIL, transport=httpx.MockTransport(handler))

    grant = await client.refresh("refresh-1")

    assert grant.access_token == "new-access"
    assert grant.refresh_token == "refresh-1"
    assert grant.expires_at is not None
    assert len(requests) == 1
    assert requests[0]["grant_type"] == ["refresh_token"]


@pytest.mark.asyncio
async def test_refresh_rejection_is_auth_failure(google_credentials):
    transport = httpx.MockTransport(
        lambda request: httpx.Response(400, json={"error": "invalid_grant"})
    )
    client = ProviderOAuthClient(Provider.GOOGLE_GMAIL, transport=transport)

    with pytest.raises(ProviderOAuthError) as exc_info:
        await client.refresh("refresh-1")

    assert exc_info.value.is_auth_failure is True
    assert exc_info.value.error_code == "invalid_grant"


@pytest.mark.asyncio
async def test_refresh_server_error_is_not_auth_failure(google_credentials):
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    client = ProviderOAuthClient(Provider.GOOGLE_GMAIL, transport=transport)

    with pytest.raises(ProviderOAuthError) as exc_info:
        await client.refresh("refresh-1")

    assert exc_info.value.is_auth_failure is False


@pytest.mark.asyncio
async def test_revoke_never_raises(google_credentials):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    client = ProviderOAuthClient(Provider.GOOGLE_GMAIL, transport=httpx.MockTransport(handler))

    assert await client.revoke("token") is False


@pytest.mark.asyncio
async def test_microsoft_has_no_revocation_endpoint():
    client = ProviderOAuthClient(Provider.MICROSOFT_CALENDAR)

    assert await client.revoke("token") is False
