"""
Provider registry.

Providers are a closed set: every slug the service accepts is a member of
Provider, every Provider belongs to exactly one ProviderFamily, and every
family has one OAuthEndpoints entry. Adding a provider means adding an enum
member and a table row; lookups never parse slug prefixes.
"""

from dataclasses import dataclass, field
from enum import Enum

from app.config import settings


class ProviderFamily(str, Enum):
    """Group of providers sharing one OAuth client credential namespace."""

    GOOGLE = "google"
    MICROSOFT = "microsoft"
    LINKEDIN = "linkedin"


class Provider(str, Enum):
    GOOGLE_CALENDAR = "google_calendar"
    GOOGLE_GMAIL = "google_gmail"
    MICROSOFT_CALENDAR = "microsoft_calendar"
    MICROSOFT_MAIL = "microsoft_mail"
    LINKEDIN = "linkedin"

    @property
    def family(self) -> ProviderFamily:
        return PROVIDER_FAMILIES[self]


class UnknownProviderError(ValueError):
    """Raised for a provider slug that is not part of the registry."""


@dataclass(frozen=True)
class OAuthEndpoints:
    authorize_url: str
    token_url: str
    userinfo_url: str
    revoke_url: str | None = None
    extra_authorize_params: dict[str, str] = field(default_factory=dict)


PROVIDER_FAMILIES: dict[Provider, ProviderFamily] = {
    Provider.GOOGLE_CALENDAR: ProviderFamily.GOOGLE,
    Provider.GOOGLE_GMAIL: ProviderFamily.GOOGLE,
    Provider.MICROSOFT_CALENDAR: ProviderFamily.MICROSOFT,
    Provider.MICROSOFT_MAIL: ProviderFamily.MICROSOFT,
    Provider.LINKEDIN: ProviderFamily.LINKEDIN,
}


def _microsoft_base() -> str:
    return f"https://login.microsoftonline.com/{settings.MICROSOFT_TENANT}/oauth2/v2.0"


FAMILY_ENDPOINTS: dict[ProviderFamily, OAuthEndpoints] = {
    ProviderFamily.GOOGLE: OAuthEndpoints(
        authorize_url="https://accounts.google.com/o/oauth2/v2/auth",
        token_url="https://oauth2.googleapis.com/token",
        userinfo_url="https://openidconnect.googleapis.com/v1/userinfo",
        revoke_url="https://oauth2.googleapis.com/revoke",
        # offline access + forced consent so a refresh token is always issued
        extra_authorize_params={
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        },
    ),
    ProviderFamily.MICROSOFT: OAuthEndpoints(
        authorize_url=f"{_microsoft_base()}/authorize",
        token_url=f"{_microsoft_base()}/token",
        userinfo_url="https://graph.microsoft.com/v1.0/me",
        extra_authorize_params={"response_mode": "query", "prompt": "select_account"},
    ),
    ProviderFamily.LINKEDIN: OAuthEndpoints(
        authorize_url="https://www.linkedin.com/oauth/v2/authorization",
        token_url="https://www.linkedin.com/oauth/v2/accessToken",
        userinfo_url="https://api.linkedin.com/v2/userinfo",
        revoke_url="https://www.linkedin.com/oauth/v2/revoke",
    ),
}

PROVIDER_SCOPES: dict[Provider, list[str]] = {
    Provider.GOOGLE_CALENDAR: [
        "openid",
        "email",
        "profile",
        "https://www.googleapis.com/auth/calendar.readonly",
        "https://www.googleapis.com/auth/calendar.events",
    ],
    Provider.GOOGLE_GMAIL: [
        "openid",
        "email",
        "profile",
        "https://www.googleapis.com/auth/gmail.readonly",
        "https://www.googleapis.com/auth/gmail.send",
    ],
    Provider.MICROSOFT_CALENDAR: [
        "openid",
        "email",
        "profile",
        "offline_access",
        "User.Read",
        "Calendars.ReadWrite",
    ],
    Provider.MICROSOFT_MAIL: [
        "openid",
        "email",
        "profile",
        "offline_access",
        "User.Read",
        "Mail.ReadWrite",
        "Mail.Send",
    ],
    Provider.LINKEDIN: ["openid", "profile", "email"],
}


def resolve_provider(slug: str | Provider) -> Provider:
    """Map an incoming slug to a registry member."""
    if isinstance(slug, Provider):
        return slug
    try:
        return Provider(slug)
    except ValueError as e:
        raise UnknownProviderError(f"Unknown provider '{slug}'") from e


def endpoints_for(provider: Provider) -> OAuthEndpoints:
    return FAMILY_ENDPOINTS[provider.family]


def scopes_for(provider: Provider) -> list[str]:
    return PROVIDER_SCOPES[provider]
