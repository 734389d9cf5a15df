"""
ATS platform -> adapter lookup.
"""

import httpx

from app.models.domain.sync_domain import ATSPlatform
from app.services.ats.adapters.base import ATSAdapter
from app.services.ats.adapters.greenhouse import GreenhouseAdapter
from app.services.ats.adapters.lever import LeverAdapter


class UnsupportedPlatformError(ValueError):
    """Platform slug not in ADAPTERS."""


ADAPTERS: dict[ATSPlatform, type[ATSAdapter]] = {
    ATSPlatform.GREENHOUSE: GreenhouseAdapter,
    ATSPlatform.LEVER: LeverAdapter,
}


def resolve_platform(slug: str | ATSPlatform) -> ATSPlatform:
    if isinstance(slug, ATSPlatform):
        return slug
    try:
        return ATSPlatform(slug)
    except ValueError as e:
        raise UnsupportedPlatformError(f"Unsupported ATS platform '{slug}'") from e


def build_adapter(
    platform: ATSPlatform,
    api_key: str,
    on_behalf_of: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ATSAdapter:
    """Default adapter factory used by SyncService."""
    return ADAPTERS[platform](api_key, on_behalf_of=on_behalf_of, transport=transport)
