import json

import pytest

from app.services.oauth.provider_registry import Provider
from app.services.oauth_state_service import OAuthStateError, OAuthStateService


@pytest.mark.asyncio
async def test_state_round_trip_is_single_use(fake_redis):
    service = OAuthStateService(store=fake_redis, ttl_seconds=60)

    state = await service.generate_state("user-123", Provider.LINKEDIN, "/settings")
    assert f"oauth_state:{state}" in fake_redis.store

    pending = await service.consume_state(state)
    assert pending.user_id == "user-123"
    assert pending.provider == Provider.LINKEDIN
    assert pending.redirect_after == "/settings"

    with pytest.raises(OAuthStateError):
        await service.consume_state(state)


@pytest.mark.asyncio
async def test_unknown_state_rejected(fake_redis):
    service = OAuthStateService(store=fake_redis)

    with pytest.raises(OAuthStateError) as exc_info:
        await service.consume_state("never-issued")

    assert exc_info.value.recoverable is False


@pytest.mark.asyncio
async def test_malformed_state_payload_rejected(fake_redis):
    fake_redis.store["oauth_state:bad"] = json.dumps({"user_id": "user-123"})
    service = OAuthStateService(store=fake_redis)

    with pytest.raises(OAuthStateError):
        await service.consume_state("bad")


@pytest.mark.asyncio
async def test_store_failure_is_recoverable(fake_redis):
    async def failing_set(key, value, ttl_s=None):
        return False

    fake_redis.set_with_ttl = failing_set
    service = OAuthStateService(store=fake_redis)

    with pytest.raises(OAuthStateError) as exc_info:
        await service.generate_state("user-123", Provider.GOOGLE_GMAIL)

    assert exc_info.value.recoverable is True
