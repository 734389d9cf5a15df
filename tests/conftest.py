import os

import pytest
from cryptography.fernet import Fernet

# Settings are read at import time
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode("utf-8"))

from app.auth.verify import auth_dependency  # noqa: E402
from tests.fakes import (  # noqa: E402
    FakeAdapter,
    FakeConnectionRepository,
    FakeIntegrationRepository,
    FakeOAuthClient,
    FakeOutbox,
    FakeRedis,
    FakeSyncRepository,
)


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": "user-123"}

    return _override


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def fake_outbox():
    return FakeOutbox()


@pytest.fixture
def fake_connections():
    return FakeConnectionRepository()


@pytest.fixture
def fake_oauth_client():
    return FakeOAuthClient()


@pytest.fixture
def fake_integrations():
    return FakeIntegrationRepository()


@pytest.fixture
def fake_sync_repository():
    return FakeSyncRepository()


@pytest.fixture
def fake_adapter():
    return FakeAdapter()
