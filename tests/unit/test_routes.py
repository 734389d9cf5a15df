"""
Route tests for /connections and /integrations with services built on fakes.
"""

from datetime import UTC, datetime, timedelta

import psycopg
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.db.helpers import DatabaseError
from app.models.domain.connection_domain import ConnectionStatus
from app.routes import connections, integrations
from app.routes.errors import register_error_handlers
from app.services.ats.sync_service import SyncService
from app.services.connection_service import ConnectionService
from app.services.oauth_state_service import OAuthStateService
from app.services.token_service import TokenService
from tests.fakes import make_connection, make_integration


@pytest.fixture
def client(
    apply_auth_override,
    fake_connections,
    fake_outbox,
    fake_redis,
    fake_oauth_client,
    fake_integrations,
    fake_sync_repository,
    fake_adapter,
):
    app = FastAPI()
    app.include_router(connections.router)
    app.include_router(integrations.router)
    register_error_handlers(app)
    apply_auth_override(app)

    connection_service = ConnectionService(
        repository=fake_connections,
        outbox=fake_outbox,
        state_service=OAuthStateService(store=fake_redis),
        oauth_client_factory=lambda provider: fake_oauth_client,
    )
    token_service = TokenService(
        repository=fake_connections,
        outbox=fake_outbox,
        oauth_client_factory=lambda provider: fake_oauth_client,
        lock_store=fake_redis,
        refresh_window_minutes=5,
    )
    sync_service = SyncService(
        integrations=fake_integrations,
        repository=fake_sync_repository,
        outbox=fake_outbox,
        adapter_factory=lambda platform, api_key, on_behalf_of: fake_adapter,
    )
    app.dependency_overrides[connections.get_connection_service] = lambda: connection_service
    app.dependency_overrides[connections.get_token_service] = lambda: token_service
    app.dependency_overrides[integrations.get_sync_service] = lambda: sync_service
    return TestClient(app)


def test_oauth_round_trip(client, fake_connections):
    response = client.post(
        "/connections/oauth/authorize",
        json={"provider": "google_calendar", "redirect_after": "/settings"},
    )
    assert response.status_code == 200
    state = response.json()["state"]

    response = client.post("/connections/oauth/callback", json={"code": "c", "state": state})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["redirect_after"] == "/settings"
    assert body["connection"]["status"] == "active"
    assert "access_token" not in body["connection"]

    # State is single use
    replay = client.post("/connections/oauth/callback", json={"code": "c", "state": state})
    assert replay.status_code == 400
    assert replay.json()["error"] == "invalid_oauth_state"


def test_unknown_provider_is_422(client):
    response = client.post("/connections/oauth/authorize", json={"provider": "myspace"})

    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


def test_list_and_get_only_own_connections(client, fake_connections):
    mine = fake_connections.add(make_connection())
    theirs = fake_connections.add(make_connection(user_id="someone-else"))

    listed = client.get("/connections").json()["connections"]
    assert [c["id"] for c in listed] == [mine.id]

    assert client.get(f"/connections/{theirs.id}").status_code == 404


def test_token_endpoint_refreshes_expiring_token(client, fake_connections, fake_oauth_client):
    conn = fake_connections.add(
        make_connection(token_expires_at=datetime.now(UTC) + timedelta(minutes=1))
    )

    response = client.post(f"/connections/{conn.id}/token")

    assert response.status_code == 200
    assert response.json() == {"connection_id": conn.id, "access_token": "access-new"}
    assert fake_oauth_client.refresh_calls == 1


def test_token_endpoint_dead_connection_needs_reconnect(client, fake_connections):
    conn = fake_connections.add(make_connection(status=ConnectionStatus.EXPIRED))

    response = client.post(f"/connections/{conn.id}/token")

    assert response.status_code == 409
    assert response.json()["error"] == "reconnect_required"


def test_disconnect_revokes(client, fake_connections):
    conn = fake_connections.add(make_connection())

    response = client.delete(f"/connections/{conn.id}")

    assert response.status_code == 200
    assert response.json()["status"] == "revoked"


def test_create_integration_hides_api_key(client, fake_integrations):
    response = client.post(
        "/integrations",
        json={"platform": "greenhouse", "api_key": "gh-key", "on_behalf_of": "4080"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["platform"] == "greenhouse"
    assert body["owner_id"] == "user-123"
    assert "api_key" not in body


def test_create_integration_unknown_platform_is_422(client):
    response = client.post("/integrations", json={"platform": "workday", "api_key": "k"})

    assert response.status_code == 422


def test_trigger_sync_is_accepted(client, fake_integrations):
    integration = fake_integrations.add(make_integration())

    response = client.post(f"/integrations/{integration.id}/sync")

    assert response.status_code == 202
    queued = response.json()["queued"]
    assert [item["entity_type"] for item in queued] == ["role", "candidate"]


def test_other_owners_integration_is_404(client, fake_integrations):
    integration = fake_integrations.add(make_integration(owner_id="another-company"))

    response = client.get(f"/integrations/{integration.id}/stats")

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_push_candidate_and_read_logs(client, fake_integrations):
    integration = fake_integrations.add(make_integration())

    response = client.post(
        f"/integrations/{integration.id}/candidates/push",
        json={"candidate_id": "cand-1", "candidate": {"first_name": "Ada"}},
    )
    assert response.status_code == 200
    assert response.json()["success"] is True

    logs = client.get(f"/integrations/{integration.id}/logs", params={"status": "success"})
    assert logs.status_code == 200
    assert [log["entity_id"] for log in logs.json()["logs"]] == ["cand-1"]


def test_callback_losing_insert_race_is_409(client, fake_connections, monkeypatch):
    state = client.post(
        "/connections/oauth/authorize", json={"provider": "google_calendar"}
    ).json()["state"]

    async def create(*args, **kwargs):
        try:
            raise psycopg.errors.UniqueViolation("connections_one_active_per_provider")
        except psycopg.errors.UniqueViolation as e:
            raise DatabaseError(f"Query failed: {e}", operation="fetch_one") from e

    monkeypatch.setattr(fake_connections, "create", create)

    response = client.post("/connections/oauth/callback", json={"code": "c", "state": state})

    assert response.status_code == 409
    assert response.json()["error"] == "connection_conflict"
