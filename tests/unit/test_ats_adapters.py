"""
ATS adapter tests against httpx.MockTransport.
"""

import base64
import json

import httpx
import pytest

from app.models.domain.sync_domain import (
    ATSPlatform,
    EntityType,
    SyncDirection,
    SyncErrorType,
    SyncStatus,
)
from app.services.ats.adapters.base import ATSAdapterError, classify_status
from app.services.ats.adapters.greenhouse import GreenhouseAdapter
from app.services.ats.adapters.lever import LeverAdapter
from app.services.ats.adapters.registry import (
    UnsupportedPlatformError,
    build_adapter,
    resolve_platform,
)
from app.services.ats.sync_service import SyncService
from tests.fakes import make_integration


@pytest.mark.parametrize(
    ("status_code", "expected"),
    [
        (401, SyncErrorType.AUTH),
        (403, SyncErrorType.AUTH),
        (404, SyncErrorType.NOT_FOUND),
        (422, SyncErrorType.VALIDATION),
        (429, SyncErrorType.TRANSIENT),
        (502, SyncErrorType.TRANSIENT),
        (418, SyncErrorType.UNKNOWN),
    ],
)
def test_classify_status(status_code, expected):
    assert classify_status(status_code) == expected


def test_registry_resolves_known_platforms():
    assert resolve_platform("lever") == ATSPlatform.LEVER
    assert isinstance(build_adapter(ATSPlatform.GREENHOUSE, "key"), GreenhouseAdapter)

    with pytest.raises(UnsupportedPlatformError):
        resolve_platform("workday")


@pytest.mark.asyncio
async def test_greenhouse_create_candidate_sends_basic_auth_and_on_behalf_of():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["on_behalf_of"] = request.headers.get("On-Behalf-Of")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            201,
            json={
                "id": 5551,
                "first_name": "Ada",
                "last_name": "Lovelace",
                "email_addresses": [{"value": "ada@example.com", "type": "personal"}],
            },
        )

    adapter = GreenhouseAdapter(
        "gh-key", on_behalf_of="4080", transport=httpx.MockTransport(handler)
    )

    record = await adapter.create_record(
        EntityType.CANDIDATE,
        {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com"},
    )

    assert record.external_id == "5551"
    assert record.data["email"] == "ada@example.com"
    assert seen["method"] == "POST"
    assert seen["path"] == "/v1/candidates"
    assert seen["auth"] == "Basic " + base64.b64encode(b"gh-key:").decode()
    assert seen["on_behalf_of"] == "4080"
    assert seen["body"]["email_addresses"] == [{"value": "ada@example.com", "type": "personal"}]


@pytest.mark.asyncio
async def test_greenhouse_rejected_key_raises_auth_error():
    adapter = GreenhouseAdapter(
        "bad", transport=httpx.MockTransport(lambda request: httpx.Response(401, json={}))
    )

    with pytest.raises(ATSAdapterError) as exc_info:
        await adapter.validate_credentials()

    assert exc_info.value.error_type == SyncErrorType.AUTH
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_greenhouse_role_create_needs_template():
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    adapter = GreenhouseAdapter("gh-key", transport=transport)

    with pytest.raises(ATSAdapterError) as exc_info:
        await adapter.create_record(EntityType.ROLE, {"title": "Engineer"})

    assert exc_info.value.error_type == SyncErrorType.VALIDATION


@pytest.mark.asyncio
async def test_greenhouse_list_paginates_until_short_page():
    pages = {
        "1": [{"id": i, "name": f"Job {i}"} for i in range(100)],
        "2": [{"id": 100, "name": "Job 100"}],
    }

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=pages[request.url.params["page"]])

    adapter = GreenhouseAdapter("gh-key", transport=httpx.MockTransport(handler))

    records = await adapter.list_records(EntityType.ROLE)

    assert len(records) == 101
    assert records[-1].data["title"] == "Job 100"


@pytest.mark.asyncio
async def test_network_error_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    adapter = LeverAdapter("lv-key", transport=httpx.MockTransport(handler))

    with pytest.raises(ATSAdapterError) as exc_info:
        await adapter.validate_credentials()

    assert exc_info.value.error_type == SyncErrorType.TRANSIENT


@pytest.mark.asyncio
async def test_lever_follows_next_cursor():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("offset") == "cursor-2":
            return httpx.Response(
                200, json={"data": [{"id": "opp-2", "name": "Grace Hopper"}], "hasNext": False}
            )
        return httpx.Response(
            200,
            json={
                "data": [{"id": "opp-1", "name": "Ada Lovelace"}],
                "hasNext": True,
                "next": "cursor-2",
            },
        )

    adapter = LeverAdapter("lv-key", transport=httpx.MockTransport(handler))

    records = await adapter.list_records(EntityType.CANDIDATE)

    assert [r.external_id for r in records] == ["opp-1", "opp-2"]
    assert records[1].data["first_name"] == "Grace"
    assert records[1].data["last_name"] == "Hopper"


@pytest.mark.asyncio
async def test_lever_delete_unsupported():
    adapter = LeverAdapter("lv-key", transport=httpx.MockTransport(lambda r: httpx.Response(204)))

    with pytest.raises(ATSAdapterError) as exc_info:
        await adapter.delete_record(EntityType.CANDIDATE, "opp-1")

    assert exc_info.value.error_type == SyncErrorType.VALIDATION


@pytest.mark.asyncio
async def test_push_candidate_through_greenhouse(
    fake_integrations, fake_sync_repository, fake_outbox
):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(201, json={"id": 7001, "first_name": "Ada"})

    transport = httpx.MockTransport(handler)
    service = SyncService(
        integrations=fake_integrations,
        repository=fake_sync_repository,
        outbox=fake_outbox,
        adapter_factory=lambda platform, api_key, on_behalf_of: build_adapter(
            platform, api_key, on_behalf_of, transport=transport
        ),
    )
    integration = fake_integrations.add(make_integration())

    result = await service.push_candidate(
        "user-123", integration.id, "cand-1", {"first_name": "Ada", "email": "ada@example.com"}
    )

    assert result == {"success": True, "external_id": "7001"}
    [log] = fake_sync_repository.logs
    assert log.status == SyncStatus.SUCCESS
    assert log.direction == SyncDirection.OUTBOUND
    assert log.external_id == "7001"
    mapping = await fake_sync_repository.get_mapping(
        integration.id, EntityType.CANDIDATE, "cand-1"
    )
    assert mapping.external_id == "7001"
