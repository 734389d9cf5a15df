"""
ATS integration routes: setup, sync trigger, logs, stats, candidate push.

Integrations belong to the authenticated owner (JWT `sub`).
"""

from fastapi import APIRouter, Depends, Query, status

from app.auth.verify import current_user_id
from app.models.api.integration_request import CreateIntegrationRequest, PushCandidateRequest
from app.models.api.integration_response import (
    IntegrationResponse,
    PushCandidateResponse,
    SyncLogListResponse,
    TriggerSyncResponse,
)
from app.models.domain.sync_domain import (
    IntegrationSettings,
    SyncQueueItem,
    SyncStats,
    SyncStatus,
)
from app.services.ats.sync_service import SyncService, sync_service

router = APIRouter(prefix="/integrations", tags=["integrations"])


def get_sync_service() -> SyncService:
    return sync_service


@router.post("", response_model=IntegrationResponse, status_code=status.HTTP_201_CREATED)
async def create_integration(
    body: CreateIntegrationRequest,
    owner_id: str = Depends(current_user_id),
    service: SyncService = Depends(get_sync_service),
):
    """Validate the API key against the ATS, then store the integration."""
    integration = await service.create_integration(
        owner_id,
        body.platform,
        body.api_key,
        on_behalf_of=body.on_behalf_of,
        integration_settings=body.settings,
    )
    return IntegrationResponse(**integration.to_public_dict())


@router.get("", response_model=list[IntegrationResponse])
async def list_integrations(
    owner_id: str = Depends(current_user_id),
    service: SyncService = Depends(get_sync_service),
):
    integrations = await service.list_integrations(owner_id)
    return [IntegrationResponse(**i.to_public_dict()) for i in integrations]


@router.patch("/{integration_id}/settings", response_model=IntegrationResponse)
async def update_settings(
    integration_id: str,
    body: IntegrationSettings,
    owner_id: str = Depends(current_user_id),
    service: SyncService = Depends(get_sync_service),
):
    integration = await service.update_settings(owner_id, integration_id, body)
    return IntegrationResponse(**integration.to_public_dict())


@router.post(
    "/{integration_id}/sync",
    response_model=TriggerSyncResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_sync(
    integration_id: str,
    owner_id: str = Depends(current_user_id),
    service: SyncService = Depends(get_sync_service),
):
    """Queue a full inbound sync; the sync worker picks it up."""
    return TriggerSyncResponse(queued=await service.trigger_sync(owner_id, integration_id))


@router.get("/{integration_id}/logs", response_model=SyncLogListResponse)
async def get_logs(
    integration_id: str,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    status_filter: SyncStatus | None = Query(None, alias="status"),
    owner_id: str = Depends(current_user_id),
    service: SyncService = Depends(get_sync_service),
):
    logs = await service.get_logs(owner_id, integration_id, limit, offset, status_filter)
    return SyncLogListResponse(logs=logs, limit=limit, offset=offset)


@router.get("/{integration_id}/stats", response_model=SyncStats)
async def get_stats(
    integration_id: str,
    owner_id: str = Depends(current_user_id),
    service: SyncService = Depends(get_sync_service),
):
    return await service.get_stats(owner_id, integration_id)


@router.post("/{integration_id}/candidates/push", response_model=PushCandidateResponse)
async def push_candidate(
    integration_id: str,
    body: PushCandidateRequest,
    owner_id: str = Depends(current_user_id),
    service: SyncService = Depends(get_sync_service),
):
    """Send one candidate to the ATS immediately (not queued)."""
    result = await service.push_candidate(
        owner_id, integration_id, body.candidate_id, body.candidate
    )
    return PushCandidateResponse(**result)


@router.post("/queue/{item_id}/requeue", response_model=SyncQueueItem)
async def requeue_failed(
    item_id: str,
    owner_id: str = Depends(current_user_id),
    service: SyncService = Depends(get_sync_service),
):
    """Manually retry a sync item that exhausted its retries."""
    return await service.requeue_failed(owner_id, item_id)
