# models/api/integration_request.py
from typing import Any

from pydantic import BaseModel, Field

from app.models.domain.sync_domain import IntegrationSettings


class CreateIntegrationRequest(BaseModel):
    platform: str = Field(..., description="ATS platform slug: greenhouse or lever")
    api_key: str = Field(..., min_length=1)
    on_behalf_of: str | None = Field(
        default=None, description="ATS user that write operations are attributed to"
    )
    settings: IntegrationSettings = Field(default_factory=IntegrationSettings)


class PushCandidateRequest(BaseModel):
    candidate_id: str = Field(..., description="Internal candidate id")
    candidate: dict[str, Any] = Field(
        ..., description="Normalized candidate: first_name, last_name, email, phone, ..."
    )
