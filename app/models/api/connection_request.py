# models/api/connection_request.py
from pydantic import BaseModel, Field


class StartAuthorizationRequest(BaseModel):
    """Begin an OAuth connection for one provider."""

    provider: str = Field(..., description="Provider slug, e.g. google_calendar")
    redirect_after: str | None = Field(
        default=None, description="Where the client wants to land once the callback completes"
    )


class OAuthCallbackRequest(BaseModel):
    """Provider callback parameters, posted by the client that received the redirect."""

    code: str = Field(..., description="Authorization code from OAuth flow")
    state: str = Field(..., description="OAuth state for security validation")
