"""
Common shape for ATS protocol adapters.

Adapters are stateless translators: they speak one vendor's REST API and
hand back ATSRecord objects in the service's normalized shape. They never
touch the database.
"""

from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import BaseModel, Field

from app.infrastructure.observability.logging import get_logger
from app.models.domain.sync_domain import ATSPlatform, EntityType, SyncErrorType

logger = get_logger(__name__)

REQUEST_TIMEOUT = 15  # seconds
MAX_PAGES = 50


class ATSAdapterError(Exception):
    """A vendor API call failed. error_type drives the sync log classification."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_type: SyncErrorType = SyncErrorType.UNKNOWN,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type
        self.response_data = response_data or {}

    @classmethod
    def from_response(cls, response: httpx.Response, operation: str) -> "ATSAdapterError":
        try:
            body = response.json()
        except ValueError:
            body = {}
        return cls(
            f"{operation} failed with HTTP {response.status_code}",
            status_code=response.status_code,
            error_type=classify_status(response.status_code),
            response_data=body if isinstance(body, dict) else {"body": body},
        )


def classify_status(status_code: int) -> SyncErrorType:
    if status_code in (401, 403):
        return SyncErrorType.AUTH
    if status_code == 404:
        return SyncErrorType.NOT_FOUND
    if status_code in (400, 409, 422):
        return SyncErrorType.VALIDATION
    if status_code == 429 or status_code >= 500:
        return SyncErrorType.TRANSIENT
    return SyncErrorType.UNKNOWN


class ATSRecord(BaseModel):
    """One vendor record, normalized."""

    entity_type: EntityType
    external_id: str
    data: dict[str, Any] = Field(default_factory=dict)
    raw: dict[str, Any] = Field(default_factory=dict)


class ATSAdapter(ABC):
    platform: ATSPlatform
    base_url: str

    def __init__(
        self,
        api_key: str,
        *,
        on_behalf_of: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_key = api_key
        self.on_behalf_of = on_behalf_of
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        # Both supported vendors use HTTP Basic with the key as the username
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=httpx.BasicAuth(self.api_key, ""),
            timeout=REQUEST_TIMEOUT,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )

    def _write_headers(self) -> dict[str, str]:
        return {}

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        """Single request; transport failures and non-2xx become ATSAdapterError."""
        headers = self._write_headers() if method != "GET" else {}
        async with self._client() as client:
            try:
                response = await client.request(
                    method, path, json=json, params=params, headers=headers
                )
            except httpx.RequestError as exc:
                raise ATSAdapterError(
                    f"Network error during {operation}: {exc}",
                    error_type=SyncErrorType.TRANSIENT,
                ) from exc

        if response.status_code >= 400:
            error = ATSAdapterError.from_response(response, operation)
            logger.warning(
                "ATS request rejected",
                platform=self.platform.value,
                operation=operation,
                status_code=response.status_code,
                error_type=error.error_type.value,
            )
            raise error

        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _unsupported(self, operation: str, entity_type: EntityType) -> ATSAdapterError:
        return ATSAdapterError(
            f"{self.platform.value} does not support {operation} for {entity_type.value}",
            error_type=SyncErrorType.VALIDATION,
        )

    @abstractmethod
    async def validate_credentials(self) -> None:
        """Cheap authenticated call; raises ATSAdapterError if the key is unusable."""

    @abstractmethod
    async def list_records(self, entity_type: EntityType) -> list[ATSRecord]: ...

    @abstractmethod
    async def get_record(self, entity_type: EntityType, external_id: str) -> ATSRecord: ...

    @abstractmethod
    async def create_record(
        self, entity_type: EntityType, payload: dict[str, Any]
    ) -> ATSRecord: ...

    @abstractmethod
    async def update_record(
        self, entity_type: EntityType, external_id: str, payload: dict[str, Any]
    ) -> ATSRecord: ...

    @abstractmethod
    async def delete_record(self, entity_type: EntityType, external_id: str) -> None: ...
