"""
Greenhouse Harvest API adapter.

Writes need an On-Behalf-Of header naming the Greenhouse user the change is
attributed to; integrations store that id next to the API key.
"""

from typing import Any

from app.models.domain.sync_domain import ATSPlatform, EntityType, SyncErrorType
from app.services.ats.adapters.base import MAX_PAGES, ATSAdapter, ATSAdapterError, ATSRecord

PER_PAGE = 100

_RESOURCES = {
    EntityType.ROLE: "jobs",
    EntityType.CANDIDATE: "candidates",
    EntityType.APPLICATION: "applications",
}


def _first(items: list[dict] | None, key: str = "value") -> str | None:
    return items[0].get(key) if items else None


def _normalize(entity_type: EntityType, raw: dict[str, Any]) -> ATSRecord:
    if entity_type == EntityType.CANDIDATE:
        data = {
            "first_name": raw.get("first_name"),
            "last_name": raw.get("last_name"),
            "email": _first(raw.get("email_addresses")),
            "phone": _first(raw.get("phone_numbers")),
            "company": raw.get("company"),
            "title": raw.get("title"),
            "tags": raw.get("tags") or [],
        }
    elif entity_type == EntityType.ROLE:
        data = {
            "title": raw.get("name"),
            "status": raw.get("status"),
            "department": _first(raw.get("departments"), "name"),
            "location": _first(raw.get("offices"), "name"),
        }
    else:
        jobs = raw.get("jobs") or []
        data = {
            "candidate_external_id": str(raw["candidate_id"]) if raw.get("candidate_id") else None,
            "role_external_id": str(jobs[0]["id"]) if jobs else None,
            "status": raw.get("status"),
            "stage": (raw.get("current_stage") or {}).get("name"),
            "applied_at": raw.get("applied_at"),
        }
    return ATSRecord(entity_type=entity_type, external_id=str(raw["id"]), data=data, raw=raw)


def _candidate_body(payload: dict[str, Any]) -> dict[str, Any]:
    body: dict[str, Any] = {
        key: payload[key]
        for key in ("first_name", "last_name", "company", "title", "tags")
        if payload.get(key) is not None
    }
    if payload.get("email"):
        body["email_addresses"] = [{"value": payload["email"], "type": "personal"}]
    if payload.get("phone"):
        body["phone_numbers"] = [{"value": payload["phone"], "type": "mobile"}]
    return body


class GreenhouseAdapter(ATSAdapter):
    platform = ATSPlatform.GREENHOUSE
    base_url = "https://harvest.greenhouse.io/v1"

    def _write_headers(self) -> dict[str, str]:
        return {"On-Behalf-Of": self.on_behalf_of} if self.on_behalf_of else {}

    async def validate_credentials(self) -> None:
        await self._request("GET", "/users", "validate_credentials", params={"per_page": 1})

    async def list_records(self, entity_type: EntityType) -> list[ATSRecord]:
        resource = _RESOURCES[entity_type]
        records: list[ATSRecord] = []
        for page in range(1, MAX_PAGES + 1):
            params = {"per_page": PER_PAGE, "page": page}
            batch = await self._request("GET", f"/{resource}", f"list_{resource}", params=params)
            records.extend(_normalize(entity_type, raw) for raw in batch)
            if len(batch) < PER_PAGE:
                break
        return records

    async def get_record(self, entity_type: EntityType, external_id: str) -> ATSRecord:
        resource = _RESOURCES[entity_type]
        raw = await self._request("GET", f"/{resource}/{external_id}", f"get_{entity_type.value}")
        return _normalize(entity_type, raw)

    async def create_record(self, entity_type: EntityType, payload: dict[str, Any]) -> ATSRecord:
        if entity_type == EntityType.CANDIDATE:
            raw = await self._request(
                "POST", "/candidates", "create_candidate", json=_candidate_body(payload)
            )
        elif entity_type == EntityType.ROLE:
            if not payload.get("template_job_id"):
                raise ATSAdapterError(
                    "Greenhouse jobs are created from a template_job_id",
                    error_type=SyncErrorType.VALIDATION,
                )
            raw = await self._request(
                "POST",
                "/jobs",
                "create_job",
                json={
                    "template_job_id": payload["template_job_id"],
                    "number_of_openings": payload.get("openings", 1),
                    "job_name": payload.get("title"),
                },
            )
        else:
            candidate_id = payload.get("candidate_external_id")
            if not candidate_id or not payload.get("role_external_id"):
                raise ATSAdapterError(
                    "Applications need candidate_external_id and role_external_id",
                    error_type=SyncErrorType.VALIDATION,
                )
            raw = await self._request(
                "POST",
                f"/candidates/{candidate_id}/applications",
                "create_application",
                json={"job_id": int(payload["role_external_id"])},
            )
        return _normalize(entity_type, raw)

    async def update_record(
        self, entity_type: EntityType, external_id: str, payload: dict[str, Any]
    ) -> ATSRecord:
        if entity_type == EntityType.CANDIDATE:
            body = _candidate_body(payload)
        elif entity_type == EntityType.ROLE:
            body = {"name": payload["title"]} if payload.get("title") else {}
        else:
            body = {key: payload[key] for key in ("source_id", "referrer") if key in payload}

        resource = _RESOURCES[entity_type]
        raw = await self._request(
            "PATCH", f"/{resource}/{external_id}", f"update_{entity_type.value}", json=body
        )
        return _normalize(entity_type, raw)

    async def delete_record(self, entity_type: EntityType, external_id: str) -> None:
        if entity_type == EntityType.ROLE:
            raise self._unsupported("delete", entity_type)
        resource = _RESOURCES[entity_type]
        await self._request("DELETE", f"/{resource}/{external_id}", f"delete_{entity_type.value}")
