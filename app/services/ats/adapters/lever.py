"""
Lever API adapter.

Lever models candidates as opportunities and jobs as postings. Writes take a
perform_as query parameter naming the acting Lever user.
"""

from typing import Any

from app.models.domain.sync_domain import ATSPlatform, EntityType
from app.services.ats.adapters.base import MAX_PAGES, ATSAdapter, ATSRecord

PAGE_LIMIT = 100


def _split_name(name: str | None) -> tuple[str | None, str | None]:
    if not name:
        return None, None
    first, _, last = name.partition(" ")
    return first, last or None


def _normalize_opportunity(raw: dict[str, Any]) -> ATSRecord:
    first_name, last_name = _split_name(raw.get("name"))
    emails = raw.get("emails") or []
    phones = raw.get("phones") or []
    return ATSRecord(
        entity_type=EntityType.CANDIDATE,
        external_id=raw["id"],
        data={
            "first_name": first_name,
            "last_name": last_name,
            "email": emails[0] if emails else None,
            "phone": phones[0].get("value") if phones else None,
            "company": None,
            "title": raw.get("headline"),
            "tags": raw.get("tags") or [],
        },
        raw=raw,
    )


def _normalize_posting(raw: dict[str, Any]) -> ATSRecord:
    categories = raw.get("categories") or {}
    return ATSRecord(
        entity_type=EntityType.ROLE,
        external_id=raw["id"],
        data={
            "title": raw.get("text"),
            "status": raw.get("state"),
            "department": categories.get("department") or categories.get("team"),
            "location": categories.get("location"),
        },
        raw=raw,
    )


def _normalize_application(raw: dict[str, Any]) -> ATSRecord:
    return ATSRecord(
        entity_type=EntityType.APPLICATION,
        external_id=raw["id"],
        data={
            "candidate_external_id": raw.get("opportunityId"),
            "role_external_id": raw.get("posting"),
            "status": raw.get("type"),
            "stage": None,
            "applied_at": raw.get("createdAt"),
        },
        raw=raw,
    )


def _opportunity_body(payload: dict[str, Any]) -> dict[str, Any]:
    name = " ".join(p for p in (payload.get("first_name"), payload.get("last_name")) if p)
    body: dict[str, Any] = {"name": name}
    if payload.get("title"):
        body["headline"] = payload["title"]
    if payload.get("email"):
        body["emails"] = [payload["email"]]
    if payload.get("phone"):
        body["phones"] = [{"value": payload["phone"]}]
    if payload.get("tags"):
        body["tags"] = payload["tags"]
    return body


class LeverAdapter(ATSAdapter):
    platform = ATSPlatform.LEVER
    base_url = "https://api.lever.co/v1"

    def _perform_as(self) -> dict[str, str]:
        return {"perform_as": self.on_behalf_of} if self.on_behalf_of else {}

    async def _paginate(self, path: str, operation: str, params: dict[str, Any]) -> list[dict]:
        items: list[dict] = []
        offset = None
        for _ in range(MAX_PAGES):
            page_params = {**params, "limit": PAGE_LIMIT}
            if offset:
                page_params["offset"] = offset
            body = await self._request("GET", path, operation, params=page_params)
            items.extend(body.get("data", []))
            if not body.get("hasNext"):
                break
            offset = body.get("next")
        return items

    async def validate_credentials(self) -> None:
        await self._request("GET", "/users", "validate_credentials", params={"limit": 1})

    async def list_records(self, entity_type: EntityType) -> list[ATSRecord]:
        if entity_type == EntityType.ROLE:
            postings = await self._paginate("/postings", "list_postings", {})
            return [_normalize_posting(raw) for raw in postings]

        if entity_type == EntityType.CANDIDATE:
            opportunities = await self._paginate("/opportunities", "list_opportunities", {})
            return [_normalize_opportunity(raw) for raw in opportunities]

        # Applications only exist under their opportunity
        opportunities = await self._paginate(
            "/opportunities", "list_applications", {"expand": "applications"}
        )
        return [
            _normalize_application(application)
            for opportunity in opportunities
            for application in opportunity.get("applications") or []
            if isinstance(application, dict)
        ]

    async def get_record(self, entity_type: EntityType, external_id: str) -> ATSRecord:
        if entity_type == EntityType.ROLE:
            body = await self._request("GET", f"/postings/{external_id}", "get_posting")
            return _normalize_posting(body["data"])
        if entity_type == EntityType.CANDIDATE:
            body = await self._request("GET", f"/opportunities/{external_id}", "get_opportunity")
            return _normalize_opportunity(body["data"])
        raise self._unsupported("single lookup", entity_type)

    async def create_record(self, entity_type: EntityType, payload: dict[str, Any]) -> ATSRecord:
        if entity_type == EntityType.ROLE:
            body = await self._request(
                "POST",
                "/postings",
                "create_posting",
                params=self._perform_as(),
                json={
                    "text": payload.get("title"),
                    "state": payload.get("status", "draft"),
                    "categories": {
                        "department": payload.get("department"),
                        "location": payload.get("location"),
                    },
                },
            )
            return _normalize_posting(body["data"])
        if entity_type == EntityType.CANDIDATE:
            body = await self._request(
                "POST",
                "/opportunities",
                "create_opportunity",
                params=self._perform_as(),
                json=_opportunity_body(payload),
            )
            return _normalize_opportunity(body["data"])
        raise self._unsupported("create", entity_type)

    async def update_record(
        self, entity_type: EntityType, external_id: str, payload: dict[str, Any]
    ) -> ATSRecord:
        if entity_type == EntityType.ROLE:
            body = await self._request(
                "POST",
                f"/postings/{external_id}",
                "update_posting",
                params=self._perform_as(),
                json={"text": payload.get("title"), "state": payload.get("status")},
            )
            return _normalize_posting(body["data"])
        if entity_type == EntityType.CANDIDATE:
            # Opportunities are not editable in place; tags are the mutable surface
            if payload.get("tags"):
                await self._request(
                    "POST",
                    f"/opportunities/{external_id}/addTags",
                    "update_opportunity_tags",
                    params=self._perform_as(),
                    json={"tags": payload["tags"]},
                )
            return await self.get_record(entity_type, external_id)
        raise self._unsupported("update", entity_type)

    async def delete_record(self, entity_type: EntityType, external_id: str) -> None:
        raise self._unsupported("delete", entity_type)
