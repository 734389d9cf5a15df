"""
ATS integration persistence. API keys are encrypted at rest with the same
Fernet key as OAuth tokens.
"""

from typing import Any

from app.db.helpers import execute_query, fetch_all, fetch_one, with_db_retry
from app.models.domain.sync_domain import ATSIntegration, ATSPlatform, IntegrationSettings
from app.repositories.base import BaseRepository
from app.services.infrastructure.encryption_service import decrypt_token, encrypt_token

_COLUMNS = """
    id::text AS id, owner_id, platform, api_key, on_behalf_of, sync_enabled,
    sync_roles, sync_candidates, sync_applications, last_synced_at,
    last_sync_error, created_at, updated_at
"""


def _to_integration(row: dict[str, Any]) -> ATSIntegration:
    return ATSIntegration(**{**row, "api_key": decrypt_token(row["api_key"])})


class IntegrationRepository(BaseRepository):
    async def create(
        self,
        owner_id: str,
        platform: ATSPlatform,
        api_key: str,
        settings: IntegrationSettings,
        on_behalf_of: str | None = None,
    ) -> ATSIntegration:
        """Insert, or replace the key and settings of the owner's existing integration."""
        row = await fetch_one(
            f"""
            INSERT INTO ats_integrations (
                owner_id, platform, api_key, on_behalf_of, sync_enabled,
                sync_roles, sync_candidates, sync_applications
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (owner_id, platform) DO UPDATE SET
                api_key = EXCLUDED.api_key,
                on_behalf_of = EXCLUDED.on_behalf_of,
                sync_enabled = EXCLUDED.sync_enabled,
                sync_roles = EXCLUDED.sync_roles,
                sync_candidates = EXCLUDED.sync_candidates,
                sync_applications = EXCLUDED.sync_applications,
                last_sync_error = NULL,
                updated_at = NOW()
            RETURNING {_COLUMNS}
            """,
            (
                owner_id,
                platform.value,
                encrypt_token(api_key),
                on_behalf_of,
                settings.sync_enabled,
                settings.sync_roles,
                settings.sync_candidates,
                settings.sync_applications,
            ),
        )
        return _to_integration(row)

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get(self, integration_id: str) -> ATSIntegration | None:
        row = await fetch_one(
            f"SELECT {_COLUMNS} FROM ats_integrations WHERE id = %s", (integration_id,)
        )
        return _to_integration(row) if row else None

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def get_for_owner(self, owner_id: str, integration_id: str) -> ATSIntegration | None:
        row = await fetch_one(
            f"SELECT {_COLUMNS} FROM ats_integrations WHERE id = %s AND owner_id = %s",
            (integration_id, owner_id),
        )
        return _to_integration(row) if row else None

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_for_owner(self, owner_id: str) -> list[ATSIntegration]:
        rows = await fetch_all(
            f"SELECT {_COLUMNS} FROM ats_integrations WHERE owner_id = %s ORDER BY created_at",
            (owner_id,),
        )
        return [_to_integration(row) for row in rows]

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_sync_enabled(self) -> list[ATSIntegration]:
        rows = await fetch_all(
            f"""
            SELECT {_COLUMNS} FROM ats_integrations
            WHERE sync_enabled
            ORDER BY last_synced_at NULLS FIRST
            """
        )
        return [_to_integration(row) for row in rows]

    async def update_settings(
        self, owner_id: str, integration_id: str, settings: IntegrationSettings
    ) -> ATSIntegration | None:
        row = await fetch_one(
            f"""
            UPDATE ats_integrations
            SET sync_enabled = %s, sync_roles = %s, sync_candidates = %s,
                sync_applications = %s, updated_at = NOW()
            WHERE id = %s AND owner_id = %s
            RETURNING {_COLUMNS}
            """,
            (
                settings.sync_enabled,
                settings.sync_roles,
                settings.sync_candidates,
                settings.sync_applications,
                integration_id,
                owner_id,
            ),
        )
        return _to_integration(row) if row else None

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def mark_synced(self, integration_id: str) -> None:
        await execute_query(
            """
            UPDATE ats_integrations
            SET last_synced_at = NOW(), last_sync_error = NULL, updated_at = NOW()
            WHERE id = %s
            """,
            (integration_id,),
        )

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def record_sync_error(self, integration_id: str, error: str) -> None:
        await execute_query(
            "UPDATE ats_integrations SET last_sync_error = %s, updated_at = NOW() WHERE id = %s",
            (error[:2000], integration_id),
        )


integration_repository = IntegrationRepository()
