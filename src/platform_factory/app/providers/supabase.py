"""Supabase Management API client (tenant data-storage projects).

Distinct from ``db.postgrest``: this client talks to api.supabase.com with
a personal access token to create and inspect whole projects, not rows.
"""

from __future__ import annotations

import logging
import secrets
import string
from typing import Any, Mapping

import httpx

from .http import ProviderHTTPClient

logger = logging.getLogger(__name__)

# Terminal project states; anything else not ACTIVE_HEALTHY is still coming up.
FAILED_PROJECT_STATUSES = frozenset({
    "REMOVED",
    "GOING_DOWN",
    "INIT_FAILED",
    "RESTORE_FAILED",
    "PAUSE_FAILED",
})
READY_PROJECT_STATUS = "ACTIVE_HEALTHY"

_DB_PASSWORD_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"


def generate_db_password(length: int = 32) -> str:
    return "".join(secrets.choice(_DB_PASSWORD_ALPHABET) for _ in range(length))


def project_url(project_ref: str) -> str:
    return f"https://{project_ref}.supabase.co"


class SupabaseManagementClient(ProviderHTTPClient):
    """Create, read, find and delete Supabase projects for one organization."""

    provider = "supabase"

    def __init__(
        self,
        *,
        access_token: str,
        organization_id: str,
        region: str = "us-east-1",
        base_url: str = "https://api.supabase.com",
        http_client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(
            token=access_token,
            base_url=base_url,
            http_client=http_client,
            **kwargs,
        )
        self._organization_id = organization_id
        self._region = region

    async def create(self, params: Mapping[str, Any]) -> dict[str, Any]:
        """Create a project named ``params['name']``.

        The database password is generated here and never returned.
        """
        payload = {
            "name": params["name"],
            "organization_id": self._organization_id,
            "region": params.get("region") or self._region,
            "db_pass": params.get("db_pass") or generate_db_password(),
        }
        project = await self._request_json("POST", "/v1/projects", json=payload)
        logger.info(
            "Supabase project created: name=%s ref=%s",
            payload["name"],
            project.get("id"),
            extra={"provider": self.provider, "resource_name": payload["name"]},
        )
        return project

    async def get(self, project_ref: str) -> dict[str, Any] | None:
        return await self._get_or_none(f"/v1/projects/{project_ref}")

    async def find_by_name(self, name: str) -> dict[str, Any] | None:
        projects = await self._request_json("GET", "/v1/projects") or []
        for project in projects:
            if (
                project.get("name") == name
                and project.get("organization_id") in (None, self._organization_id)
            ):
                return project
        return None

    async def delete(self, project_ref: str) -> bool:
        return await self._delete(f"/v1/projects/{project_ref}")

    async def get_api_keys(self, project_ref: str) -> dict[str, str]:
        """Map key name (``anon``, ``service_role``) to key value.

        Empty while the project is still provisioning its keys.
        """
        keys = await self._get_or_none(f"/v1/projects/{project_ref}/api-keys") or []
        return {
            str(item["name"]): str(item["api_key"])
            for item in keys
            if item.get("name") and item.get("api_key")
        }
