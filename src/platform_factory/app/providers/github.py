"""GitHub REST client for template-generated tenant repositories."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from .http import ProviderHTTPClient

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"


class GitHubClient(ProviderHTTPClient):
    """Repositories live under one organization and are generated from a template.

    Repository identifiers are full names (``org/name``).
    """

    provider = "github"

    def __init__(
        self,
        *,
        token: str,
        organization: str,
        template_repo: str,
        base_url: str = "https://api.github.com",
        http_client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(token=token, base_url=base_url, http_client=http_client, **kwargs)
        self._organization = organization
        self._template_repo = template_repo

    @property
    def organization(self) -> str:
        return self._organization

    def _auth_headers(self) -> dict[str, str]:
        return {
            **super()._auth_headers(),
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
        }

    def full_name(self, name: str) -> str:
        return f"{self._organization}/{name}"

    async def create(self, params: Mapping[str, Any]) -> dict[str, Any]:
        """Generate a private repository from the template."""
        payload = {
            "owner": self._organization,
            "name": params["name"],
            "description": params.get("description", ""),
            "private": True,
            "include_all_branches": False,
        }
        repo = await self._request_json(
            "POST",
            f"/repos/{self._organization}/{self._template_repo}/generate",
            json=payload,
        )
        logger.info(
            "GitHub repository generated: %s",
            repo.get("full_name"),
            extra={"provider": self.provider, "resource_name": params["name"]},
        )
        return repo

    async def get(self, full_name: str) -> dict[str, Any] | None:
        return await self._get_or_none(f"/repos/{full_name}")

    async def find_by_name(self, name: str) -> dict[str, Any] | None:
        return await self.get(self.full_name(name))

    async def delete(self, full_name: str) -> bool:
        return await self._delete(f"/repos/{full_name}")

    async def file_exists(self, full_name: str, path: str) -> bool:
        return await self._get_or_none(f"/repos/{full_name}/contents/{path}") is not None

    async def latest_commit(self, full_name: str) -> dict[str, Any] | None:
        # An empty repository answers 409 here; treat it like "no commit yet".
        resp = await self._request_with_retry(
            "GET",
            f"/repos/{full_name}/commits",
            params={"per_page": "1"},
        )
        if resp.status_code in (404, 409):
            return None
        self._raise_for_status(resp)
        commits = resp.json() or []
        return commits[0] if commits else None
