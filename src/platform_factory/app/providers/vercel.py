"""Vercel REST client for tenant hosting projects and deployments."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

import httpx

from .http import ProviderHTTPClient

logger = logging.getLogger(__name__)

ALL_TARGETS: tuple[str, ...] = ("production", "preview", "development")

READY_DEPLOYMENT_STATE = "READY"
FAILED_DEPLOYMENT_STATES = frozenset({"ERROR", "CANCELED"})


def project_url(project_name: str) -> str:
    return f"https://{project_name}.vercel.app"


def env_var(key: str, value: str, *, targets: Sequence[str] = ALL_TARGETS) -> dict[str, Any]:
    return {"key": key, "value": value, "type": "encrypted", "target": list(targets)}


def deployment_state(deployment: Mapping[str, Any]) -> str:
    """Deployment list and detail endpoints disagree on the field name."""
    return str(deployment.get("readyState") or deployment.get("state") or "")


def deployment_id(deployment: Mapping[str, Any]) -> str:
    return str(deployment.get("uid") or deployment.get("id") or "")


class VercelClient(ProviderHTTPClient):
    """Projects are linked to a GitHub repository; ``teamId`` scopes every call."""

    provider = "vercel"

    def __init__(
        self,
        *,
        token: str,
        team_id: str = "",
        base_url: str = "https://api.vercel.com",
        http_client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(token=token, base_url=base_url, http_client=http_client, **kwargs)
        self._team_id = team_id

    def _default_params(self) -> dict[str, str]:
        return {"teamId": self._team_id} if self._team_id else {}

    async def create(self, params: Mapping[str, Any]) -> dict[str, Any]:
        """Create a Next.js project linked to ``params['repo']`` (``org/name``)."""
        payload = {
            "name": params["name"],
            "framework": "nextjs",
            "gitRepository": {"repo": params["repo"], "type": "github"},
            "environmentVariables": list(params.get("environment_variables") or ()),
        }
        project = await self._request_json("POST", "/v10/projects", json=payload)
        logger.info(
            "Vercel project created: name=%s id=%s",
            params["name"],
            project.get("id"),
            extra={"provider": self.provider, "resource_name": params["name"]},
        )
        return project

    async def get(self, project_id_or_name: str) -> dict[str, Any] | None:
        return await self._get_or_none(f"/v9/projects/{project_id_or_name}")

    async def find_by_name(self, name: str) -> dict[str, Any] | None:
        return await self.get(name)

    async def delete(self, project_id: str) -> bool:
        return await self._delete(f"/v9/projects/{project_id}")

    async def latest_deployment(self, project_id: str) -> dict[str, Any] | None:
        payload = await self._request_json(
            "GET",
            "/v6/deployments",
            params={"projectId": project_id, "limit": "1"},
        )
        deployments = (payload or {}).get("deployments") or []
        return deployments[0] if deployments else None

    async def get_deployment(self, deployment_id: str) -> dict[str, Any] | None:
        return await self._get_or_none(f"/v13/deployments/{deployment_id}")

    async def upsert_env(
        self,
        project_id: str,
        variables: Sequence[Mapping[str, Any]],
    ) -> None:
        """Create or replace project environment variables by key."""
        await self._request_json(
            "POST",
            f"/v10/projects/{project_id}/env",
            json=list(variables),
            params={"upsert": "true"},
        )

    async def create_deployment(
        self,
        name: str,
        *,
        project_id: str,
        repo: str | None = None,
        ref: str = "main",
        redeploy_of: str | None = None,
    ) -> dict[str, Any]:
        """Trigger a production deployment.

        With ``redeploy_of`` the previous deployment is rebuilt (picking up
        new environment variables); otherwise ``repo`` at ``ref`` is built.
        """
        payload: dict[str, Any] = {"name": name, "project": project_id, "target": "production"}
        if redeploy_of:
            payload["deploymentId"] = redeploy_of
        elif repo:
            org, _, repo_name = repo.partition("/")
            payload["gitSource"] = {"type": "github", "org": org, "repo": repo_name, "ref": ref}
        else:
            raise ValueError("either repo or redeploy_of is required")

        deployment = await self._request_json(
            "POST",
            "/v13/deployments",
            json=payload,
            params={"forceNew": "1"},
        )
        logger.info(
            "Vercel deployment triggered: project=%s deployment=%s",
            project_id,
            deployment_id(deployment),
            extra={"provider": self.provider},
        )
        return deployment
