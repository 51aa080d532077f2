"""ElevenLabs Conversational AI client for tenant voice agents."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from .http import ProviderHTTPClient

logger = logging.getLogger(__name__)

DEFAULT_VOICE_ID = "EXAVITQu4vr4xnSDxMaL"
DEFAULT_TTS_MODEL = "eleven_turbo_v2"


def agent_id(agent: Mapping[str, Any]) -> str:
    return str(agent.get("agent_id") or agent.get("id") or "")


class ElevenLabsClient(ProviderHTTPClient):
    """Voice agents are addressed by ``agent_id``; auth is the ``xi-api-key`` header.

    One instance is configured per agent role so each can carry its own
    provider label in logs and errors.
    """

    provider = "elevenlabs"

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.elevenlabs.io",
        provider_label: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        if provider_label:
            self.provider = provider_label
        super().__init__(token=api_key, base_url=base_url, http_client=http_client, **kwargs)

    def _auth_headers(self) -> dict[str, str]:
        return {"xi-api-key": self._token}

    async def create(self, params: Mapping[str, Any]) -> dict[str, Any]:
        """Create an agent.

        ``params``: ``name``, ``system_prompt``, ``first_message`` and
        optionally ``webhook_url`` / ``webhook_secret`` / ``voice_id``.
        """
        payload: dict[str, Any] = {
            "name": params["name"],
            "conversation_config": {
                "agent": {
                    "prompt": {"prompt": params.get("system_prompt", "")},
                    "first_message": params.get("first_message", ""),
                    "language": "en",
                },
                "tts": {
                    "model_id": DEFAULT_TTS_MODEL,
                    "voice_id": params.get("voice_id") or DEFAULT_VOICE_ID,
                },
            },
        }
        if params.get("webhook_url"):
            webhook: dict[str, Any] = {"url": params["webhook_url"]}
            if params.get("webhook_secret"):
                webhook["secret"] = params["webhook_secret"]
            payload["platform_settings"] = {"webhook": webhook}

        agent = await self._request_json("POST", "/v1/convai/agents/create", json=payload)
        logger.info(
            "Voice agent created: name=%s agent_id=%s",
            params["name"],
            agent_id(agent),
            extra={"provider": self.provider, "resource_name": params["name"]},
        )
        return agent

    async def get(self, agent_id: str) -> dict[str, Any] | None:
        return await self._get_or_none(f"/v1/convai/agents/{agent_id}")

    async def find_by_name(self, name: str) -> dict[str, Any] | None:
        payload = await self._request_json(
            "GET",
            "/v1/convai/agents",
            params={"search": name, "page_size": "100"},
        )
        for agent in (payload or {}).get("agents") or []:
            if agent.get("name") == name:
                return agent
        return None

    async def delete(self, agent_id: str) -> bool:
        return await self._delete(f"/v1/convai/agents/{agent_id}")
