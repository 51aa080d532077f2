"""Operational alert delivery to Slack-compatible incoming webhooks.

Demo tenants (slugs starting with ``demo-``) alert the dev channel; every
other tenant alerts the ops channel. A missing webhook URL disables the
channel rather than failing the sweep.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from ..settings import FactorySettings

logger = logging.getLogger(__name__)

DEMO_SLUG_PREFIX = "demo-"


def resolve_alert_target(slug: str, settings: FactorySettings) -> str | None:
    """Return the webhook URL for ``slug``'s channel, or None when unset."""
    if slug.startswith(DEMO_SLUG_PREFIX):
        return settings.slack_webhook_dev or None
    return settings.slack_webhook_ops or None


def format_alert(slug: str, message: str, fields: Mapping[str, Any]) -> dict[str, Any]:
    lines = [f":rotating_light: *{slug}*: {message}"]
    lines.extend(f"• {key}: `{value}`" for key, value in sorted(fields.items()))
    return {"text": "\n".join(lines)}


class SlackAlertSink:
    """AlertSink posting to the per-slug Slack webhook.

    Delivery failures are logged, never raised: an alert outage must not
    stop the provisioning sweep.
    """

    def __init__(
        self,
        settings: FactorySettings,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._settings = settings
        self._client = http_client
        self._timeout = timeout_seconds

    async def send(self, slug: str, message: str, fields: Mapping[str, Any]) -> None:
        url = resolve_alert_target(slug, self._settings)
        if url is None:
            logger.warning(
                "No alert webhook configured for %s; dropping alert", slug,
                extra={"slug": slug},
            )
            return
        payload = format_alert(slug, message, fields)
        try:
            if self._client is not None:
                resp = await self._client.post(url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.post(url, json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning(
                "Alert delivery for %s failed: %s", slug, exc,
                extra={"slug": slug},
            )
