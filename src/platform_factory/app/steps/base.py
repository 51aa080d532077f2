"""Context handed to step modules, plus the helpers they share.

A step receives a read-only view of the run's metadata and the provider
clients; it returns a ``StepResult`` and never touches the run store.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping

from ..providers.http import ProviderAPIError
from ..provisioning.models import (
    RunErrorKind,
    StepResult,
    parse_timestamp,
    utcnow,
)
from ..provisioning.naming import resource_name

if TYPE_CHECKING:
    from ..protocols import ResourceProvider
    from ..providers.registry import ProviderClients
    from ..settings import FactorySettings

logger = logging.getLogger(__name__)

WEBHOOK_PATH = '/api/webhooks/elevenlabs'


@dataclass(frozen=True, slots=True)
class StepSettings:
    """The slice of configuration step modules are allowed to see."""

    not_found_grace_seconds: int = 600
    default_branch: str = 'main'

    @classmethod
    def from_settings(cls, settings: FactorySettings) -> StepSettings:
        return cls(
            not_found_grace_seconds=settings.not_found_grace_seconds,
            default_branch=settings.github_default_branch,
        )


@dataclass(frozen=True, slots=True)
class StepContext:
    slug: str
    metadata: Mapping[str, Any]
    clients: ProviderClients
    settings: StepSettings = field(default_factory=StepSettings)
    now: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not isinstance(self.metadata, MappingProxyType):
            object.__setattr__(self, 'metadata', MappingProxyType(dict(self.metadata)))

    def resource_name(self, suffix: str | None = None) -> str:
        return resource_name(self.slug, suffix)


StepHandler = Callable[[StepContext], Awaitable[StepResult]]


def created_at_key(resource: str) -> str:
    return f'{resource}_created_at'


def provider_failure(exc: ProviderAPIError, *, action: str) -> StepResult:
    """Transient provider trouble waits for the next cycle; anything else fails."""
    if exc.is_transient:
        logger.info(
            '%s %s hit a transient error (%s); waiting',
            exc.provider,
            action,
            exc.status_code,
            extra={'provider': exc.provider, 'status_code': exc.status_code},
        )
        return StepResult.wait(f'{exc.provider} {action}: transient {exc.status_code}')
    return StepResult.fail(exc.code, f'{action} failed: {exc}')


def missing_identifier(key: str) -> StepResult:
    """A verify ran without the identifier its execute should have stored."""
    return StepResult.fail(
        'missing_identifier',
        f'{key} is absent from run metadata',
        kind=RunErrorKind.ORCHESTRATOR,
    )


def resource_missing(
    ctx: StepContext,
    resource: str,
    resource_id: str,
    *,
    since_key: str | None = None,
) -> StepResult:
    """Decide what a 404 on a recorded resource means.

    Within the grace window after creation it is provider eventual
    consistency; after it, the resource was deleted out of band.
    """
    created_at = parse_timestamp(ctx.metadata.get(since_key or created_at_key(resource)))
    grace = timedelta(seconds=ctx.settings.not_found_grace_seconds)
    if created_at is not None and ctx.now - created_at <= grace:
        return StepResult.wait(f'{resource} {resource_id} not visible yet')
    return StepResult.fail(
        'resource_missing',
        f'{resource} resource {resource_id} no longer exists at the provider',
    )


async def find_or_create(
    client: ResourceProvider,
    name: str,
    params: Mapping[str, Any],
) -> tuple[dict[str, Any], bool]:
    """Reuse the resource named ``name`` if the provider has one, else create it.

    Returns the resource and whether it was newly created.
    """
    existing = await client.find_by_name(name)
    if existing is not None:
        logger.info(
            'Reusing existing %s resource %s',
            client.provider,
            name,
            extra={'provider': client.provider, 'resource_name': name},
        )
        return existing, False
    created = await client.create({**params, 'name': name})
    return created, True


def webhook_url(base_url: str) -> str:
    return f'{base_url.rstrip("/")}{WEBHOOK_PATH}'
