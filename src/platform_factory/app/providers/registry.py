"""Provider client container and settings-driven construction."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator

import httpx

from ..protocols import (
    EndpointProber,
    HostingProvider,
    RepositoryProvider,
    ResourceProvider,
    StorageProvider,
)
from ..settings import FactorySettings
from .elevenlabs import ElevenLabsClient
from .github import GitHubClient
from .http import EndpointProbe
from .supabase import SupabaseManagementClient
from .vercel import VercelClient


@dataclass(frozen=True)
class ProviderClients:
    """One explicitly configured client per provisioned resource.

    Step modules and cleanup receive this container instead of reaching
    for module-level clients, so tests substitute fakes per field.
    """

    storage: StorageProvider
    repository: RepositoryProvider
    hosting: HostingProvider
    setup_agent: ResourceProvider
    insights_agent: ResourceProvider
    prober: EndpointProber

    def __iter__(self) -> Iterator[ResourceProvider]:
        yield self.storage
        yield self.repository
        yield self.hosting
        yield self.setup_agent
        yield self.insights_agent


def build_provider_clients(
    settings: FactorySettings,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> ProviderClients:
    """Construct the real REST clients from settings.

    Raises ValueError when a required credential is missing.
    """
    limits = {
        "timeout_seconds": settings.provider_timeout_seconds,
        "max_retries": settings.provider_max_retries,
    }
    return ProviderClients(
        storage=SupabaseManagementClient(
            access_token=settings.supabase_access_token,
            organization_id=settings.supabase_org_id,
            region=settings.supabase_region,
            http_client=http_client,
            **limits,
        ),
        repository=GitHubClient(
            token=settings.github_token,
            organization=settings.github_org,
            template_repo=settings.github_template_repo,
            http_client=http_client,
            **limits,
        ),
        hosting=VercelClient(
            token=settings.vercel_token,
            team_id=settings.vercel_team_id,
            http_client=http_client,
            **limits,
        ),
        setup_agent=ElevenLabsClient(
            api_key=settings.elevenlabs_api_key,
            provider_label="sandra",
            http_client=http_client,
            **limits,
        ),
        insights_agent=ElevenLabsClient(
            api_key=settings.elevenlabs_api_key,
            provider_label="kira",
            http_client=http_client,
            **limits,
        ),
        prober=EndpointProbe(http_client=http_client),
    )
