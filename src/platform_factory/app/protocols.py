"""Store, lock, alert and provider protocol interfaces for dependency injection.

These protocols define the contracts that concrete implementations (InMemory
for local dev and tests, Supabase/REST for non-local) must satisfy. The app
factory and the driver accept any implementation that matches them.
"""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from .provisioning.errors import MalformedRun
from .provisioning.models import ProvisioningRun, RunError, RunPatch
from .provisioning.states import ProvisionState


# ── Persistence ─────────────────────────────────────────────────────


@runtime_checkable
class RunStore(Protocol):
    """Durable record of provisioning runs, keyed by slug."""

    async def get(self, slug: str) -> ProvisioningRun | None: ...

    async def create(
        self,
        slug: str,
        initial_state: ProvisionState,
        metadata: Mapping[str, Any],
    ) -> ProvisioningRun: ...

    async def update(self, slug: str, patch: RunPatch) -> ProvisioningRun:
        """Merge ``patch`` into the stored run; unrelated metadata keys survive."""
        ...

    async def reset(
        self,
        slug: str,
        *,
        state: ProvisionState,
        metadata: Mapping[str, Any],
        attempt: int | None = None,
        last_error: RunError | None = None,
    ) -> ProvisioningRun:
        """Replace metadata wholesale (cleanup only)."""
        ...

    async def mark_failed(self, slug: str, error: RunError) -> ProvisioningRun:
        """Write FAILED and ``error`` without reading the stored row first.

        The only write path for rows whose state cannot be parsed.
        """
        ...

    async def delete(self, slug: str) -> bool: ...

    async def list_active(self) -> list[ProvisioningRun]:
        """Active runs, oldest first; rows with an unknown state are left out."""
        ...

    async def list_malformed(self) -> list[MalformedRun]: ...


@runtime_checkable
class RunLock(Protocol):
    """Per-slug advisory lock with a lease."""

    async def acquire(self, slug: str, *, owner: str, lease_seconds: int) -> bool: ...
    async def release(self, slug: str, *, owner: str) -> None: ...


@runtime_checkable
class AlertSink(Protocol):
    """Delivery of operational alerts (stale or failed runs)."""

    async def send(self, slug: str, message: str, fields: Mapping[str, Any]) -> None: ...


# ── Resource providers ──────────────────────────────────────────────


@runtime_checkable
class ResourceProvider(Protocol):
    """Operations every provisioning provider client exposes."""

    provider: str

    async def create(self, params: Mapping[str, Any]) -> dict[str, Any]: ...
    async def get(self, resource_id: str) -> dict[str, Any] | None: ...
    async def find_by_name(self, name: str) -> dict[str, Any] | None: ...

    async def delete(self, resource_id: str) -> bool:
        """Return False when the resource was already gone."""
        ...


@runtime_checkable
class StorageProvider(ResourceProvider, Protocol):
    async def get_api_keys(self, project_ref: str) -> dict[str, str]: ...


@runtime_checkable
class RepositoryProvider(ResourceProvider, Protocol):
    organization: str

    def full_name(self, name: str) -> str: ...
    async def file_exists(self, full_name: str, path: str) -> bool: ...
    async def latest_commit(self, full_name: str) -> dict[str, Any] | None: ...


@runtime_checkable
class HostingProvider(ResourceProvider, Protocol):
    async def latest_deployment(self, project_id: str) -> dict[str, Any] | None: ...
    async def get_deployment(self, deployment_id: str) -> dict[str, Any] | None: ...

    async def upsert_env(
        self, project_id: str, variables: Sequence[Mapping[str, Any]],
    ) -> None: ...

    async def create_deployment(
        self,
        name: str,
        *,
        project_id: str,
        repo: str | None = None,
        ref: str = "main",
        redeploy_of: str | None = None,
    ) -> dict[str, Any]: ...


@runtime_checkable
class EndpointProber(Protocol):
    async def probe(self, url: str) -> int | None: ...
