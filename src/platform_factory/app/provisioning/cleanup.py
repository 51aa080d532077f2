"""Cleanup and teardown of a run's external resources.

Deletion walks the resources in reverse creation order (most recent
first). Each deletion is best effort: a failure is recorded in the report
and the remaining deletions still run. A 404 counts as already deleted.

``cleanup`` then resets the run to INIT keeping only tenant-identifying
metadata; ``delete_platform`` removes the run record instead.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping

from ..protocols import ResourceProvider, RunLock, RunStore
from ..providers.http import ProviderAPIError, ProviderNotFoundError
from ..providers.registry import ProviderClients
from .errors import RunLocked, RunNotFound
from .models import ProvisioningRun, RunError, RunErrorKind, RunPatch, utcnow
from .naming import preserved_metadata
from .states import ProvisionState, validate_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OwnedResource:
    resource: str
    client_field: str
    id_key: str


# Reverse of the pipeline order.
CLEANUP_ORDER: tuple[OwnedResource, ...] = (
    OwnedResource('kira', 'insights_agent', 'kira_agent_id'),
    OwnedResource('sandra', 'setup_agent', 'sandra_agent_id'),
    OwnedResource('vercel', 'hosting', 'vercel_project_id'),
    OwnedResource('github', 'repository', 'github_repo'),
    OwnedResource('supabase', 'storage', 'supabase_project_ref'),
)

RESOURCE_ID_KEYS = frozenset(owned.id_key for owned in CLEANUP_ORDER)


@dataclass(frozen=True, slots=True)
class CleanupEntry:
    resource: str
    resource_id: str
    outcome: str  # deleted | already_gone | error
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {
            'resource': self.resource,
            'resource_id': self.resource_id,
            'outcome': self.outcome,
        }
        if self.error:
            payload['error'] = self.error
        return payload


@dataclass(frozen=True, slots=True)
class CleanupReport:
    slug: str
    entries: tuple[CleanupEntry, ...] = ()
    state: ProvisionState | None = None
    record_deleted: bool = False
    finished_at: datetime = field(default_factory=utcnow)

    @property
    def errors(self) -> tuple[CleanupEntry, ...]:
        return tuple(e for e in self.entries if e.outcome == 'error')

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            'slug': self.slug,
            'ok': self.ok,
            'state': self.state.value if self.state else None,
            'record_deleted': self.record_deleted,
            'resources': [e.to_dict() for e in self.entries],
        }


async def delete_resources(
    metadata: Mapping[str, Any],
    clients: ProviderClients,
    *,
    slug: str = '',
) -> tuple[CleanupEntry, ...]:
    """Best-effort delete of every resource identifier present in ``metadata``."""
    entries: list[CleanupEntry] = []
    for owned in CLEANUP_ORDER:
        resource_id = metadata.get(owned.id_key)
        if not resource_id:
            continue
        client: ResourceProvider = getattr(clients, owned.client_field)
        entries.append(await _delete_one(client, owned, str(resource_id), slug=slug))
    return tuple(entries)


async def _delete_one(
    client: ResourceProvider,
    owned: OwnedResource,
    resource_id: str,
    *,
    slug: str,
) -> CleanupEntry:
    log_extra = {'slug': slug, 'provider': owned.resource, 'resource_id': resource_id}
    try:
        deleted = await client.delete(resource_id)
    except ProviderNotFoundError:
        deleted = False
    except ProviderAPIError as exc:
        logger.warning('Cleanup of %s %s failed: %s', owned.resource, resource_id, exc, extra=log_extra)
        return CleanupEntry(owned.resource, resource_id, 'error', str(exc))
    except Exception as exc:
        logger.exception('Cleanup of %s %s crashed', owned.resource, resource_id, extra=log_extra)
        return CleanupEntry(owned.resource, resource_id, 'error', f'{type(exc).__name__}: {exc}')

    outcome = 'deleted' if deleted else 'already_gone'
    logger.info('Cleanup %s %s: %s', owned.resource, resource_id, outcome, extra=log_extra)
    return CleanupEntry(owned.resource, resource_id, outcome)


class RunCleaner:
    """Cleanup (reset for retry) and full teardown of provisioning runs."""

    def __init__(
        self,
        *,
        run_store: RunStore,
        clients: ProviderClients,
        run_lock: RunLock | None = None,
        lease_seconds: int = 360,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = run_store
        self._clients = clients
        self._lock = run_lock
        self._lease_seconds = lease_seconds
        self._clock = clock

    async def cleanup(self, slug: str, *, attempt: int | None = None) -> CleanupReport:
        """Delete the run's resources and reset it to INIT.

        An active run is first moved to FAILED (operator cleanup), so the
        reset always goes through the FAILED -> INIT retry edge.
        """
        async with self._locked(slug):
            run = await self._load(slug)
            run = await self._ensure_failed(run)
            entries = await delete_resources(run.metadata, self._clients, slug=slug)

            keep = preserved_metadata(run.metadata)
            if run.state is not ProvisionState.INIT:
                validate_transition(run.state, ProvisionState.INIT)
            reset = await self._store.reset(
                slug,
                state=ProvisionState.INIT,
                metadata=keep,
                attempt=attempt,
            )
        report = CleanupReport(slug, entries, state=reset.state, finished_at=self._clock())
        logger.info(
            'Run %s cleaned up (%d resources, %d errors)',
            slug, len(entries), len(report.errors),
            extra={'slug': slug, 'state': reset.state.value},
        )
        return report

    async def delete_platform(self, slug: str) -> CleanupReport:
        """Delete every resource and the run record itself."""
        async with self._locked(slug):
            run = await self._load(slug)
            entries = await delete_resources(run.metadata, self._clients, slug=slug)
            deleted = await self._store.delete(slug)
        logger.info('Platform %s deleted', slug, extra={'slug': slug})
        return CleanupReport(
            slug, entries, state=None, record_deleted=deleted, finished_at=self._clock(),
        )

    async def _load(self, slug: str) -> ProvisioningRun:
        run = await self._store.get(slug)
        if run is None:
            raise RunNotFound(slug)
        return run

    async def _ensure_failed(self, run: ProvisioningRun) -> ProvisioningRun:
        if run.state in (ProvisionState.FAILED, ProvisionState.INIT):
            return run
        validate_transition(run.state, ProvisionState.FAILED)
        return await self._store.update(run.slug, RunPatch(
            state=ProvisionState.FAILED,
            last_error=RunError(
                RunErrorKind.OPERATOR,
                'cleanup_requested',
                f'cleanup requested while in {run.state.value}',
                state=run.state.value,
            ),
            state_entered_at=self._clock(),
            clear_next_attempt=True,
        ))

    def _locked(self, slug: str) -> _SlugLock:
        return _SlugLock(self._lock, slug, self._lease_seconds)


class _SlugLock:
    """Async context manager over an optional RunLock; raises RunLocked."""

    def __init__(self, lock: RunLock | None, slug: str, lease_seconds: int) -> None:
        self._lock = lock
        self._slug = slug
        self._lease_seconds = lease_seconds
        self._owner = f'cleanup-{uuid.uuid4().hex[:12]}'

    async def __aenter__(self) -> None:
        if self._lock is None:
            return
        acquired = await self._lock.acquire(
            self._slug, owner=self._owner, lease_seconds=self._lease_seconds,
        )
        if not acquired:
            raise RunLocked(self._slug)

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._lock is not None:
            await self._lock.release(self._slug, owner=self._owner)
