"""In-memory store, lock and alert sink for local development and tests.

These are used when ENVIRONMENT=local. They satisfy the protocol interfaces
but keep everything in dicts (no persistence across restarts).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Any, Callable, Mapping

from .provisioning.errors import MalformedRun, RunNotFound
from .provisioning.models import (
    ProvisioningRun,
    RunError,
    RunPatch,
    apply_patch,
    utcnow,
)
from .provisioning.states import ProvisionState


class InMemoryRunStore:
    """Run store backed by a dict keyed by slug.

    Mirrors the provision_runs primary key: ``create`` rejects a slug that
    already has a record. ``metadata_writes`` counts updates that carried
    metadata, so tests can check that waiting never rewrites it.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._runs: dict[str, ProvisioningRun] = {}
        self._clock = clock
        self.metadata_writes: dict[str, int] = {}

    async def get(self, slug: str) -> ProvisioningRun | None:
        return self._runs.get(slug)

    async def create(
        self,
        slug: str,
        initial_state: ProvisionState,
        metadata: Mapping[str, Any],
    ) -> ProvisioningRun:
        if slug in self._runs:
            raise ValueError(f"run {slug!r} already exists")
        now = self._clock()
        run = ProvisioningRun(
            slug=slug,
            state=initial_state,
            metadata=MappingProxyType(dict(metadata)),
            state_entered_at=now,
            created_at=now,
            updated_at=now,
        )
        self._runs[slug] = run
        return run

    async def update(self, slug: str, patch: RunPatch) -> ProvisioningRun:
        run = self._runs.get(slug)
        if run is None:
            raise RunNotFound(slug)
        if patch.metadata:
            self.metadata_writes[slug] = self.metadata_writes.get(slug, 0) + 1
        updated = apply_patch(run, patch, now=self._clock())
        self._runs[slug] = updated
        return updated

    async def reset(
        self,
        slug: str,
        *,
        state: ProvisionState,
        metadata: Mapping[str, Any],
        attempt: int | None = None,
        last_error: RunError | None = None,
    ) -> ProvisioningRun:
        run = self._runs.get(slug)
        if run is None:
            raise RunNotFound(slug)
        now = self._clock()
        updated = run.with_changes(
            state=state,
            metadata=MappingProxyType(dict(metadata)),
            last_error=last_error,
            attempt=attempt if attempt is not None else run.attempt,
            wait_count=0,
            next_attempt_at=None,
            state_entered_at=now,
            updated_at=now,
        )
        self._runs[slug] = updated
        return updated

    async def mark_failed(self, slug: str, error: RunError) -> ProvisioningRun:
        run = self._runs.get(slug)
        if run is None:
            raise RunNotFound(slug)
        now = self._clock()
        updated = run.with_changes(
            state=ProvisionState.FAILED,
            last_error=error,
            next_attempt_at=None,
            state_entered_at=now,
            updated_at=now,
        )
        self._runs[slug] = updated
        return updated

    async def delete(self, slug: str) -> bool:
        return self._runs.pop(slug, None) is not None

    async def list_active(self) -> list[ProvisioningRun]:
        return sorted(
            (run for run in self._runs.values() if run.is_active),
            key=lambda run: run.created_at,
        )

    async def list_malformed(self) -> list[MalformedRun]:
        # Runs are held as parsed records, so none can be malformed.
        return []


class InMemoryRunLock:
    """Lease lock keyed by slug; an expired lease can be claimed by anyone."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self._leases: dict[str, tuple[str, datetime]] = {}
        self._clock = clock

    async def acquire(self, slug: str, *, owner: str, lease_seconds: int) -> bool:
        now = self._clock()
        held = self._leases.get(slug)
        if held is not None and held[1] > now and held[0] != owner:
            return False
        self._leases[slug] = (owner, now + timedelta(seconds=lease_seconds))
        return True

    async def release(self, slug: str, *, owner: str) -> None:
        held = self._leases.get(slug)
        if held is not None and held[0] == owner:
            del self._leases[slug]

    def holder(self, slug: str) -> str | None:
        held = self._leases.get(slug)
        return held[0] if held else None


class InMemoryAlertSink:
    def __init__(self) -> None:
        self.alerts: list[dict[str, Any]] = []

    async def send(self, slug: str, message: str, fields: Mapping[str, Any]) -> None:
        self.alerts.append({"slug": slug, "message": message, "fields": dict(fields)})
